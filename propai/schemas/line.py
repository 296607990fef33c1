from pydantic import BaseModel, Field


class LineChannelIn(BaseModel):
    channel_id: str = Field(min_length=1, max_length=120)
    channel_secret: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    is_active: bool = True


class LineChannelOut(BaseModel):
    channel_id: str
    is_active: bool


class LineWebhookOut(BaseModel):
    processed: int
    replied: int
    quota_blocked: int
