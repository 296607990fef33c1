from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class UsageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    tokens_used: int
    tokens_limit: int
    additional_tokens: int
    remaining: int
    reset_date: datetime


class PlanLimitIn(BaseModel):
    tokens_limit: int = Field(ge=0)


class TopUpIn(BaseModel):
    tokens: int = Field(gt=0)
