from pydantic import BaseModel, EmailStr, Field


class TenantCreate(BaseModel):
    auth_user_id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    company_name: str | None = Field(default=None, max_length=200)


class TenantUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    company_name: str | None = Field(default=None, max_length=200)


class TenantOut(BaseModel):
    id: str
    auth_user_id: str
    name: str
    email: str
    company_name: str | None


class TenantProvisionOut(BaseModel):
    tenant: TenantOut
    api_key: str
    tokens_limit: int
