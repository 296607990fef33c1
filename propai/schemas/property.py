from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PropertyStatus = Literal["draft", "published", "archived"]


class PropertyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    address: str = Field(min_length=1, max_length=200)
    property_type: str = Field(min_length=1, max_length=50)
    price: float | None = Field(default=None, ge=0, le=999_999_999)
    size: float | None = Field(default=None, ge=0, le=10_000)
    rooms: float | None = Field(default=None, ge=0, le=100)
    description: str | None = Field(default=None, max_length=1000)
    status: PropertyStatus = "draft"


class PropertyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    address: str | None = Field(default=None, min_length=1, max_length=200)
    property_type: str | None = Field(default=None, min_length=1, max_length=50)
    price: float | None = Field(default=None, ge=0, le=999_999_999)
    size: float | None = Field(default=None, ge=0, le=10_000)
    rooms: float | None = Field(default=None, ge=0, le=100)
    description: str | None = Field(default=None, max_length=1000)
    ai_description: str | None = None
    status: PropertyStatus | None = None


class PropertyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    name: str
    address: str
    property_type: str
    price: float | None
    size: float | None
    rooms: float | None
    description: str | None
    ai_description: str | None
    batch_job_id: str | None
    status: str
    created_at: datetime
    updated_at: datetime


class PropertyPage(BaseModel):
    items: list[PropertyOut]
    total: int
    limit: int
    offset: int
