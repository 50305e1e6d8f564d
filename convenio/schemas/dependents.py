"""Dependent schemas."""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field


class DependentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    cpf: str
    birth_date: date | None = None


class DependentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    name: str
    cpf: str
    birth_date: date | None
    subscription_status: str
    subscription_active: bool
    subscription_expiry: date | None
    created_at: datetime
