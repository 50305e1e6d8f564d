"""Admin schemas - system settings and scheduling access grants."""

from datetime import datetime

from pydantic import BaseModel, Field


class SettingRead(BaseModel):
    key: str
    value: str
    description: str | None = None
    is_default: bool
    updated_at: datetime | None = None


class SettingUpdate(BaseModel):
    value: str = Field(..., min_length=1, max_length=64)


class SchedulingAccessGrant(BaseModel):
    professional_id: int
    expires_at: datetime
    reason: str | None = Field(None, max_length=500)


class SchedulingAccessRow(BaseModel):
    professional_id: int
    name: str
    has_access: bool
    expires_at: datetime | None = None
    granted_by: int | None = None
    reason: str | None = None


class RevokeResponse(BaseModel):
    revoked: int
