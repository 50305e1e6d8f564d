"""Authentication-related Pydantic schemas."""

from datetime import date

from pydantic import BaseModel, ConfigDict, Field

from convenio.db.enums import Role


class UserSession(BaseModel):
    """
    Session context for authenticated requests.

    Returned by the get_current_session dependency. `role` is the active
    role carried by the access token.
    """
    user_id: int
    role: Role
    roles: list[str]
    name: str


class UserPayload(BaseModel):
    """User as returned to clients. Clients must base role decisions on this."""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: int
    name: str
    cpf: str
    email: str | None = None
    roles: list[str]
    current_role: str | None = Field(default=None, alias="currentRole")
    subscription_status: str
    subscription_expiry: date | None = None


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    cpf: str
    password: str
    email: str | None = None
    phone: str | None = None
    birth_date: date | None = None
    address: str | None = None
    address_number: str | None = None
    address_complement: str | None = None
    neighborhood: str | None = None
    city: str | None = None
    state: str | None = Field(default=None, max_length=2)


class RegisterResponse(BaseModel):
    user: UserPayload


class LoginRequest(BaseModel):
    cpf: str
    password: str


class LoginResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user: UserPayload
    needs_role_selection: bool = Field(alias="needsRoleSelection")
    selection_token: str = Field(alias="selectionToken")


class SelectRoleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(alias="userId")
    role: str
    selection_token: str | None = Field(default=None, alias="selectionToken")


class SwitchRoleRequest(BaseModel):
    role: str


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(alias="refreshToken")


class LogoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int | None = Field(default=None, alias="userId")


class TokenResponse(BaseModel):
    """Token pair plus the freshly loaded user."""
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")
    user: UserPayload


class MeResponse(BaseModel):
    user: UserPayload
