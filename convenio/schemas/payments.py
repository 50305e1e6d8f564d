"""Checkout schemas - preference creation for every payment intent."""

from decimal import Decimal

from pydantic import BaseModel, Field

from convenio.schemas.common import Money


class SubscriptionCheckoutRequest(BaseModel):
    user_id: int | None = None  # Defaults to the caller; admins may pay for others
    coupon_code: str | None = None


class DependentCheckoutRequest(BaseModel):
    dependent_id: int
    coupon_code: str | None = None


class AgendaCheckoutRequest(BaseModel):
    duration_days: int | None = Field(None, ge=1, le=365)


class PayoutCheckoutRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)


class CheckoutResponse(BaseModel):
    """
    Outcome of a checkout request. Exactly one shape applies:
    - already_active: nothing to pay
    - activated: free purchase applied immediately
    - init_point: redirect the user to the gateway
    """
    already_active: bool = False
    activated: bool = False
    init_point: str | None = None
    preference_id: str | None = None
    external_reference: str | None = None
    amount: Money | None = None
    discount: Money | None = None
