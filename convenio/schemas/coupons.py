"""Coupon schemas - validation endpoint and admin CRUD."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from convenio.db.enums import CouponType, DiscountType
from convenio.schemas.common import Money


class CouponQuote(BaseModel):
    """A valid coupon priced against the current base price."""
    id: int
    code: str
    discount_type: str
    coupon_type: str
    description: str | None = None
    base_price: Money
    discount_value: Money
    final_price: Money


class CouponValidationResponse(BaseModel):
    valid: bool
    coupon: CouponQuote | None = None
    reason: str | None = None
    message: str | None = None


class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    discount_type: DiscountType
    discount_value: Decimal = Field(..., ge=0)
    coupon_type: CouponType = CouponType.TITULAR
    unlimited_use: bool = False
    is_active: bool = True
    description: str | None = None
    valid_from: date | None = None
    valid_until: date | None = None


class CouponUpdate(BaseModel):
    code: str | None = Field(None, min_length=1, max_length=50)
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(None, ge=0)
    coupon_type: CouponType | None = None
    unlimited_use: bool | None = None
    is_active: bool | None = None
    description: str | None = None
    valid_from: date | None = None
    valid_until: date | None = None


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    discount_type: str
    discount_value: Money
    coupon_type: str
    unlimited_use: bool
    is_active: bool
    description: str | None
    valid_from: date | None
    valid_until: date | None
    created_at: datetime
