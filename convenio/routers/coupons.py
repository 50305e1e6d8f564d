"""Coupons router - validation for checkout and admin CRUD."""

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from convenio.core.deps import get_current_session, get_db, require_roles
from convenio.db.enums import CouponType, Role
from convenio.schemas.auth import UserSession
from convenio.schemas.coupons import (
    CouponCreate,
    CouponQuote,
    CouponRead,
    CouponUpdate,
    CouponValidationResponse,
)
from convenio.services import coupon_service, settings_service

router = APIRouter()

_BASE_PRICE_KEYS = {
    CouponType.TITULAR: settings_service.SUBSCRIPTION_PRICE,
    CouponType.DEPENDENTE: settings_service.DEPENDENT_PRICE,
}


@router.get("/validate-coupon/{code}", response_model=CouponValidationResponse)
def validate_coupon(
    code: str,
    coupon_type: CouponType = Query(CouponType.TITULAR, alias="type"),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """
    Check a coupon for the caller and price it against the current base price.

    The type only picks the base price; checkout re-derives it from the action.
    """
    check = coupon_service.validate_coupon(db, code, coupon_type, session.user_id)
    if not check.valid:
        return CouponValidationResponse(valid=False, reason=check.reason, message=check.message)

    coupon = check.coupon
    base = settings_service.get_decimal(db, _BASE_PRICE_KEYS[coupon_type])
    discount, final = coupon_service.apply_discount(base, coupon)
    return CouponValidationResponse(
        valid=True,
        coupon=CouponQuote(
            id=coupon.id,
            code=coupon.code,
            discount_type=coupon.discount_type,
            coupon_type=coupon.coupon_type,
            description=coupon.description,
            base_price=coupon_service.quantize(base),
            discount_value=discount,
            final_price=final,
        ),
    )


# =============================================================================
# Admin
# =============================================================================

@router.get("/admin/coupons", response_model=list[CouponRead])
def list_coupons(
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    return coupon_service.list_coupons(db)


@router.post("/admin/coupons", response_model=CouponRead, status_code=201)
def create_coupon(
    data: CouponCreate,
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    return coupon_service.create_coupon(db, data, created_by=session.user_id)


@router.put("/admin/coupons/{coupon_id}", response_model=CouponRead)
def update_coupon(
    coupon_id: int,
    data: CouponUpdate,
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    coupon = coupon_service.get_coupon(db, coupon_id)
    return coupon_service.update_coupon(db, coupon, data)


@router.patch("/admin/coupons/{coupon_id}/toggle", response_model=CouponRead)
def toggle_coupon(
    coupon_id: int,
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    coupon = coupon_service.get_coupon(db, coupon_id)
    return coupon_service.toggle_coupon(db, coupon)


@router.delete("/admin/coupons/{coupon_id}", status_code=204)
def delete_coupon(
    coupon_id: int,
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    """Delete an unused coupon. Used coupons can only be deactivated."""
    coupon = coupon_service.get_coupon(db, coupon_id)
    coupon_service.delete_coupon(db, coupon)
    return Response(status_code=204)
