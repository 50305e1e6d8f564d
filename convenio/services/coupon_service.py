"""
Coupon service - validation, discount computation, usage recording and admin CRUD.

Coupon codes are compared upper-case. The expected coupon type always comes
from the action being paid for (titular subscription vs dependent
activation), never from a client hint.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from convenio.core.errors import ConflictError, NotFoundError, ValidationError
from convenio.core.timeutils import local_today
from convenio.db.enums import CouponType, DiscountType
from convenio.db.models import Coupon, CouponUsage

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

# Rejection reasons
NOT_FOUND = "not_found"
INACTIVE = "inactive"
NOT_YET_VALID = "not_yet_valid"
EXPIRED = "expired"
TYPE_MISMATCH = "type_mismatch"
ALREADY_USED = "already_used"

REASON_MESSAGES = {
    NOT_FOUND: "Cupom não encontrado",
    INACTIVE: "Cupom inativo",
    NOT_YET_VALID: "Cupom ainda não está válido",
    EXPIRED: "Cupom expirado",
    TYPE_MISMATCH: "Cupom não se aplica a este tipo de pagamento",
    ALREADY_USED: "Cupom já utilizado por este usuário",
}


@dataclass(frozen=True)
class CouponCheck:
    """Outcome of validating a coupon for a user and an action."""

    valid: bool
    coupon: Coupon | None = None
    reason: str | None = None

    @property
    def message(self) -> str | None:
        return REASON_MESSAGES.get(self.reason) if self.reason else None

    def raise_if_invalid(self) -> Coupon:
        """Translate a rejection into the matching domain error."""
        if self.valid and self.coupon is not None:
            return self.coupon
        if self.reason == ALREADY_USED:
            raise ConflictError(self.message, code="COUPON_ALREADY_USED")
        if self.reason == NOT_FOUND:
            raise NotFoundError(self.message, code="COUPON_NOT_FOUND")
        raise ValidationError(self.message or "Cupom inválido", code="INVALID_COUPON", reason=self.reason)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def quantize(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


# =============================================================================
# Validation
# =============================================================================

def get_coupon_by_code(db: Session, code: str) -> Coupon | None:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return db.query(Coupon).filter(func.upper(Coupon.code) == normalized).first()


def has_user_used(db: Session, coupon_id: int, user_id: int) -> bool:
    return (
        db.query(CouponUsage.id)
        .filter(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
        .first()
        is not None
    )


def check_coupon(
    db: Session,
    coupon: Coupon,
    coupon_type_expected: CouponType,
    user_id: int,
    today: date | None = None,
) -> CouponCheck:
    """Apply every rule to an already loaded coupon."""
    today = today or local_today()
    if not coupon.is_active:
        return CouponCheck(False, coupon, INACTIVE)
    if coupon.valid_from and today < coupon.valid_from:
        return CouponCheck(False, coupon, NOT_YET_VALID)
    if coupon.valid_until and today > coupon.valid_until:
        return CouponCheck(False, coupon, EXPIRED)
    if coupon.coupon_type != coupon_type_expected.value:
        return CouponCheck(False, coupon, TYPE_MISMATCH)
    if not coupon.unlimited_use and has_user_used(db, coupon.id, user_id):
        return CouponCheck(False, coupon, ALREADY_USED)
    return CouponCheck(True, coupon)


def validate_coupon(
    db: Session,
    code: str,
    coupon_type_expected: CouponType,
    user_id: int,
) -> CouponCheck:
    """
    Validate a coupon code for a user and an action.

    Rejects when: unknown, inactive, outside its validity window, type
    mismatches the action, or single-use and already used by the user.
    """
    coupon = get_coupon_by_code(db, code)
    if not coupon:
        return CouponCheck(False, None, NOT_FOUND)
    return check_coupon(db, coupon, coupon_type_expected, user_id)


# =============================================================================
# Pricing
# =============================================================================

def compute_discount(base: Decimal, coupon: Coupon | None) -> Decimal:
    """Discount amount, never more than the base price."""
    if coupon is None:
        return ZERO
    base = quantize(base)
    value = Decimal(coupon.discount_value)
    if coupon.discount_type == DiscountType.PERCENTAGE.value:
        discount = base * value / Decimal(100)
    else:
        discount = value
    return quantize(min(max(discount, ZERO), base))


def apply_discount(base: Decimal, coupon: Coupon | None) -> tuple[Decimal, Decimal]:
    """
    Returns:
        (discount, final) with final = max(0, base - discount)
    """
    discount = compute_discount(base, coupon)
    final = max(ZERO, quantize(base) - discount)
    return discount, quantize(final)


# =============================================================================
# Usage recording
# =============================================================================

def record_usage(
    db: Session,
    coupon: Coupon,
    user_id: int,
    payment_reference: str,
    discount_applied: Decimal,
    dependent_id: int | None = None,
) -> CouponUsage | None:
    """
    Record a coupon usage, idempotent on (coupon_id, payment_reference).

    Runs inside the caller's transaction (no commit). Returns the existing
    row on replay, or None when a single-use coupon was already consumed by
    this user under a different payment.
    """
    existing = (
        db.query(CouponUsage)
        .filter(
            CouponUsage.coupon_id == coupon.id,
            CouponUsage.payment_reference == payment_reference,
        )
        .first()
    )
    if existing:
        return existing

    if not coupon.unlimited_use and has_user_used(db, coupon.id, user_id):
        logger.warning(
            "Single-use coupon %s already used by user %s, not recording usage for %s",
            coupon.id,
            user_id,
            payment_reference,
        )
        return None

    usage = CouponUsage(
        coupon_id=coupon.id,
        user_id=user_id,
        dependent_id=dependent_id,
        payment_reference=payment_reference,
        discount_applied=quantize(discount_applied),
    )
    try:
        with db.begin_nested():
            db.add(usage)
    except IntegrityError:
        # Concurrent replay inserted the same (coupon_id, payment_reference)
        return (
            db.query(CouponUsage)
            .filter(
                CouponUsage.coupon_id == coupon.id,
                CouponUsage.payment_reference == payment_reference,
            )
            .first()
        )

    logger.info("Coupon %s used by user %s (%s)", coupon.code, user_id, payment_reference)
    return usage


def usage_exists(db: Session, coupon_id: int, payment_reference: str) -> bool:
    return (
        db.query(CouponUsage.id)
        .filter(
            CouponUsage.coupon_id == coupon_id,
            CouponUsage.payment_reference == payment_reference,
        )
        .first()
        is not None
    )


# =============================================================================
# Admin CRUD
# =============================================================================

def list_coupons(db: Session) -> list[Coupon]:
    return db.query(Coupon).order_by(Coupon.created_at.desc(), Coupon.id.desc()).all()


def get_coupon(db: Session, coupon_id: int) -> Coupon:
    coupon = db.query(Coupon).filter(Coupon.id == coupon_id).first()
    if not coupon:
        raise NotFoundError("Cupom não encontrado", code="COUPON_NOT_FOUND")
    return coupon


def _validate_fields(discount_type: str, discount_value: Decimal, valid_from, valid_until) -> None:
    if discount_value is None or Decimal(discount_value) < 0:
        raise ValidationError("Valor de desconto inválido", code="INVALID_DISCOUNT")
    if discount_type == DiscountType.PERCENTAGE.value and Decimal(discount_value) > 100:
        raise ValidationError("Percentual de desconto deve ser até 100", code="INVALID_DISCOUNT")
    if valid_from and valid_until and valid_until < valid_from:
        raise ValidationError("Período de validade inválido", code="INVALID_VALIDITY")


def create_coupon(db: Session, data, created_by: int | None = None) -> Coupon:
    """Create a coupon. Duplicate codes (case-insensitive) are a conflict."""
    code = normalize_code(data.code)
    if not code:
        raise ValidationError("Código é obrigatório", code="CODE_REQUIRED")
    _validate_fields(data.discount_type.value, data.discount_value, data.valid_from, data.valid_until)

    if get_coupon_by_code(db, code):
        raise ConflictError("Código de cupom já existe", code="COUPON_CODE_IN_USE")

    coupon = Coupon(
        code=code,
        discount_type=data.discount_type.value,
        discount_value=quantize(data.discount_value),
        coupon_type=data.coupon_type.value,
        unlimited_use=data.unlimited_use,
        is_active=data.is_active,
        description=data.description,
        valid_from=data.valid_from,
        valid_until=data.valid_until,
        created_by=created_by,
    )
    db.add(coupon)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Código de cupom já existe", code="COUPON_CODE_IN_USE")
    db.refresh(coupon)

    logger.info("Coupon %s created by user %s", coupon.code, created_by)
    return coupon


def update_coupon(db: Session, coupon: Coupon, data) -> Coupon:
    """Partial update. Only fields explicitly sent are changed."""
    fields = data.model_dump(exclude_unset=True)

    if "code" in fields:
        code = normalize_code(fields["code"])
        if not code:
            raise ValidationError("Código é obrigatório", code="CODE_REQUIRED")
        other = get_coupon_by_code(db, code)
        if other and other.id != coupon.id:
            raise ConflictError("Código de cupom já existe", code="COUPON_CODE_IN_USE")
        fields["code"] = code

    for enum_field in ("discount_type", "coupon_type"):
        if fields.get(enum_field) is not None:
            fields[enum_field] = fields[enum_field].value

    _validate_fields(
        fields.get("discount_type", coupon.discount_type),
        fields.get("discount_value", coupon.discount_value),
        fields.get("valid_from", coupon.valid_from),
        fields.get("valid_until", coupon.valid_until),
    )
    if "discount_value" in fields:
        fields["discount_value"] = quantize(fields["discount_value"])

    for field, value in fields.items():
        setattr(coupon, field, value)

    db.commit()
    db.refresh(coupon)
    return coupon


def toggle_coupon(db: Session, coupon: Coupon) -> Coupon:
    """Flip is_active. Takes effect for activations still in flight."""
    coupon.is_active = not coupon.is_active
    db.commit()
    db.refresh(coupon)
    logger.info("Coupon %s is_active=%s", coupon.code, coupon.is_active)
    return coupon


def delete_coupon(db: Session, coupon: Coupon) -> None:
    """Delete an unused coupon. Used coupons must be deactivated instead."""
    used = db.query(CouponUsage.id).filter(CouponUsage.coupon_id == coupon.id).first()
    if used:
        raise ConflictError(
            "Cupom já foi utilizado; desative-o em vez de excluir",
            code="COUPON_IN_USE",
        )
    db.delete(coupon)
    db.commit()
