"""Coupon and payment enums."""

from enum import Enum


class DiscountType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class CouponType(str, Enum):
    """What a coupon may be applied to."""

    TITULAR = "titular"  # Titular subscription
    DEPENDENTE = "dependente"  # Dependent activation


class PaymentKind(str, Enum):
    """Prefix of the external_reference attached to gateway preferences."""

    SUBSCRIPTION = "subscription"
    DEPENDENT = "dependent"
    PROFESSIONAL = "professional"  # Professional paying the convênio share
    AGENDA = "agenda"  # Scheduling access purchase


class PaymentStatus(str, Enum):
    """Mercado Pago payment status (subset we track)."""

    PENDING = "pending"
    APPROVED = "approved"
    AUTHORIZED = "authorized"
    IN_PROCESS = "in_process"
    IN_MEDIATION = "in_mediation"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    CHARGED_BACK = "charged_back"

    @classmethod
    def has_value(cls, value: str) -> bool:
        return value in cls._value2member_map_
