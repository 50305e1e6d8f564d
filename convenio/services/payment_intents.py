"""
Payment intents - what a gateway payment is for.

An intent is serialized into the preference's `external_reference` so the
webhook can reconstruct the domain action:

    subscription:{user_id}:{coupon_id?}
    dependent:{dependent_id}:{coupon_id?}
    professional:{professional_id}:{amount}
    agenda:{professional_id}:{duration_days}
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Union

from convenio.db.enums import PaymentKind


@dataclass(frozen=True)
class SubscriptionIntent:
    user_id: int
    coupon_id: int | None = None

    kind = PaymentKind.SUBSCRIPTION

    @property
    def target_id(self) -> int:
        return self.user_id

    def to_reference(self) -> str:
        return f"{self.kind.value}:{self.user_id}:{self.coupon_id or ''}"


@dataclass(frozen=True)
class DependentIntent:
    dependent_id: int
    coupon_id: int | None = None

    kind = PaymentKind.DEPENDENT

    @property
    def target_id(self) -> int:
        return self.dependent_id

    def to_reference(self) -> str:
        return f"{self.kind.value}:{self.dependent_id}:{self.coupon_id or ''}"


@dataclass(frozen=True)
class ProfessionalPayoutIntent:
    professional_id: int
    amount: Decimal

    kind = PaymentKind.PROFESSIONAL

    @property
    def target_id(self) -> int:
        return self.professional_id

    def to_reference(self) -> str:
        return f"{self.kind.value}:{self.professional_id}:{self.amount:.2f}"


@dataclass(frozen=True)
class AgendaAccessIntent:
    professional_id: int
    duration_days: int

    kind = PaymentKind.AGENDA

    @property
    def target_id(self) -> int:
        return self.professional_id

    def to_reference(self) -> str:
        return f"{self.kind.value}:{self.professional_id}:{self.duration_days}"


PaymentIntent = Union[
    SubscriptionIntent, DependentIntent, ProfessionalPayoutIntent, AgendaAccessIntent
]


class InvalidReferenceError(ValueError):
    """external_reference does not match any known intent."""


def _positive_int(raw: str, reference: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise InvalidReferenceError(f"Invalid id in external_reference: {reference!r}")
    if value <= 0:
        raise InvalidReferenceError(f"Invalid id in external_reference: {reference!r}")
    return value


def _optional_int(raw: str, reference: str) -> int | None:
    if raw in ("", "null", "None"):
        return None
    return _positive_int(raw, reference)


def parse_reference(reference: str | None) -> PaymentIntent:
    """
    Parse an external_reference back into its intent.

    Raises:
        InvalidReferenceError: unknown prefix or malformed fields
    """
    parts = (reference or "").split(":")
    if len(parts) == 2:
        # Older references omitted the empty coupon slot
        parts.append("")
    if len(parts) != 3:
        raise InvalidReferenceError(f"Malformed external_reference: {reference!r}")

    kind, target, extra = parts
    if kind == PaymentKind.SUBSCRIPTION.value:
        return SubscriptionIntent(_positive_int(target, reference), _optional_int(extra, reference))
    if kind == PaymentKind.DEPENDENT.value:
        return DependentIntent(_positive_int(target, reference), _optional_int(extra, reference))
    if kind == PaymentKind.AGENDA.value:
        return AgendaAccessIntent(_positive_int(target, reference), _positive_int(extra, reference))
    if kind == PaymentKind.PROFESSIONAL.value:
        try:
            amount = Decimal(extra)
        except InvalidOperation:
            raise InvalidReferenceError(f"Invalid amount in external_reference: {reference!r}")
        if not amount.is_finite() or amount <= 0:
            raise InvalidReferenceError(f"Invalid amount in external_reference: {reference!r}")
        return ProfessionalPayoutIntent(_positive_int(target, reference), amount)

    raise InvalidReferenceError(f"Unknown external_reference kind: {kind!r}")
