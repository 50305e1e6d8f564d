"""
Subscription service - checkout preferences and the activation protocol.

Flow:
1. create_*_preference prices the action (settings + coupon) and either
   activates immediately (free) or opens a gateway preference.
2. The gateway calls the webhook; handle_payment_notification fetches the
   authoritative payment and, once approved, runs activate().

activate() is idempotent per payment reference. Replays re-read the target
under lock and skip anything already applied; coupon usages and agenda grants
are guarded by unique keys on the payment reference.
"""

import logging
import math
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from convenio.core.errors import NotFoundError, ValidationError
from convenio.core.timeutils import local_today, utc_now
from convenio.db.enums import (
    CouponType,
    NotificationType,
    PaymentStatus,
    SubscriptionStatus,
)
from convenio.db.models import Coupon, Dependent, Payment, User
from convenio.services import (
    affiliate_service,
    coupon_service,
    notification_service,
    scheduling_access_service,
    settings_service,
    user_service,
)
from convenio.services.payment_gateway import (
    GatewayPayment,
    PaymentGateway,
    PreferencePayer,
    PreferenceRequest,
)
from convenio.services.payment_intents import (
    AgendaAccessIntent,
    DependentIntent,
    InvalidReferenceError,
    PaymentIntent,
    ProfessionalPayoutIntent,
    SubscriptionIntent,
    parse_reference,
)

logger = logging.getLogger(__name__)

FREE_REFERENCE_PREFIX = "free"
MAX_AGENDA_DAYS = 365


def is_current(status: str, expiry, today=None) -> bool:
    """Active with an expiry that has not passed yet."""
    today = today or local_today()
    return (
        status == SubscriptionStatus.ACTIVE.value
        and expiry is not None
        and expiry >= today
    )


def _payer(user: User) -> PreferencePayer:
    return PreferencePayer(name=user.name, email=user.email, cpf=user.cpf)


# =============================================================================
# Checkout
# =============================================================================

def _ledger_user_id(db: Session, intent: PaymentIntent) -> int:
    if isinstance(intent, SubscriptionIntent):
        return intent.user_id
    if isinstance(intent, DependentIntent):
        dependent = db.query(Dependent).filter(Dependent.id == intent.dependent_id).first()
        if not dependent:
            raise NotFoundError("Dependente não encontrado", code="DEPENDENT_NOT_FOUND")
        return dependent.user_id
    return intent.professional_id


def _activate_free(
    db: Session,
    intent: PaymentIntent,
    user_id: int,
    coupon: Coupon | None,
) -> dict:
    """Activate a fully discounted purchase without touching the gateway."""
    reference = intent.to_reference()
    payment_reference = f"{FREE_REFERENCE_PREFIX}:{reference}:{uuid4().hex}"
    try:
        activate(db, intent, payment_reference)
        db.add(Payment(
            user_id=user_id,
            kind=intent.kind.value,
            target_id=intent.target_id,
            external_reference=reference,
            mp_payment_id=None,
            amount=Decimal("0.00"),
            status=PaymentStatus.APPROVED.value,
            coupon_id=coupon.id if coupon else None,
            processed_at=utc_now(),
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Free activation %s (%s)", reference, payment_reference)
    return {"activated": True, "external_reference": reference, "amount": Decimal("0.00")}


async def _open_preference(
    db: Session,
    gateway: PaymentGateway,
    intent: PaymentIntent,
    user: User,
    title: str,
    amount: Decimal,
    coupon: Coupon | None = None,
    back_path: str = "/pagamento",
) -> dict:
    """Create the gateway preference, then write the pending ledger row."""
    reference = intent.to_reference()
    result = await gateway.create_preference(
        PreferenceRequest(
            title=title,
            amount=amount,
            external_reference=reference,
            payer=_payer(user),
            item_id=intent.kind.value,
            back_path=back_path,
        )
    )

    payment = Payment(
        user_id=user.id,
        kind=intent.kind.value,
        target_id=intent.target_id,
        external_reference=reference,
        preference_id=result.preference_id,
        amount=amount,
        status=PaymentStatus.PENDING.value,
        coupon_id=coupon.id if coupon else None,
    )
    db.add(payment)
    db.commit()
    return {
        "init_point": result.init_point,
        "preference_id": result.preference_id,
        "external_reference": reference,
        "amount": amount,
    }


async def create_subscription_preference(
    db: Session,
    gateway: PaymentGateway,
    user_id: int,
    coupon_code: str | None = None,
) -> dict:
    """
    Start (or complete, when free) a titular subscription purchase.

    Raises:
        ValidationError / ConflictError / NotFoundError: coupon rejected
        PaymentGatewayError: gateway unavailable (nothing persisted)
    """
    user = user_service.get_user(db, user_id)
    if is_current(user.subscription_status, user.subscription_expiry):
        return {"already_active": True}

    base = settings_service.get_decimal(db, settings_service.SUBSCRIPTION_PRICE)
    coupon = None
    if coupon_code:
        coupon = coupon_service.validate_coupon(db, coupon_code, CouponType.TITULAR, user.id).raise_if_invalid()
    discount, final = coupon_service.apply_discount(base, coupon)

    intent = SubscriptionIntent(user.id, coupon.id if coupon else None)
    if final == 0:
        return _activate_free(db, intent, user.id, coupon)

    result = await _open_preference(
        db, gateway, intent, user, "Assinatura Convênio", final, coupon
    )
    result["discount"] = discount
    return result


async def create_dependent_preference(
    db: Session,
    gateway: PaymentGateway,
    owner_id: int,
    dependent_id: int,
    coupon_code: str | None = None,
) -> dict:
    """Start (or complete, when free) a dependent activation owned by `owner_id`."""
    dependent = user_service.get_dependent(db, dependent_id)
    if dependent.user_id != owner_id:
        # Not revealing other titulars' dependents
        raise NotFoundError("Dependente não encontrado", code="DEPENDENT_NOT_FOUND")
    if is_current(dependent.subscription_status, dependent.subscription_expiry):
        return {"already_active": True}

    titular = user_service.get_user(db, owner_id)
    base = settings_service.get_decimal(db, settings_service.DEPENDENT_PRICE)
    coupon = None
    if coupon_code:
        coupon = coupon_service.validate_coupon(
            db, coupon_code, CouponType.DEPENDENTE, owner_id
        ).raise_if_invalid()
    discount, final = coupon_service.apply_discount(base, coupon)

    intent = DependentIntent(dependent.id, coupon.id if coupon else None)
    if final == 0:
        return _activate_free(db, intent, owner_id, coupon)

    result = await _open_preference(
        db, gateway, intent, titular, f"Ativação de dependente - {dependent.name}", final, coupon
    )
    result["discount"] = discount
    return result


def agenda_price(db: Session, duration_days: int | None = None) -> tuple[int, Decimal]:
    """
    Price for `duration_days` of agenda access, billed per started period.

    Returns:
        (duration_days, amount)
    """
    period_days = settings_service.get_int(db, settings_service.AGENDA_ACCESS_DAYS)
    period_price = settings_service.get_decimal(db, settings_service.AGENDA_ACCESS_PRICE)
    days = duration_days or period_days
    if days <= 0 or days > MAX_AGENDA_DAYS:
        raise ValidationError(
            f"Duração deve estar entre 1 e {MAX_AGENDA_DAYS} dias", code="INVALID_DURATION"
        )
    periods = math.ceil(days / period_days)
    return days, coupon_service.quantize(period_price * periods)


async def create_agenda_preference(
    db: Session,
    gateway: PaymentGateway,
    professional_id: int,
    duration_days: int | None = None,
) -> dict:
    professional = user_service.get_user(db, professional_id)
    days, amount = agenda_price(db, duration_days)
    intent = AgendaAccessIntent(professional.id, days)
    return await _open_preference(
        db,
        gateway,
        intent,
        professional,
        f"Acesso à agenda - {days} dias",
        amount,
        back_path="/profissional/agenda",
    )


async def create_professional_payout_preference(
    db: Session,
    gateway: PaymentGateway,
    professional_id: int,
    amount,
) -> dict:
    """The professional pays the convênio its share of consultations."""
    try:
        amount = coupon_service.quantize(Decimal(str(amount)))
    except (InvalidOperation, ValueError):
        raise ValidationError("Valor inválido", code="INVALID_AMOUNT")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Valor deve ser maior que zero", code="INVALID_AMOUNT")

    professional = user_service.get_user(db, professional_id)
    intent = ProfessionalPayoutIntent(professional.id, amount)
    return await _open_preference(
        db,
        gateway,
        intent,
        professional,
        "Repasse ao convênio",
        amount,
        back_path="/profissional/repasse",
    )


# =============================================================================
# Activation protocol
# =============================================================================

def _apply_coupon(
    db: Session,
    coupon_id: int | None,
    coupon_type: CouponType,
    base_price_key: str,
    user_id: int,
    payment_reference: str,
    dependent_id: int | None = None,
) -> None:
    """Re-check and record the coupon attached to a paid intent."""
    if not coupon_id:
        return
    # Row lock serializes single-use checks for the same coupon
    coupon = db.query(Coupon).filter(Coupon.id == coupon_id).with_for_update().first()
    if not coupon:
        logger.warning("Coupon %s vanished before activation of %s, skipping", coupon_id, payment_reference)
        return
    if coupon_service.usage_exists(db, coupon.id, payment_reference):
        return
    if not coupon.is_active:
        logger.warning(
            "Coupon %s inactive at activation of %s, not recording usage", coupon.code, payment_reference
        )
        return
    if coupon.coupon_type != coupon_type.value:
        logger.warning(
            "Coupon %s is %s at activation of %s, expected %s, not recording usage",
            coupon.code,
            coupon.coupon_type,
            payment_reference,
            coupon_type.value,
        )
        return

    base = settings_service.get_decimal(db, base_price_key)
    discount = coupon_service.compute_discount(base, coupon)
    coupon_service.record_usage(db, coupon, user_id, payment_reference, discount, dependent_id=dependent_id)


def _activate_subscription(db: Session, intent: SubscriptionIntent, payment_reference: str) -> bool:
    user = db.query(User).filter(User.id == intent.user_id).with_for_update().first()
    if not user:
        raise NotFoundError("Usuário não encontrado", code="USER_NOT_FOUND")

    today = local_today()
    if is_current(user.subscription_status, user.subscription_expiry, today):
        logger.info("Subscription %s already active, acknowledging %s", user.id, payment_reference)
        return False

    duration = settings_service.get_int(db, settings_service.SUBSCRIPTION_DURATION_DAYS)
    updated = (
        db.query(User)
        .filter(
            User.id == user.id,
            or_(
                User.subscription_status != SubscriptionStatus.ACTIVE.value,
                User.subscription_expiry.is_(None),
                User.subscription_expiry < today,
            ),
        )
        .update(
            {
                "subscription_status": SubscriptionStatus.ACTIVE.value,
                "subscription_active": True,
                "subscription_expiry": today + timedelta(days=duration),
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        return False

    _apply_coupon(
        db,
        intent.coupon_id,
        CouponType.TITULAR,
        settings_service.SUBSCRIPTION_PRICE,
        user.id,
        payment_reference,
    )
    affiliate_service.mark_converted(db, user.id)
    notification_service.create_notification(
        db,
        user.id,
        NotificationType.SUBSCRIPTION_ACTIVATED,
        "Assinatura ativada",
        f"Sua assinatura do convênio está ativa por {duration} dias.",
    )
    logger.info("Subscription activated: user=%s reference=%s", user.id, payment_reference)
    return True


def _activate_dependent(db: Session, intent: DependentIntent, payment_reference: str) -> bool:
    dependent = (
        db.query(Dependent).filter(Dependent.id == intent.dependent_id).with_for_update().first()
    )
    if not dependent:
        raise NotFoundError("Dependente não encontrado", code="DEPENDENT_NOT_FOUND")

    today = local_today()
    if is_current(dependent.subscription_status, dependent.subscription_expiry, today):
        logger.info("Dependent %s already active, acknowledging %s", dependent.id, payment_reference)
        return False

    duration = settings_service.get_int(db, settings_service.SUBSCRIPTION_DURATION_DAYS)
    updated = (
        db.query(Dependent)
        .filter(
            Dependent.id == dependent.id,
            or_(
                Dependent.subscription_status != SubscriptionStatus.ACTIVE.value,
                Dependent.subscription_expiry.is_(None),
                Dependent.subscription_expiry < today,
            ),
        )
        .update(
            {
                "subscription_status": SubscriptionStatus.ACTIVE.value,
                "subscription_active": True,
                "subscription_expiry": today + timedelta(days=duration),
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        return False

    _apply_coupon(
        db,
        intent.coupon_id,
        CouponType.DEPENDENTE,
        settings_service.DEPENDENT_PRICE,
        dependent.user_id,
        payment_reference,
        dependent_id=dependent.id,
    )
    notification_service.create_notification(
        db,
        dependent.user_id,
        NotificationType.DEPENDENT_ACTIVATED,
        "Dependente ativado",
        f"O dependente {dependent.name} está ativo por {duration} dias.",
    )
    logger.info(
        "Dependent activated: dependent=%s titular=%s reference=%s",
        dependent.id,
        dependent.user_id,
        payment_reference,
    )
    return True


def _acknowledge_payout(db: Session, intent: ProfessionalPayoutIntent, payment_reference: str) -> bool:
    notification_service.create_notification(
        db,
        intent.professional_id,
        NotificationType.PAYOUT_RECEIVED,
        "Repasse confirmado",
        f"Recebemos seu repasse de R$ {intent.amount:.2f}.",
    )
    logger.info(
        "Professional payout received: professional=%s amount=%s reference=%s",
        intent.professional_id,
        intent.amount,
        payment_reference,
    )
    return True


def activate(db: Session, intent: PaymentIntent, payment_reference: str) -> bool:
    """
    Apply the domain effect of a paid (or free) intent. Caller commits.

    Returns True when state changed, False when the effect was already applied.
    """
    if isinstance(intent, SubscriptionIntent):
        return _activate_subscription(db, intent, payment_reference)
    if isinstance(intent, DependentIntent):
        return _activate_dependent(db, intent, payment_reference)
    if isinstance(intent, AgendaAccessIntent):
        return scheduling_access_service.activate_paid(db, intent, payment_reference) is not None
    if isinstance(intent, ProfessionalPayoutIntent):
        return _acknowledge_payout(db, intent, payment_reference)
    raise TypeError(f"Unsupported payment intent: {intent!r}")


# =============================================================================
# Gateway notifications
# =============================================================================

def _find_ledger_row(db: Session, payment: GatewayPayment, reference: str) -> Payment | None:
    row = (
        db.query(Payment)
        .filter(Payment.mp_payment_id == payment.payment_id)
        .with_for_update()
        .first()
    )
    if row:
        return row
    return (
        db.query(Payment)
        .filter(
            Payment.external_reference == reference,
            Payment.mp_payment_id.is_(None),
            Payment.processed_at.is_(None),
        )
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .with_for_update()
        .first()
    )


def _upsert_ledger(db: Session, payment: GatewayPayment, intent: PaymentIntent) -> Payment:
    """Ledger row for this gateway payment, created when the preference row is missing."""
    reference = intent.to_reference()
    row = _find_ledger_row(db, payment, reference)
    if row:
        row.mp_payment_id = payment.payment_id
        return row

    row = Payment(
        user_id=_ledger_user_id(db, intent),
        kind=intent.kind.value,
        target_id=intent.target_id,
        external_reference=reference,
        mp_payment_id=payment.payment_id,
        amount=payment.transaction_amount or Decimal("0.00"),
        status=PaymentStatus.PENDING.value,
        coupon_id=getattr(intent, "coupon_id", None),
    )
    try:
        with db.begin_nested():
            db.add(row)
    except IntegrityError:
        # Concurrent delivery for the same gateway payment
        row = (
            db.query(Payment)
            .filter(Payment.mp_payment_id == payment.payment_id)
            .with_for_update()
            .first()
        )
        if row is None:
            raise
    return row


async def handle_payment_notification(
    db: Session,
    gateway: PaymentGateway,
    payment_id: str,
) -> dict:
    """
    Process a gateway payment notification end to end.

    The payment is fetched from the gateway (webhook bodies are not trusted).
    Non-approved statuses only update the ledger. Approved payments run the
    activation protocol with the gateway payment id as the reference; the
    ledger update and the activation commit together.

    Raises:
        PaymentGatewayError: gateway fetch failed (caller schedules a replay)
    """
    payment = await gateway.get_payment(payment_id)
    outcome = {"payment_id": payment.payment_id, "status": payment.status, "activated": False}

    try:
        intent = parse_reference(payment.external_reference)
    except InvalidReferenceError as e:
        logger.warning("Ignoring payment %s: %s", payment.payment_id, e)
        outcome["ignored"] = True
        return outcome

    try:
        ledger = _upsert_ledger(db, payment, intent)
        if payment.status != PaymentStatus.APPROVED.value:
            ledger.status = payment.status
            db.commit()
            logger.info(
                "Payment %s not approved (status=%s, reference=%s)",
                payment.payment_id,
                payment.status,
                payment.external_reference,
            )
            return outcome

        if ledger.processed_at is not None:
            db.commit()
            logger.info("Payment %s already processed, acknowledging", payment.payment_id)
            return outcome

        outcome["activated"] = activate(db, intent, str(payment.payment_id))
        ledger.status = PaymentStatus.APPROVED.value
        ledger.processed_at = utc_now()
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Payment %s processed (reference=%s, activated=%s)",
        payment.payment_id,
        payment.external_reference,
        outcome["activated"],
    )
    return outcome
