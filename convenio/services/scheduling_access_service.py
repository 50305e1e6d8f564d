"""
Scheduling access service - time-bounded agenda entitlement for professionals.

Access is granted either by payment (agenda intent) or by an admin. Only one
row per professional is active at a time; granting deactivates older rows.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from convenio.core.errors import NotFoundError, ValidationError
from convenio.core.timeutils import as_utc, to_utc, utc_now
from convenio.db.enums import NotificationType, Role
from convenio.db.models import SchedulingAccess, User
from convenio.services import notification_service, settings_service
from convenio.services.payment_intents import AgendaAccessIntent

logger = logging.getLogger(__name__)


def get_active_access(db: Session, professional_id: int, now: datetime | None = None) -> SchedulingAccess | None:
    """Newest active, unexpired access row."""
    now = now or utc_now()
    return (
        db.query(SchedulingAccess)
        .filter(
            SchedulingAccess.professional_id == professional_id,
            SchedulingAccess.is_active.is_(True),
            SchedulingAccess.expires_at > now,
        )
        .order_by(SchedulingAccess.expires_at.desc(), SchedulingAccess.id.desc())
        .first()
    )


def has_access(db: Session, professional_id: int) -> bool:
    return get_active_access(db, professional_id) is not None


def get_status(db: Session, professional_id: int) -> dict:
    """Access state plus the current price for the purchase screen."""
    access = get_active_access(db, professional_id)
    return {
        "has_access": access is not None,
        "expires_at": as_utc(access.expires_at) if access else None,
        "price": settings_service.get_decimal(db, settings_service.AGENDA_ACCESS_PRICE),
        "duration_days": settings_service.get_int(db, settings_service.AGENDA_ACCESS_DAYS),
    }


def get_professional(db: Session, professional_id: int) -> User:
    user = db.query(User).filter(User.id == professional_id).first()
    if not user or not user.has_role(Role.PROFESSIONAL):
        raise NotFoundError("Profissional não encontrado", code="PROFESSIONAL_NOT_FOUND")
    return user


def _deactivate_all(db: Session, professional_id: int) -> int:
    return (
        db.query(SchedulingAccess)
        .filter(
            SchedulingAccess.professional_id == professional_id,
            SchedulingAccess.is_active.is_(True),
        )
        .update({"is_active": False}, synchronize_session=False)
    )


# =============================================================================
# Paid activation
# =============================================================================

def activate_paid(
    db: Session,
    intent: AgendaAccessIntent,
    payment_reference: str,
) -> SchedulingAccess | None:
    """
    Activate access bought through the gateway. Caller commits.

    Extends from the later of now and the current expiry. A replayed
    payment_reference hits the unique constraint and is a no-op (returns None).
    """
    existing = (
        db.query(SchedulingAccess)
        .filter(SchedulingAccess.payment_reference == payment_reference)
        .first()
    )
    if existing:
        return None

    # Serialize concurrent grants for the same professional
    professional = (
        db.query(User).filter(User.id == intent.professional_id).with_for_update().first()
    )
    if not professional:
        raise NotFoundError("Profissional não encontrado", code="PROFESSIONAL_NOT_FOUND")

    now = utc_now()
    current = get_active_access(db, intent.professional_id, now)
    start = max(now, as_utc(current.expires_at)) if current else now
    expires_at = start + timedelta(days=intent.duration_days)

    access = SchedulingAccess(
        professional_id=intent.professional_id,
        expires_at=expires_at,
        is_active=True,
        reason="payment",
        payment_reference=payment_reference,
    )
    try:
        with db.begin_nested():
            _deactivate_all(db, intent.professional_id)
            db.add(access)
    except IntegrityError:
        logger.info("Agenda access for %s already recorded, skipping", payment_reference)
        return None

    notification_service.create_notification(
        db,
        intent.professional_id,
        NotificationType.AGENDA_ACCESS_ACTIVATED,
        "Agenda liberada",
        f"Seu acesso à agenda foi liberado por {intent.duration_days} dias.",
    )
    logger.info(
        "Agenda access activated: professional=%s days=%s reference=%s",
        intent.professional_id,
        intent.duration_days,
        payment_reference,
    )
    return access


# =============================================================================
# Admin
# =============================================================================

def grant(
    db: Session,
    professional_id: int,
    expires_at: datetime,
    granted_by: int,
    reason: str | None = None,
) -> SchedulingAccess:
    """Admin grant with an explicit expiry."""
    get_professional(db, professional_id)
    expires_at = to_utc(expires_at)
    if expires_at <= utc_now():
        raise ValidationError("Data de expiração deve ser futura", code="INVALID_EXPIRY")

    _deactivate_all(db, professional_id)
    access = SchedulingAccess(
        professional_id=professional_id,
        expires_at=expires_at,
        is_active=True,
        granted_by=granted_by,
        reason=reason,
    )
    db.add(access)
    db.commit()
    db.refresh(access)
    logger.info("Scheduling access granted: professional=%s by admin=%s", professional_id, granted_by)
    return access


def revoke(db: Session, professional_id: int, revoked_by: int) -> int:
    get_professional(db, professional_id)
    count = _deactivate_all(db, professional_id)
    db.commit()
    logger.info("Scheduling access revoked: professional=%s by admin=%s", professional_id, revoked_by)
    return count


def list_professionals(db: Session) -> list[dict]:
    """Every professional with their current access state."""
    now = utc_now()
    professionals = db.query(User).order_by(User.name).all()
    rows = []
    for user in professionals:
        if not user.has_role(Role.PROFESSIONAL):
            continue
        access = get_active_access(db, user.id, now)
        rows.append({
            "professional_id": user.id,
            "name": user.name,
            "has_access": access is not None,
            "expires_at": as_utc(access.expires_at) if access else None,
            "granted_by": access.granted_by if access else None,
            "reason": access.reason if access else None,
        })
    return rows
