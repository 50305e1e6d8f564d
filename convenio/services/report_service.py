"""
Report service - professional revenue and cancelled consultations.

Periods are inclusive local dates. Money stays Decimal, quantized to cents.
"""

from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.orm import Session

from convenio.core.errors import NotFoundError, ValidationError
from convenio.core.timeutils import as_utc, local_period_bounds, local_tz
from convenio.db.enums import AppointmentStatus, PatientType
from convenio.db.models import Appointment, Dependent, PrivatePatient, Service, User
from convenio.services import settings_service

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal(100)


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def _check_period(start: date | None, end: date | None) -> None:
    if start and end and start > end:
        raise ValidationError("Data inicial deve ser anterior à final", code="INVALID_PERIOD")


def professional_percentage(db: Session, professional: User) -> Decimal:
    """Share the professional keeps: per-user override, else 100 - convênio share."""
    if professional.professional_percentage is not None:
        return Decimal(professional.professional_percentage)
    share = settings_service.get_decimal(db, settings_service.CONVENIO_SHARE_PERCENTAGE)
    return HUNDRED - share


def amount_owed(value: Decimal, percentage: Decimal) -> Decimal:
    """Convênio's part of a consultation value."""
    return _money(Decimal(value) * (HUNDRED - percentage) / HUNDRED)


# =============================================================================
# Name lookups
# =============================================================================

def _names(db: Session, model, ids: set[int]) -> dict[int, str]:
    ids = {i for i in ids if i is not None}
    if not ids:
        return {}
    return {row.id: row.name for row in db.query(model.id, model.name).filter(model.id.in_(ids)).all()}


def _row_context(db: Session, rows: list[Appointment]) -> dict:
    return {
        "users": _names(
            db,
            User,
            {r.client_user_id for r in rows}
            | {r.cancelled_by for r in rows}
            | {r.professional_id for r in rows},
        ),
        "dependents": _names(db, Dependent, {r.dependent_id for r in rows}),
        "private": _names(db, PrivatePatient, {r.private_patient_id for r in rows}),
        "services": _names(db, Service, {r.service_id for r in rows}),
    }


def _patient_name(row: Appointment, ctx: dict) -> str | None:
    if row.private_patient_id is not None:
        return ctx["private"].get(row.private_patient_id)
    if row.dependent_id is not None:
        return ctx["dependents"].get(row.dependent_id)
    return ctx["users"].get(row.client_user_id)


def _local_iso(value) -> str:
    return as_utc(value).astimezone(local_tz()).isoformat()


# =============================================================================
# Professional revenue
# =============================================================================

def professional_revenue(db: Session, professional_id: int, start: date, end: date) -> dict:
    """
    Completed consultations of a professional in [start, end] and what is owed.

    amount_to_pay only counts convênio consultations; private patients pay
    the professional directly.
    """
    _check_period(start, end)
    professional = db.query(User).filter(User.id == professional_id).first()
    if not professional:
        raise NotFoundError("Profissional não encontrado", code="PROFESSIONAL_NOT_FOUND")

    period_start, period_end = local_period_bounds(start, end)
    rows = (
        db.query(Appointment)
        .filter(
            Appointment.professional_id == professional_id,
            Appointment.status == AppointmentStatus.COMPLETED.value,
            Appointment.appointment_at >= period_start,
            Appointment.appointment_at < period_end,
        )
        .order_by(Appointment.appointment_at, Appointment.id)
        .all()
    )

    percentage = professional_percentage(db, professional)
    ctx = _row_context(db, rows)
    convenio_revenue = ZERO
    private_revenue = ZERO
    consultations = []
    for row in rows:
        value = _money(row.value)
        is_convenio = row.patient_type == PatientType.CONVENIO.value
        if is_convenio:
            convenio_revenue += value
        else:
            private_revenue += value
        consultations.append({
            "id": row.id,
            "appointment_at": _local_iso(row.appointment_at),
            "patient_name": _patient_name(row, ctx),
            "service_name": ctx["services"].get(row.service_id),
            "patient_type": row.patient_type,
            "value": value,
            "amount_to_pay": amount_owed(value, percentage) if is_convenio else ZERO,
        })

    return {
        "summary": {
            "professional_percentage": percentage,
            "total_revenue": _money(convenio_revenue + private_revenue),
            "consultation_count": len(rows),
            "convenio_revenue": _money(convenio_revenue),
            "private_revenue": _money(private_revenue),
            "amount_to_pay": amount_owed(convenio_revenue, percentage),
        },
        "consultations": consultations,
    }


def revenue_overview(db: Session, start: date, end: date) -> dict:
    """Admin view: completed revenue grouped by professional and by service."""
    _check_period(start, end)
    period_start, period_end = local_period_bounds(start, end)
    rows = (
        db.query(Appointment)
        .filter(
            Appointment.status == AppointmentStatus.COMPLETED.value,
            Appointment.appointment_at >= period_start,
            Appointment.appointment_at < period_end,
        )
        .all()
    )
    ctx = _row_context(db, rows)

    by_professional: dict[int, dict] = {}
    by_service: dict[int, dict] = {}
    total = ZERO
    for row in rows:
        value = _money(row.value)
        total += value
        prof = by_professional.setdefault(row.professional_id, {
            "professional_id": row.professional_id,
            "professional_name": ctx["users"].get(row.professional_id),
            "consultation_count": 0,
            "revenue": ZERO,
            "convenio_revenue": ZERO,
        })
        prof["consultation_count"] += 1
        prof["revenue"] += value
        if row.patient_type == PatientType.CONVENIO.value:
            prof["convenio_revenue"] += value

        svc = by_service.setdefault(row.service_id, {
            "service_id": row.service_id,
            "service_name": ctx["services"].get(row.service_id),
            "consultation_count": 0,
            "revenue": ZERO,
        })
        svc["consultation_count"] += 1
        svc["revenue"] += value

    professionals = {
        u.id: u for u in db.query(User).filter(User.id.in_(set(by_professional))).all()
    } if by_professional else {}
    for professional_id, entry in by_professional.items():
        percentage = professional_percentage(db, professionals[professional_id])
        entry["professional_percentage"] = percentage
        entry["clinic_revenue"] = amount_owed(entry["convenio_revenue"], percentage)

    return {
        "total_revenue": _money(total),
        "revenue_by_professional": sorted(
            by_professional.values(), key=lambda e: e["revenue"], reverse=True
        ),
        "revenue_by_service": sorted(by_service.values(), key=lambda e: e["revenue"], reverse=True),
    }


# =============================================================================
# Cancelled consultations
# =============================================================================

def cancelled_consultations(
    db: Session,
    start: date | None = None,
    end: date | None = None,
    professional_id: int | None = None,
) -> list[dict]:
    """Cancelled appointments by appointment date, newest cancellation first."""
    _check_period(start, end)
    query = db.query(Appointment).filter(
        Appointment.status == AppointmentStatus.CANCELLED.value
    )
    if start:
        query = query.filter(Appointment.appointment_at >= local_period_bounds(start, start)[0])
    if end:
        query = query.filter(Appointment.appointment_at < local_period_bounds(end, end)[1])
    if professional_id is not None:
        query = query.filter(Appointment.professional_id == professional_id)

    rows = query.order_by(
        Appointment.cancelled_at.desc(), Appointment.appointment_at.desc(), Appointment.id.desc()
    ).all()
    ctx = _row_context(db, rows)
    return [
        {
            "id": row.id,
            "appointment_at": _local_iso(row.appointment_at),
            "professional_id": row.professional_id,
            "professional_name": ctx["users"].get(row.professional_id),
            "patient_name": _patient_name(row, ctx),
            "patient_type": row.patient_type,
            "service_name": ctx["services"].get(row.service_id),
            "value": _money(row.value),
            "cancellation_reason": row.cancellation_reason,
            "cancelled_at": _local_iso(row.cancelled_at) if row.cancelled_at else None,
            "cancelled_by": row.cancelled_by,
            "cancelled_by_name": ctx["users"].get(row.cancelled_by),
        }
        for row in rows
    ]
