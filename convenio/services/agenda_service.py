"""Agenda service - professional scheduling.

Handles:
- Patient references (private patient or convênio client/dependent)
- Slot conflict detection under a per-professional lock
- Recurring series, created all-or-nothing
- Update, cancellation and deletion workflows
- Day listing in local business time
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import NamedTuple, Union
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from convenio.core.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from convenio.core.timeutils import as_utc, local_day_bounds, local_today, local_tz, to_utc, utc_now
from convenio.db.enums import (
    AppointmentStatus,
    PatientType,
    RecurrenceInterval,
    SubscriptionStatus,
)
from convenio.db.models import (
    Appointment,
    AttendanceLocation,
    Dependent,
    PrivatePatient,
    Service,
    User,
)

logger = logging.getLogger(__name__)

MAX_OCCURRENCES = 52
EDITABLE_STATUSES = {
    AppointmentStatus.SCHEDULED.value,
    AppointmentStatus.CONFIRMED.value,
    AppointmentStatus.COMPLETED.value,
    AppointmentStatus.NO_SHOW.value,
}


# =============================================================================
# Types
# =============================================================================

@dataclass(frozen=True)
class PrivatePatientRef:
    private_patient_id: int


@dataclass(frozen=True)
class ClientPatientRef:
    client_user_id: int
    dependent_id: int | None = None


PatientRef = Union[PrivatePatientRef, ClientPatientRef]


@dataclass(frozen=True)
class AppointmentInput:
    professional_id: int
    patient: PatientRef
    service_id: int
    appointment_at: datetime
    location_id: int | None = None
    value: Decimal | None = None
    notes: str | None = None


@dataclass(frozen=True)
class Recurrence:
    interval: RecurrenceInterval
    count: int | None = None
    until: date | None = None


class Slot(NamedTuple):
    """Occupied interval [start, end). Instant slots have start == end."""
    start: datetime
    end: datetime


# =============================================================================
# Lookups
# =============================================================================

def _get_service(db: Session, service_id: int) -> Service:
    service = db.query(Service).filter(Service.id == service_id).first()
    if not service:
        raise NotFoundError("Serviço não encontrado", code="SERVICE_NOT_FOUND")
    return service


def _check_location(db: Session, professional_id: int, location_id: int | None) -> None:
    if location_id is None:
        return
    location = (
        db.query(AttendanceLocation)
        .filter(
            AttendanceLocation.id == location_id,
            AttendanceLocation.professional_id == professional_id,
        )
        .first()
    )
    if not location:
        raise NotFoundError("Local de atendimento não encontrado", code="LOCATION_NOT_FOUND")


def resolve_patient(db: Session, professional_id: int, patient: PatientRef) -> dict:
    """
    Validate a patient reference and return the appointment columns for it.

    Raises:
        NotFoundError: unknown patient, or a private patient of someone else
        ValidationError: client without an active subscription
    """
    if isinstance(patient, PrivatePatientRef):
        row = (
            db.query(PrivatePatient)
            .filter(
                PrivatePatient.id == patient.private_patient_id,
                PrivatePatient.professional_id == professional_id,
            )
            .first()
        )
        if not row:
            raise NotFoundError("Paciente particular não encontrado", code="PATIENT_NOT_FOUND")
        return {
            "private_patient_id": row.id,
            "client_user_id": None,
            "dependent_id": None,
            "patient_type": PatientType.PRIVATE.value,
        }

    client = db.query(User).filter(User.id == patient.client_user_id).first()
    if not client:
        raise NotFoundError("Cliente não encontrado", code="CLIENT_NOT_FOUND")
    if client.subscription_status != SubscriptionStatus.ACTIVE.value:
        raise ValidationError("Cliente sem assinatura ativa", code="SUBSCRIPTION_INACTIVE")

    if patient.dependent_id is not None:
        dependent = (
            db.query(Dependent)
            .filter(Dependent.id == patient.dependent_id, Dependent.user_id == client.id)
            .first()
        )
        if not dependent:
            raise NotFoundError("Dependente não encontrado", code="DEPENDENT_NOT_FOUND")

    return {
        "private_patient_id": None,
        "client_user_id": client.id,
        "dependent_id": patient.dependent_id,
        "patient_type": PatientType.CONVENIO.value,
    }


def get_owned_appointment(db: Session, appointment_id: int, professional_id: int) -> Appointment:
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if not appointment:
        raise NotFoundError("Agendamento não encontrado", code="APPOINTMENT_NOT_FOUND")
    if appointment.professional_id != professional_id:
        raise ForbiddenError("Agendamento pertence a outro profissional", code="FORBIDDEN")
    return appointment


# =============================================================================
# Conflict detection
# =============================================================================

def slot_for(service: Service, start: datetime) -> Slot:
    start = to_utc(start)
    if service.duration_minutes:
        return Slot(start, start + timedelta(minutes=service.duration_minutes))
    return Slot(start, start)


def _lock_professional(db: Session, professional_id: int) -> None:
    """Row lock serializing agenda writes for one professional (PostgreSQL)."""
    db.query(User.id).filter(User.id == professional_id).with_for_update().first()


def find_conflict(
    db: Session,
    professional_id: int,
    slot: Slot,
    exclude_appointment_id: int | None = None,
) -> Appointment | None:
    """
    First non-cancelled appointment of the professional overlapping `slot`.

    Same start always conflicts; otherwise intervals conflict when they
    strictly overlap, so back-to-back slots are allowed.
    """
    query = (
        db.query(Appointment)
        .filter(
            Appointment.professional_id == professional_id,
            Appointment.status != AppointmentStatus.CANCELLED.value,
            or_(
                Appointment.appointment_at == slot.start,
                and_(Appointment.appointment_at < slot.end, Appointment.ends_at > slot.start),
            ),
        )
    )
    if exclude_appointment_id is not None:
        query = query.filter(Appointment.id != exclude_appointment_id)
    return query.order_by(Appointment.appointment_at).with_for_update().first()


def _value_for(service: Service, value: Decimal | None) -> Decimal:
    amount = Decimal(service.base_price if value is None else value)
    if not amount.is_finite() or amount < 0:
        raise ValidationError("Valor inválido", code="INVALID_VALUE")
    return amount.quantize(Decimal("0.01"))


def _build(data: AppointmentInput, patient_fields: dict, slot: Slot, value: Decimal, **extra) -> Appointment:
    return Appointment(
        professional_id=data.professional_id,
        service_id=data.service_id,
        location_id=data.location_id,
        appointment_at=slot.start,
        ends_at=slot.end,
        status=AppointmentStatus.SCHEDULED.value,
        value=value,
        notes=data.notes,
        **patient_fields,
        **extra,
    )


# =============================================================================
# Create
# =============================================================================

def create_appointment(db: Session, data: AppointmentInput) -> Appointment:
    """
    Book a single appointment.

    Raises:
        ConflictError: APPOINTMENT_CONFLICT when the slot overlaps
    """
    service = _get_service(db, data.service_id)
    patient_fields = resolve_patient(db, data.professional_id, data.patient)
    _check_location(db, data.professional_id, data.location_id)
    value = _value_for(service, data.value)
    slot = slot_for(service, data.appointment_at)

    _lock_professional(db, data.professional_id)
    conflict = find_conflict(db, data.professional_id, slot)
    if conflict:
        db.rollback()
        raise ConflictError(
            "Já existe um agendamento neste horário",
            code="APPOINTMENT_CONFLICT",
            conflicting_appointment_id=conflict.id,
        )

    appointment = _build(data, patient_fields, slot, value)
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    logger.info(
        "Appointment %s created: professional=%s at=%s",
        appointment.id,
        data.professional_id,
        slot.start.isoformat(),
    )
    return appointment


def _add_months(value: datetime, months: int) -> datetime:
    """Same day-of-month `months` later, clamped to the month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def occurrence_times(start: datetime, recurrence: Recurrence) -> list[datetime]:
    """
    Start times of a series in UTC.

    Steps are taken in local wall-clock time so a series keeps its hour.
    `until` is an inclusive local date. At most MAX_OCCURRENCES are produced.
    """
    if (recurrence.count is None) == (recurrence.until is None):
        raise ValidationError(
            "Informe o número de ocorrências ou a data final", code="INVALID_RECURRENCE"
        )
    if recurrence.count is not None and recurrence.count < 1:
        raise ValidationError("Número de ocorrências inválido", code="INVALID_RECURRENCE")

    limit = min(recurrence.count or MAX_OCCURRENCES, MAX_OCCURRENCES)
    first = to_utc(start).astimezone(local_tz())

    times: list[datetime] = []
    index = 0
    while len(times) < limit:
        if recurrence.interval == RecurrenceInterval.MONTHLY:
            current = _add_months(first, index)
        else:
            step_days = {
                RecurrenceInterval.DAILY: 1,
                RecurrenceInterval.WEEKLY: 7,
                RecurrenceInterval.BIWEEKLY: 14,
            }[recurrence.interval]
            current = first + timedelta(days=step_days * index)
        if recurrence.until is not None and current.date() > recurrence.until:
            break
        times.append(to_utc(current.replace(tzinfo=local_tz())))
        index += 1

    if not times:
        raise ValidationError("A recorrência não gera nenhuma ocorrência", code="INVALID_RECURRENCE")
    return times


def create_recurring_series(
    db: Session,
    data: AppointmentInput,
    recurrence: Recurrence,
) -> list[Appointment]:
    """
    Book every occurrence of a series, or none.

    Each occurrence is checked against the store, which already holds the
    earlier occurrences of this series (flushed inside the savepoint).

    Raises:
        ConflictError: RECURRING_CONFLICT with the 1-based occurrence and its time
    """
    service = _get_service(db, data.service_id)
    patient_fields = resolve_patient(db, data.professional_id, data.patient)
    _check_location(db, data.professional_id, data.location_id)
    value = _value_for(service, data.value)
    times = occurrence_times(data.appointment_at, recurrence)
    group_id = uuid4().hex

    _lock_professional(db, data.professional_id)
    created: list[Appointment] = []
    try:
        with db.begin_nested():
            for occurrence, start in enumerate(times, start=1):
                slot = slot_for(service, start)
                if find_conflict(db, data.professional_id, slot):
                    raise ConflictError(
                        "Conflito de horário na série recorrente",
                        code="RECURRING_CONFLICT",
                        occurrence=occurrence,
                        appointment_at=slot.start.isoformat(),
                    )
                appointment = _build(
                    data,
                    patient_fields,
                    slot,
                    value,
                    is_recurring=True,
                    recurring_group_id=group_id,
                )
                db.add(appointment)
                db.flush()
                created.append(appointment)
    except ConflictError:
        db.rollback()
        logger.info(
            "Recurring series rejected for professional %s (%s occurrences)",
            data.professional_id,
            len(times),
        )
        raise

    db.commit()
    for appointment in created:
        db.refresh(appointment)
    logger.info(
        "Recurring series %s created: professional=%s occurrences=%s",
        group_id,
        data.professional_id,
        len(created),
    )
    return created


# =============================================================================
# Update / cancel / delete
# =============================================================================

def update_appointment(
    db: Session,
    appointment_id: int,
    professional_id: int,
    patch: dict,
) -> Appointment:
    """
    Apply a partial update. A time or service change re-runs the conflict check.

    Allowed keys: appointment_at, service_id, location_id, notes, value, status.
    """
    appointment = get_owned_appointment(db, appointment_id, professional_id)
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise ValidationError(
            "Agendamentos cancelados não podem ser editados", code="APPOINTMENT_CANCELLED"
        )

    status = patch.get("status")
    if status is not None:
        status = getattr(status, "value", status)
        if status not in EDITABLE_STATUSES:
            raise ValidationError("Status inválido", code="INVALID_STATUS")

    service = appointment.service
    if patch.get("service_id") is not None and patch["service_id"] != appointment.service_id:
        service = _get_service(db, patch["service_id"])
    if "location_id" in patch:
        _check_location(db, professional_id, patch["location_id"])

    reschedule = (
        patch.get("appointment_at") is not None
        or service.id != appointment.service_id
    )
    if reschedule:
        start = patch.get("appointment_at") or as_utc(appointment.appointment_at)
        slot = slot_for(service, start)
        _lock_professional(db, professional_id)
        if find_conflict(db, professional_id, slot, exclude_appointment_id=appointment.id):
            db.rollback()
            raise ConflictError("Já existe um agendamento neste horário", code="APPOINTMENT_CONFLICT")
        appointment.appointment_at = slot.start
        appointment.ends_at = slot.end
        appointment.service_id = service.id

    if "location_id" in patch:
        appointment.location_id = patch["location_id"]
    if "notes" in patch:
        appointment.notes = patch["notes"]
    if patch.get("value") is not None:
        appointment.value = _value_for(service, patch["value"])
    if status is not None:
        appointment.status = status

    db.commit()
    db.refresh(appointment)
    logger.info("Appointment %s updated by professional %s", appointment.id, professional_id)
    return appointment


def cancel_appointment(
    db: Session,
    appointment_id: int,
    professional_id: int,
    reason: str | None = None,
) -> Appointment:
    """Cancel an appointment, keeping it for the cancelled report."""
    appointment = get_owned_appointment(db, appointment_id, professional_id)
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise ValidationError("Agendamento já cancelado", code="ALREADY_CANCELLED")
    if appointment.status == AppointmentStatus.COMPLETED.value:
        raise ValidationError(
            "Consultas realizadas não podem ser canceladas", code="APPOINTMENT_COMPLETED"
        )

    appointment.status = AppointmentStatus.CANCELLED.value
    appointment.cancellation_reason = (reason or "").strip() or None
    appointment.cancelled_at = utc_now()
    appointment.cancelled_by = professional_id

    db.commit()
    db.refresh(appointment)
    logger.info("Appointment %s cancelled by %s", appointment.id, professional_id)
    return appointment


def delete_appointment(db: Session, appointment_id: int, professional_id: int) -> None:
    appointment = get_owned_appointment(db, appointment_id, professional_id)
    if appointment.status == AppointmentStatus.COMPLETED.value:
        raise ValidationError(
            "Consultas realizadas não podem ser excluídas", code="APPOINTMENT_COMPLETED"
        )
    db.delete(appointment)
    db.commit()
    logger.info("Appointment %s deleted by %s", appointment_id, professional_id)


# =============================================================================
# Listing
# =============================================================================

def list_appointments(db: Session, professional_id: int, day: date | None = None) -> list[Appointment]:
    """All of the professional's appointments on a local day, cancelled included."""
    start, end = local_day_bounds(day or local_today())
    return (
        db.query(Appointment)
        .filter(
            Appointment.professional_id == professional_id,
            Appointment.appointment_at >= start,
            Appointment.appointment_at < end,
        )
        .order_by(Appointment.appointment_at, Appointment.id)
        .all()
    )


def list_services(db: Session) -> list[Service]:
    return db.query(Service).order_by(Service.name).all()


def list_private_patients(db: Session, professional_id: int) -> list[PrivatePatient]:
    return (
        db.query(PrivatePatient)
        .filter(PrivatePatient.professional_id == professional_id)
        .order_by(PrivatePatient.name)
        .all()
    )


def create_private_patient(db: Session, professional_id: int, data: dict) -> PrivatePatient:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Nome é obrigatório", code="NAME_REQUIRED")
    patient = PrivatePatient(
        professional_id=professional_id,
        name=name,
        cpf=data.get("cpf"),
        email=data.get("email"),
        phone=data.get("phone"),
        birth_date=data.get("birth_date"),
    )
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient
