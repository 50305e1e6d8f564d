"""Scheduling router - professional agenda, private patients and access status."""

from datetime import date

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from convenio.core.deps import get_db, require_roles, require_scheduling_access
from convenio.db.enums import Role
from convenio.schemas.agenda import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentRead,
    AppointmentUpdate,
    PrivatePatientCreate,
    PrivatePatientRead,
    RecurringCreate,
    RecurringSeriesResponse,
    SchedulingAccessStatus,
    ServiceRead,
)
from convenio.schemas.auth import UserSession
from convenio.services import agenda_service, scheduling_access_service
from convenio.services.agenda_service import AppointmentInput, Recurrence

router = APIRouter()
access_router = APIRouter()


def _appointment_input(professional_id: int, data: AppointmentCreate) -> AppointmentInput:
    return AppointmentInput(
        professional_id=professional_id,
        patient=data.to_patient_ref(),
        service_id=data.service_id,
        appointment_at=data.appointment_at,
        location_id=data.location_id,
        value=data.value,
        notes=data.notes,
    )


# =============================================================================
# Appointments
# =============================================================================

@router.get("/appointments", response_model=list[AppointmentRead])
def list_appointments(
    day: date | None = Query(None, alias="date"),
    session: UserSession = Depends(require_scheduling_access),
    db: Session = Depends(get_db),
):
    """Appointments on a local day (default today), cancelled included."""
    return agenda_service.list_appointments(db, session.user_id, day)


@router.post("/appointments", response_model=AppointmentRead, status_code=201)
def create_appointment(
    data: AppointmentCreate,
    session: UserSession = Depends(require_scheduling_access),
    db: Session = Depends(get_db),
):
    return agenda_service.create_appointment(db, _appointment_input(session.user_id, data))


@router.post("/appointments/recurring", response_model=RecurringSeriesResponse, status_code=201)
def create_recurring(
    data: RecurringCreate,
    session: UserSession = Depends(require_scheduling_access),
    db: Session = Depends(get_db),
):
    """Book a whole series. Any conflicting occurrence rejects the series."""
    appointments = agenda_service.create_recurring_series(
        db,
        _appointment_input(session.user_id, data),
        Recurrence(
            interval=data.recurrence.interval,
            count=data.recurrence.count,
            until=data.recurrence.until,
        ),
    )
    return RecurringSeriesResponse(
        recurring_group_id=appointments[0].recurring_group_id,
        count=len(appointments),
        appointments=[AppointmentRead.model_validate(a) for a in appointments],
    )


@router.put("/appointments/{appointment_id}", response_model=AppointmentRead)
def update_appointment(
    appointment_id: int,
    data: AppointmentUpdate,
    session: UserSession = Depends(require_scheduling_access),
    db: Session = Depends(get_db),
):
    return agenda_service.update_appointment(
        db, appointment_id, session.user_id, data.model_dump(exclude_unset=True)
    )


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentRead)
def cancel_appointment(
    appointment_id: int,
    data: AppointmentCancel | None = None,
    session: UserSession = Depends(require_scheduling_access),
    db: Session = Depends(get_db),
):
    return agenda_service.cancel_appointment(
        db, appointment_id, session.user_id, data.reason if data else None
    )


@router.delete("/appointments/{appointment_id}", status_code=204)
def delete_appointment(
    appointment_id: int,
    session: UserSession = Depends(require_scheduling_access),
    db: Session = Depends(get_db),
):
    agenda_service.delete_appointment(db, appointment_id, session.user_id)
    return Response(status_code=204)


# =============================================================================
# Catalog and private patients
# =============================================================================

@router.get("/services", response_model=list[ServiceRead])
def list_services(
    session: UserSession = Depends(require_roles([Role.PROFESSIONAL, Role.ADMIN])),
    db: Session = Depends(get_db),
):
    return agenda_service.list_services(db)


@router.get("/private-patients", response_model=list[PrivatePatientRead])
def list_private_patients(
    session: UserSession = Depends(require_scheduling_access),
    db: Session = Depends(get_db),
):
    return agenda_service.list_private_patients(db, session.user_id)


@router.post("/private-patients", response_model=PrivatePatientRead, status_code=201)
def create_private_patient(
    data: PrivatePatientCreate,
    session: UserSession = Depends(require_scheduling_access),
    db: Session = Depends(get_db),
):
    return agenda_service.create_private_patient(db, session.user_id, data.model_dump())


# =============================================================================
# Access status (no access required)
# =============================================================================

@access_router.post("/scheduling-access-status", response_model=SchedulingAccessStatus)
def scheduling_access_status(
    session: UserSession = Depends(require_roles([Role.PROFESSIONAL])),
    db: Session = Depends(get_db),
):
    """Whether the caller can use the agenda, plus the current access price."""
    return SchedulingAccessStatus(**scheduling_access_service.get_status(db, session.user_id))
