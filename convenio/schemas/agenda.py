"""Agenda schemas - appointments, recurring series, private patients and access."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from convenio.core.timeutils import as_utc
from convenio.db.enums import AppointmentStatus, RecurrenceInterval
from convenio.schemas.common import Money
from convenio.services.agenda_service import ClientPatientRef, PatientRef, PrivatePatientRef


# =============================================================================
# Appointments
# =============================================================================

class AppointmentCreate(BaseModel):
    """
    New appointment. Exactly one patient reference:
    - private_patient_id, or
    - client_user_id (plus dependent_id for a dependent of that client)

    Naive datetimes are read as local business time.
    """
    service_id: int
    appointment_at: datetime
    private_patient_id: int | None = None
    client_user_id: int | None = None
    dependent_id: int | None = None
    location_id: int | None = None
    value: Decimal | None = Field(None, ge=0)
    notes: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def validate_patient(self) -> "AppointmentCreate":
        if (self.private_patient_id is None) == (self.client_user_id is None):
            raise ValueError("informe exatamente um paciente: private_patient_id ou client_user_id")
        if self.dependent_id is not None and self.client_user_id is None:
            raise ValueError("dependent_id exige client_user_id")
        return self

    def to_patient_ref(self) -> PatientRef:
        if self.private_patient_id is not None:
            return PrivatePatientRef(self.private_patient_id)
        return ClientPatientRef(self.client_user_id, self.dependent_id)


class RecurrenceInput(BaseModel):
    interval: RecurrenceInterval
    count: int | None = Field(None, ge=1)
    until: date | None = None


class RecurringCreate(AppointmentCreate):
    recurrence: RecurrenceInput


class AppointmentUpdate(BaseModel):
    """Partial update; only fields explicitly sent are applied."""
    appointment_at: datetime | None = None
    service_id: int | None = None
    location_id: int | None = None
    notes: str | None = Field(None, max_length=2000)
    value: Decimal | None = Field(None, ge=0)
    status: AppointmentStatus | None = None


class AppointmentCancel(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class AppointmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    professional_id: int
    patient_type: str
    private_patient_id: int | None
    client_user_id: int | None
    dependent_id: int | None
    service_id: int
    location_id: int | None
    appointment_at: datetime
    ends_at: datetime
    status: str
    value: Money
    notes: str | None
    is_recurring: bool
    recurring_group_id: str | None
    cancellation_reason: str | None
    cancelled_at: datetime | None
    cancelled_by: int | None

    @field_validator("appointment_at", "ends_at", "cancelled_at")
    @classmethod
    def ensure_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class RecurringSeriesResponse(BaseModel):
    recurring_group_id: str
    count: int
    appointments: list[AppointmentRead]


# =============================================================================
# Catalog and private patients
# =============================================================================

class ServiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    base_price: Money
    duration_minutes: int | None
    category_name: str | None


class PrivatePatientCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    cpf: str | None = None
    email: str | None = None
    phone: str | None = None
    birth_date: date | None = None


class PrivatePatientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    cpf: str | None
    email: str | None
    phone: str | None
    birth_date: date | None


# =============================================================================
# Scheduling access
# =============================================================================

class SchedulingAccessStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_access: bool = Field(alias="hasAccess")
    expires_at: datetime | None = Field(default=None, alias="expiresAt")
    price: Money
    duration_days: int = Field(alias="durationDays")
