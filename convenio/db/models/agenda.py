"""SQLAlchemy ORM models for the professional agenda."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from convenio.db.base import Base
from convenio.db.enums import DEFAULT_APPOINTMENT_STATUS


class Service(Base):
    """Catalog service a professional can book (e.g., "Consulta Fisioterapia")."""

    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    # NULL means the slot is a single instant
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_base_service: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("FALSE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )


class AttendanceLocation(Base):
    """Place where a professional attends patients."""

    __tablename__ = "attendance_locations"
    __table_args__ = (Index("idx_attendance_locations_professional", "professional_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    professional_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("FALSE"), nullable=False
    )


class PrivatePatient(Base):
    """A professional's own patient, outside the convênio."""

    __tablename__ = "private_patients"
    __table_args__ = (Index("idx_private_patients_professional", "professional_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    professional_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    cpf: Mapped[str | None] = mapped_column(String(11), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )


class Appointment(Base):
    """
    A scheduled consultation.

    The patient is either a private patient or a convênio client (optionally
    one of the client's dependents), never both. The occupied slot is
    `[appointment_at, ends_at)`; instant slots have `ends_at == appointment_at`.
    Completed convênio appointments are the consultations billed by the
    revenue report.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint(
            "(private_patient_id IS NOT NULL AND client_user_id IS NULL AND dependent_id IS NULL)"
            " OR (private_patient_id IS NULL AND client_user_id IS NOT NULL)",
            name="ck_appointment_single_patient",
        ),
        CheckConstraint("ends_at >= appointment_at", name="ck_appointment_slot_order"),
        Index("idx_appointments_professional_time", "professional_id", "appointment_at"),
        Index("idx_appointments_group", "recurring_group_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    professional_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )

    # Patient reference
    private_patient_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("private_patients.id", ondelete="RESTRICT"), nullable=True
    )
    client_user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True
    )
    dependent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("dependents.id", ondelete="RESTRICT"), nullable=True
    )
    patient_type: Mapped[str] = mapped_column(String(20), nullable=False)

    service_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("services.id", ondelete="RESTRICT"), nullable=False
    )
    location_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("attendance_locations.id", ondelete="SET NULL"), nullable=True
    )

    appointment_at: Mapped[datetime] = mapped_column(nullable=False)
    ends_at: Mapped[datetime] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=DEFAULT_APPOINTMENT_STATUS.value,
        server_default=text(f"'{DEFAULT_APPOINTMENT_STATUS.value}'"),
        nullable=False,
    )
    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Cancellation bookkeeping
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    # Recurring series
    is_recurring: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("FALSE"), nullable=False
    )
    recurring_group_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), onupdate=func.now(), nullable=False
    )

    service: Mapped["Service"] = relationship()


class SchedulingAccess(Base):
    """
    Time-bounded entitlement unlocking the agenda for a professional.

    Paid rows carry the gateway payment reference (unique, so replays are
    no-ops); admin grants carry `granted_by` and `reason`. Only the newest
    active row counts.
    """

    __tablename__ = "scheduling_access"
    __table_args__ = (
        UniqueConstraint("payment_reference", name="uq_scheduling_access_payment"),
        Index("idx_scheduling_access_professional", "professional_id", "is_active", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    professional_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("TRUE"), nullable=False
    )
    granted_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )
