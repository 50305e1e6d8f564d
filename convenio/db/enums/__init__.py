"""Enum definitions for application constants."""

from convenio.db.enums.appointments import (
    AppointmentStatus,
    PatientType,
    RecurrenceInterval,
)
from convenio.db.enums.auth import ROLE_PRIORITY, Role, SubscriptionStatus
from convenio.db.enums.billing import (
    CouponType,
    DiscountType,
    PaymentKind,
    PaymentStatus,
)
from convenio.db.enums.defaults import (
    DEFAULT_APPOINTMENT_STATUS,
    DEFAULT_JOB_STATUS,
    DEFAULT_PAYMENT_STATUS,
    DEFAULT_ROLE,
    DEFAULT_SUBSCRIPTION_STATUS,
)
from convenio.db.enums.jobs import JobStatus, JobType
from convenio.db.enums.notifications import NotificationType

__all__ = [
    "AppointmentStatus",
    "CouponType",
    "DEFAULT_APPOINTMENT_STATUS",
    "DEFAULT_JOB_STATUS",
    "DEFAULT_PAYMENT_STATUS",
    "DEFAULT_ROLE",
    "DEFAULT_SUBSCRIPTION_STATUS",
    "DiscountType",
    "JobStatus",
    "JobType",
    "NotificationType",
    "PatientType",
    "PaymentKind",
    "PaymentStatus",
    "RecurrenceInterval",
    "ROLE_PRIORITY",
    "Role",
    "SubscriptionStatus",
]
