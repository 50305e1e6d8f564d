"""Centralized defaults for enums."""

from convenio.db.enums.appointments import AppointmentStatus
from convenio.db.enums.auth import Role, SubscriptionStatus
from convenio.db.enums.billing import PaymentStatus
from convenio.db.enums.jobs import JobStatus


DEFAULT_ROLE: Role = Role.CLIENT
DEFAULT_SUBSCRIPTION_STATUS: SubscriptionStatus = SubscriptionStatus.PENDING
DEFAULT_PAYMENT_STATUS: PaymentStatus = PaymentStatus.PENDING
DEFAULT_JOB_STATUS: JobStatus = JobStatus.PENDING
DEFAULT_APPOINTMENT_STATUS: AppointmentStatus = AppointmentStatus.SCHEDULED
