"""SQLAlchemy ORM models."""

from convenio.db.models.affiliates import AffiliateReferral
from convenio.db.models.agenda import (
    Appointment,
    AttendanceLocation,
    PrivatePatient,
    SchedulingAccess,
    Service,
)
from convenio.db.models.billing import Coupon, CouponUsage, Payment, PaymentNotification
from convenio.db.models.system import Job, Notification, SystemSetting
from convenio.db.models.users import Dependent, RefreshToken, User

__all__ = [
    "AffiliateReferral",
    "Appointment",
    "AttendanceLocation",
    "Coupon",
    "CouponUsage",
    "Dependent",
    "Job",
    "Notification",
    "Payment",
    "PaymentNotification",
    "PrivatePatient",
    "RefreshToken",
    "SchedulingAccess",
    "Service",
    "SystemSetting",
    "User",
]
