"""Notification enums."""

from enum import Enum


class NotificationType(str, Enum):
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    DEPENDENT_ACTIVATED = "dependent_activated"
    AGENDA_ACCESS_ACTIVATED = "agenda_access_activated"
    PAYOUT_RECEIVED = "payout_received"
