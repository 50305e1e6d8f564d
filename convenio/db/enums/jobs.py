"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""

    PAYMENT_WEBHOOK = "payment_webhook"  # Replay a recorded gateway notification
    EXPIRY_SWEEP = "expiry_sweep"  # Ad hoc subscription expiry sweep


class JobStatus(str, Enum):
    """Status of background jobs."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
