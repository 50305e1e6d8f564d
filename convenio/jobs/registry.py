"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from convenio.db.enums import JobType
from convenio.jobs.handlers import payments, sweep

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.PAYMENT_WEBHOOK.value: payments.process_payment_webhook,
    JobType.EXPIRY_SWEEP.value: sweep.process_expiry_sweep,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
