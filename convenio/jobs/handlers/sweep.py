"""Subscription expiry sweep job handler."""

from __future__ import annotations

import logging
from datetime import date

logger = logging.getLogger(__name__)


async def process_expiry_sweep(db, job) -> None:
    """
    Run the expiry sweep on demand.

    Payload:
        - today: ISO date to sweep as (optional, defaults to the local date)
    """
    from convenio.services import expiry_service

    today_raw = (job.payload or {}).get("today")
    today = date.fromisoformat(today_raw) if today_raw else None
    result = expiry_service.run_expiry_sweep(db, today=today)
    logger.info("Expiry sweep job %s: %s", job.id, result)
