"""
Background worker for scheduled jobs and the daily expiry sweep.

Usage:
    python -m convenio.worker

The worker runs the expiry sweep at start, then polls for pending jobs and
runs the sweep again every local day at EXPIRY_SWEEP_TIME.
For production, run this as a separate process (e.g., systemd service, Docker container).
"""

import asyncio
import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from convenio.core.config import settings
from convenio.core.monitoring import init_sentry, report_exception
from convenio.core.structured_logging import build_log_context
from convenio.core.timeutils import utc_now
from convenio.db.session import SessionLocal
from convenio.jobs.registry import resolve_job_handler
from convenio.services import expiry_service, job_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = settings.WORKER_POLL_INTERVAL_SECONDS
BATCH_SIZE = settings.WORKER_BATCH_SIZE


async def process_job(db, job) -> None:
    """Process a single job based on its type."""
    logger.info("Processing job %s (type=%s, attempt=%s)", job.id, job.job_type, job.attempts)
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


async def run_pending_jobs(db) -> int:
    """Process one batch of due jobs. Returns how many were picked up."""
    jobs = job_service.get_pending_jobs(db, limit=BATCH_SIZE)
    if jobs:
        logger.info("Found %s pending jobs", len(jobs))

    for job in jobs:
        try:
            job_service.mark_job_running(db, job)
            await process_job(db, job)
            job_service.mark_job_completed(db, job)
            logger.info("Job %s completed successfully", job.id)
        except Exception as e:
            db.rollback()
            job_service.mark_job_failed(db, job, f"{type(e).__name__}: {e}")
            logger.error("Job %s failed: %s", job.id, type(e).__name__)
            if job.attempts >= job.max_attempts:
                report_exception(e)
    return len(jobs)


def run_sweep() -> None:
    with SessionLocal() as db:
        try:
            expiry_service.run_expiry_sweep(db)
        except Exception as e:
            logger.error("Expiry sweep failed: %s", type(e).__name__)
            report_exception(e)


def _next_sweep(now: datetime) -> datetime:
    return expiry_service.next_sweep_at(
        now, settings.sweep_time, ZoneInfo(settings.EXPIRY_SWEEP_TIMEZONE)
    )


async def worker_loop() -> None:
    """Main worker loop - sweeps daily and polls for pending jobs."""
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s, sweep at %s %s)",
        POLL_INTERVAL_SECONDS,
        BATCH_SIZE,
        settings.EXPIRY_SWEEP_TIME,
        settings.EXPIRY_SWEEP_TIMEZONE,
    )

    run_sweep()
    next_sweep = _next_sweep(utc_now())
    logger.info("Next expiry sweep at %s", next_sweep.isoformat())

    while True:
        with SessionLocal() as db:
            try:
                await run_pending_jobs(db)
            except Exception as e:
                logger.error("Error in worker loop: %s", e)

        now = utc_now()
        if now >= next_sweep:
            run_sweep()
            next_sweep = _next_sweep(now)
            logger.info("Next expiry sweep at %s", next_sweep.isoformat())

        seconds_to_sweep = (next_sweep - utc_now()).total_seconds()
        await asyncio.sleep(max(0.0, min(POLL_INTERVAL_SECONDS, seconds_to_sweep)))


def main() -> None:
    """Entry point for the worker."""
    init_sentry("worker")
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception as e:
        report_exception(e)
        logger.exception(
            "Worker crashed",
            extra=build_log_context(route="worker", method="background"),
        )
        raise


if __name__ == "__main__":
    main()
