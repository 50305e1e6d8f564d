"""
Persistent job queue backed by the ``jobs`` table.

A job is claimed by the worker, run, then either closed or put back with a
later ``run_at``. Replays of failed webhook deliveries and the expiry sweep
both go through here.
"""

from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from convenio.core.config import settings
from convenio.core.timeutils import utc_now
from convenio.db.enums import JobStatus, JobType
from convenio.db.models import Job

ERROR_MAX_CHARS = 2000


def _save(db: Session, job: Job) -> Job:
    db.commit()
    db.refresh(job)
    return job


def retry_delay(attempts: int) -> timedelta:
    """Wait before the next attempt: base, 2x base, 4x base..."""
    base = settings.JOB_RETRY_BASE_SECONDS
    return timedelta(seconds=base * 2 ** max(attempts - 1, 0))


def schedule_job(
    db: Session,
    job_type: JobType,
    payload: dict,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
) -> Job:
    """Enqueue a job; it is due at once unless ``run_at`` is given.

    A repeated ``idempotency_key`` raises IntegrityError from the unique index.
    """
    job = Job(
        job_type=job_type.value,
        payload=payload,
        run_at=run_at or utc_now(),
        status=JobStatus.PENDING.value,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    return _save(db, job)


def schedule_job_once(
    db: Session,
    job_type: JobType,
    payload: dict,
    idempotency_key: str,
    run_at: datetime | None = None,
) -> Job | None:
    try:
        return schedule_job(db, job_type, payload, run_at=run_at, idempotency_key=idempotency_key)
    except IntegrityError:
        db.rollback()
        return None


def get_pending_jobs(db: Session, limit: int = 10) -> list[Job]:
    """Due jobs, oldest ``run_at`` first."""
    due = (Job.status == JobStatus.PENDING.value) & (Job.run_at <= utc_now())
    return db.query(Job).filter(due).order_by(Job.run_at, Job.id).limit(limit).all()


def get_job(db: Session, job_id: int) -> Job | None:
    return db.get(Job, job_id)


def mark_job_running(db: Session, job: Job) -> Job:
    job.attempts += 1
    job.status = JobStatus.RUNNING.value
    return _save(db, job)


def mark_job_completed(db: Session, job: Job) -> Job:
    job.status = JobStatus.COMPLETED.value
    job.last_error = None
    job.completed_at = utc_now()
    return _save(db, job)


def mark_job_failed(db: Session, job: Job, error: str) -> Job:
    """Record the error. Jobs with attempts left go back to pending with backoff."""
    job.last_error = error[:ERROR_MAX_CHARS]
    exhausted = job.attempts >= job.max_attempts
    if exhausted:
        job.status = JobStatus.FAILED.value
    else:
        job.status = JobStatus.PENDING.value
        job.run_at = utc_now() + retry_delay(job.attempts)
    return _save(db, job)
