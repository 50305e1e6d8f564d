"""
Tests for the subscription expiry sweep and the background job plumbing.

Coverage:
- Sweep predicate (strictly before today, active only)
- Next sweep scheduling across midnight
- Internal cron endpoint secret check
- Job registry and the sweep job
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from convenio.core.config import settings
from convenio.core.timeutils import as_utc, local_today, utc_now
from convenio.db.enums import JobStatus, JobType
from convenio.db.models import Dependent
from convenio.jobs.registry import resolve_job_handler
from convenio.services import expiry_service, job_service
from convenio.worker import run_pending_jobs

SAO_PAULO = ZoneInfo("America/Sao_Paulo")
SWEEP_URL = "/internal/scheduled/expiry-sweep"


@pytest.fixture
def subscribers(db, make_user):
    today = local_today()
    lapsed = make_user(
        name="Vencido",
        subscription_status="active",
        subscription_active=True,
        subscription_expiry=today - timedelta(days=1),
    )
    last_day = make_user(
        name="Último Dia",
        subscription_status="active",
        subscription_active=True,
        subscription_expiry=today,
    )
    lapsed_dependent = Dependent(
        user_id=last_day.id,
        name="Dependente Vencido",
        cpf="99999999901",
        subscription_status="active",
        subscription_active=True,
        subscription_expiry=today - timedelta(days=3),
    )
    db.add(lapsed_dependent)
    db.commit()
    return lapsed, last_day, lapsed_dependent


# =============================================================================
# Sweep
# =============================================================================

class TestExpirySweep:
    def test_expires_only_past_dates(self, db, subscribers):
        lapsed, last_day, lapsed_dependent = subscribers

        result = expiry_service.run_expiry_sweep(db)

        assert result == {"users_expired": 1, "dependents_expired": 1}
        db.refresh(lapsed)
        db.refresh(last_day)
        db.refresh(lapsed_dependent)
        assert lapsed.subscription_status == "expired"
        assert lapsed.subscription_active is False
        assert last_day.subscription_status == "active"
        assert lapsed_dependent.subscription_status == "expired"

    def test_rerun_is_noop(self, db, subscribers):
        expiry_service.run_expiry_sweep(db)
        assert expiry_service.run_expiry_sweep(db) == {"users_expired": 0, "dependents_expired": 0}

    def test_explicit_today(self, db, subscribers):
        _, last_day, _ = subscribers
        expiry_service.run_expiry_sweep(db, today=local_today() + timedelta(days=1))
        db.refresh(last_day)
        assert last_day.subscription_status == "expired"


class TestNextSweepAt:
    def test_later_today(self):
        now = datetime(2030, 6, 10, 1, 0, tzinfo=timezone.utc)  # 22:00 on the 9th in São Paulo
        result = expiry_service.next_sweep_at(now, time(23, 0), SAO_PAULO)
        assert result == datetime(2030, 6, 9, 23, 0, tzinfo=SAO_PAULO)

    def test_rolls_to_next_day(self):
        now = datetime(2030, 6, 10, 12, 0, tzinfo=timezone.utc)
        result = expiry_service.next_sweep_at(now, time(0, 5), SAO_PAULO)
        assert result == datetime(2030, 6, 11, 0, 5, tzinfo=SAO_PAULO)

    def test_exact_time_moves_forward(self):
        now = datetime(2030, 6, 10, 0, 5, tzinfo=SAO_PAULO)
        result = expiry_service.next_sweep_at(now, time(0, 5), SAO_PAULO)
        assert result.date() == date(2030, 6, 11)


# =============================================================================
# Internal endpoint
# =============================================================================

class TestInternalEndpoint:
    async def test_runs_sweep(self, client, subscribers):
        response = await client.post(SWEEP_URL, headers={"X-Internal-Secret": "internal-test-secret"})
        assert response.status_code == 200
        assert response.json() == {"users_expired": 1, "dependents_expired": 1}

    async def test_wrong_secret(self, client):
        response = await client.post(SWEEP_URL, headers={"X-Internal-Secret": "nope"})
        assert response.status_code == 403

    async def test_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "INTERNAL_SECRET", "")
        response = await client.post(SWEEP_URL, headers={"X-Internal-Secret": "anything"})
        assert response.status_code == 501
        assert response.json()["code"] == "NOT_CONFIGURED"


# =============================================================================
# Jobs
# =============================================================================

class TestJobs:
    def test_unknown_job_type(self):
        with pytest.raises(ValueError):
            resolve_job_handler("mystery")

    def test_schedule_once_dedupes(self, db):
        first = job_service.schedule_job_once(db, JobType.EXPIRY_SWEEP, {}, idempotency_key="sweep:x")
        second = job_service.schedule_job_once(db, JobType.EXPIRY_SWEEP, {}, idempotency_key="sweep:x")
        assert first is not None
        assert second is None

    async def test_sweep_job(self, db, subscribers):
        lapsed, _, _ = subscribers
        job = job_service.schedule_job(db, JobType.EXPIRY_SWEEP, {"today": local_today().isoformat()})

        assert await run_pending_jobs(db) == 1

        db.refresh(job)
        db.refresh(lapsed)
        assert job.status == JobStatus.COMPLETED.value
        assert lapsed.subscription_status == "expired"

    async def test_failed_job_goes_back_to_pending(self, db):
        job = job_service.schedule_job(db, JobType.EXPIRY_SWEEP, {"today": "not-a-date"})

        await run_pending_jobs(db)

        db.refresh(job)
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 1
        assert "ValueError" in job.last_error
        assert as_utc(job.run_at) > utc_now() + timedelta(seconds=settings.JOB_RETRY_BASE_SECONDS - 5)

    def test_retry_delay_doubles(self):
        base = settings.JOB_RETRY_BASE_SECONDS
        assert job_service.retry_delay(1) == timedelta(seconds=base)
        assert job_service.retry_delay(3) == timedelta(seconds=base * 4)
