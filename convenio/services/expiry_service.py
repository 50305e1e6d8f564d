"""
Expiry sweep - moves lapsed subscriptions from active to expired.

Runs once per local day (and on demand). The predicate only matches rows
still active with an expiry strictly before today, so re-running is a no-op.
"""

import logging
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from convenio.core.timeutils import local_today
from convenio.db.enums import SubscriptionStatus
from convenio.db.models import Dependent, User

logger = logging.getLogger(__name__)


def _expire(db: Session, model, today: date) -> int:
    return (
        db.query(model)
        .filter(
            model.subscription_status == SubscriptionStatus.ACTIVE.value,
            model.subscription_expiry.is_not(None),
            model.subscription_expiry < today,
        )
        .update(
            {
                "subscription_status": SubscriptionStatus.EXPIRED.value,
                "subscription_active": False,
            },
            synchronize_session=False,
        )
    )


def run_expiry_sweep(db: Session, today: date | None = None) -> dict[str, int]:
    """
    Expire titulars and dependents whose expiry date has passed.

    Both updates commit together.

    Returns:
        {"users_expired": n, "dependents_expired": m}
    """
    today = today or local_today()
    try:
        users_expired = _expire(db, User, today)
        dependents_expired = _expire(db, Dependent, today)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Expiry sweep failed (today=%s)", today)
        raise

    logger.info(
        "Expiry sweep done: today=%s users=%s dependents=%s",
        today,
        users_expired,
        dependents_expired,
    )
    return {"users_expired": users_expired, "dependents_expired": dependents_expired}


def next_sweep_at(now: datetime, sweep_time: time, tz: ZoneInfo) -> datetime:
    """
    Next wall-clock occurrence of `sweep_time` in `tz`, strictly after `now`.

    `now` must be timezone-aware. The result is in `tz`.
    """
    local_now = now.astimezone(tz)
    candidate = datetime.combine(local_now.date(), sweep_time, tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), sweep_time, tzinfo=tz)
    return candidate
