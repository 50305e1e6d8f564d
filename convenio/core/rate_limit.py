"""slowapi limiter shared by the routers."""

import logging
import os

import redis
from slowapi import Limiter
from slowapi.util import get_remote_address

from convenio.core.config import settings

logger = logging.getLogger(__name__)

AUTH_LIMIT = f"{settings.RATE_LIMIT_AUTH}/minute"
TRACKING_LIMIT = f"{settings.RATE_LIMIT_TRACKING}/minute"
WEBHOOK_LIMIT = f"{settings.RATE_LIMIT_WEBHOOK}/minute"

MEMORY_STORAGE = "memory://"


def _testing() -> bool:
    return os.getenv("TESTING", "").lower() in ("1", "true", "yes")


def _storage_uri() -> str:
    """Redis when reachable so limits hold across processes, else per-process memory."""
    if _testing():
        return MEMORY_STORAGE
    try:
        redis.from_url(settings.REDIS_URL, socket_connect_timeout=1).ping()
    except redis.RedisError as e:
        logger.warning("Rate limiting falls back to in-memory storage: %s", e)
        return MEMORY_STORAGE
    return settings.REDIS_URL


def build_limiter() -> Limiter:
    default_limits = []
    if not _testing() and settings.RATE_LIMIT_API > 0:
        default_limits = [f"{settings.RATE_LIMIT_API}/minute"]
    return Limiter(
        key_func=get_remote_address,
        storage_uri=_storage_uri(),
        default_limits=default_limits,
    )


limiter = build_limiter()
