"""Outbound HTTP with bounded retries, used for Mercado Pago calls."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


def jittered_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for ``attempt`` (0-based) plus up to 50% jitter."""
    capped = min(max_delay, base_delay * 2**attempt)
    return capped + random.uniform(0, capped / 2) if capped else 0.0


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | frozenset[int] | None = None,
) -> httpx.Response:
    """
    Call ``request_fn`` until it returns a non-retryable response.

    The final attempt's response is returned as-is and its transport error is
    re-raised. Retrying a POST is only safe when the request carries an
    idempotency key.
    """
    retryable = retry_statuses or RETRYABLE_STATUSES
    attempt = 0
    while True:
        last_try = attempt + 1 >= max_attempts
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if last_try:
                raise
            reason = type(exc).__name__
        else:
            if last_try or response.status_code not in retryable:
                return response
            reason = f"status {response.status_code}"

        delay = jittered_delay(attempt, base_delay, max_delay)
        logger.warning("Outbound request failed (%s), attempt %s/%s", reason, attempt + 1, max_attempts)
        if delay:
            await asyncio.sleep(delay)
        attempt += 1
