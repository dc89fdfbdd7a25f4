"""
Order Pipeline — Backoff policy and store retry decorator

backoff_delay() is the deterministic schedule shared by the retrying HTTP
transport: base * multiplier^attempt, capped.

with_store_retry() wraps top-level store calls. A dropped or refused database
connection (OperationalError / InterfaceError) is retried with exponential
backoff + jitter; anything else propagates immediately.
"""
import asyncio
import functools
import logging
import random

from sqlalchemy.exc import InterfaceError, OperationalError

from orderflow.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError)


def backoff_delay(
    attempt: int,
    base_delay: float,
    multiplier: float = 2.0,
    max_delay: float | None = None,
) -> float:
    """Delay in seconds before retry number ``attempt`` (0-based)."""
    delay = base_delay * (multiplier ** attempt)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


def with_store_retry(max_attempts: int | None = None):
    """
    Decorator for async functions that talk to the order database.

    Usage:
        @with_store_retry()
        async def _execute(self, stmt):
            ...
    """
    _max = max_attempts or settings.STORE_RETRY_MAX_ATTEMPTS

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, _max + 1):
                try:
                    return await func(*args, **kwargs)
                except TRANSIENT_DB_ERRORS:
                    if attempt == _max:
                        logger.error(
                            "Database still unreachable after %d attempts in %s",
                            _max, func.__name__,
                        )
                        raise
                    base = settings.STORE_RETRY_BASE_DELAY_MS / 1000.0
                    cap = settings.STORE_RETRY_MAX_DELAY_MS / 1000.0
                    jitter = random.uniform(0, settings.STORE_RETRY_JITTER_MS / 1000.0)
                    delay = backoff_delay(attempt, base, 2.0, cap) + jitter
                    logger.warning(
                        "Transient database error on attempt %d/%d, retrying in %.3fs",
                        attempt, _max, delay,
                    )
                    await asyncio.sleep(delay)
        return wrapper
    return decorator
