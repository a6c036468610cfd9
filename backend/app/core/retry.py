"""Retry helpers for data-store and HTTP calls.

Every read or write against the data store goes through ``with_retry``:
transient failures (dropped connections, transport errors) are retried
with exponential backoff, anything else propagates immediately.
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from sqlalchemy.exc import OperationalError

from app.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    OperationalError,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    retry_on: tuple[type[BaseException], ...] = TRANSIENT_ERRORS
    sleep: Callable[[float], None] = time.sleep

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-based, so attempt 2 is the first retry)."""
        return min(self.base_delay * 2 ** (attempt - 2), self.max_delay)

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    policy: RetryPolicy | None = None,
    **kwargs: Any,
) -> T:
    """Call ``func`` until it succeeds or the policy's attempts are used up.

    If the call received a ``session`` keyword argument it is rolled back
    before the next attempt. The last error is re-raised unchanged.
    """
    active = policy or RetryPolicy.from_settings()
    name = getattr(func, "__qualname__", repr(func))
    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except active.retry_on as exc:
            logger.warning(
                "Attempt %s/%s of %s failed: %s",
                attempt,
                active.max_attempts,
                name,
                exc,
            )
            if attempt >= active.max_attempts:
                raise
            session = kwargs.get("session")
            if session is not None:
                session.rollback()
            attempt += 1
            active.sleep(active.delay_before(attempt))


def with_retry(
    policy: RetryPolicy | None = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return call_with_retry(func, *args, policy=policy, **kwargs)

        return wrapper

    return decorator
