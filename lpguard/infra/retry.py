"""
Bounded exponential backoff for transient remote failures.

Only errors that declare themselves transient (``exc.transient is True``)
and timeouts are retried. Everything else re-raises on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from lpguard.core.json_utils import dumps

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay_sec,
            max_delay=settings.retry_max_delay_sec,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter and delay > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.TimeoutError):
        return True
    return bool(getattr(exc, "transient", False))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str,
    log_event: Optional[Callable[..., None]] = None,
    on_retry: Optional[Callable[[str], None]] = None,
) -> T:
    """
    Await ``fn()`` up to ``policy.attempts`` times.

    ``on_retry(label)`` is called before each backoff sleep (metrics hook).
    The last transient error is re-raised once attempts are exhausted.
    """
    attempts = max(1, policy.attempts)
    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as exc:
            if not is_transient(exc) or attempt >= attempts - 1:
                raise
            delay = policy.delay_for(attempt)
            payload = {"label": label, "attempt": attempt + 1, "delay": round(delay, 3), "err": str(exc)}
            if log_event:
                log_event("retry", **payload)
            else:
                logging.getLogger("lpguard").warning(dumps({"event": "retry", **payload}))
            if on_retry:
                on_retry(label)
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")  # pragma: no cover
