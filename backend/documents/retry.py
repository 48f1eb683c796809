"""
Bounded retry with exponential backoff for single fallible async stages.

Usage:
    policy = RetryPolicy(max_retries=3, base_delay=1.0)
    await retry_async(lambda: storage.upload(...), policy=policy,
                      is_transient=lambda exc: isinstance(exc, NetworkError))

With the default policy a stage runs at most four times, sleeping 1s, 2s and
4s between attempts. Non-transient errors propagate immediately.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional, TypeVar

import anyio

from backend.storage.config import get_upload_backoff_seconds, get_upload_max_retries

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    factor: float = 2.0

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(max_retries=get_upload_max_retries(), base_delay=get_upload_backoff_seconds())

    def delays(self) -> Iterator[float]:
        for attempt in range(max(0, self.max_retries)):
            yield self.base_delay * (self.factor ** attempt)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    is_transient: Callable[[BaseException], bool],
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
) -> T:
    """Run `operation`, retrying transient failures per `policy`.

    `on_retry(retry_number, delay, exc)` is called before each backoff sleep.
    The last transient error is re-raised once the retries are exhausted.
    """
    delays = policy.delays()
    retry_number = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_transient(exc):
                raise
            delay = next(delays, None)
            if delay is None:
                raise
            retry_number += 1
            LOG.info("retry %s after %.1fs: %s", retry_number, delay, type(exc).__name__)
            if on_retry is not None:
                on_retry(retry_number, delay, exc)
            await sleep(delay)


__all__ = ["RetryPolicy", "retry_async"]
