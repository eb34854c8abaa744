from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from tokenvault.core.config import get_settings
from tokenvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound for any single backoff sleep, worker lanes included.
MAX_BACKOFF_SECONDS = 900.0


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def outbound_retry_policy() -> RetryPolicy:
    """Policy for calls leaving the vault (webhooks, remote KMS)."""
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (TimeoutError, ConnectionError, httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


def backoff_seconds(base_s: float, attempt: int, *, jitter: bool = True) -> float:
    # Doubles per attempt, first retry waits base_s.
    delay = base_s * (2 ** max(attempt - 1, 0))
    if jitter:
        delay *= random.uniform(0.5, 1.5)
    return min(delay, MAX_BACKOFF_SECONDS)


def job_time_budget(job_timeout_s: float) -> float:
    """Seconds a worker job body may run, kept under arq's own ``job_timeout``."""
    headroom = max(1.0, job_timeout_s * 0.05)
    return max(job_timeout_s - headroom, job_timeout_s * 0.5)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient,
    label: str = "outbound",
) -> T:
    policy = policy or outbound_retry_policy()
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient
            if attempt >= attempts or not retryable(exc):
                raise
            increment_counter("outbound_retries_total")
            logger.info("outbound_retry label=%s attempt=%s error=%s", label, attempt, type(exc).__name__)
            await asyncio.sleep(backoff_seconds(policy.backoff_ms / 1000.0, attempt))
    raise RuntimeError("unreachable")
