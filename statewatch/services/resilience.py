from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import DBAPIError, OperationalError

from statewatch.core.config import get_settings


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, OperationalError)
_TRANSIENT_PATTERNS = ("timeout", "connection", "locked", "econnreset", "econnrefused")


def is_transient_error(exc: BaseException) -> bool:
    # Retry only network, timeout and lock contention failures; everything else is permanent.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    message = str(exc).lower()
    return any(pattern in message for pattern in _TRANSIENT_PATTERNS)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_ms: int
    timeout_ms: int | None = None


def detector_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.detector_retry_max_attempts,
        backoff_ms=settings.detector_retry_backoff_ms,
    )


def backoff_seconds(policy: RetryPolicy, attempt: int) -> float:
    # 1x, 2x, 4x the base backoff, jittered to spread concurrent retries.
    jitter = random.uniform(0.5, 1.5)
    return (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[BaseException], bool] | None = None,
    description: str = "operation",
) -> Any:
    # Retry helper with jittered exponential backoff for transient failures only.
    policy = policy or detector_retry_policy()
    retryable = retryable or is_transient_error
    attempt = 1
    while True:
        try:
            if policy.timeout_ms:
                return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            sleep_s = backoff_seconds(policy, attempt)
            logger.warning(
                "retrying_transient_failure description=%s attempt=%s sleep_s=%.2f error=%s",
                description,
                attempt,
                sleep_s,
                exc,
            )
            await asyncio.sleep(sleep_s)
            attempt += 1
