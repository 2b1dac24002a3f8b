from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from statewatch.core.errors import ValidationError
from statewatch.services import resilience
from statewatch.services.resilience import RetryPolicy, backoff_seconds, is_transient_error, retry_async


def test_transient_classification() -> None:
    assert is_transient_error(TimeoutError())
    assert is_transient_error(OperationalError("SELECT 1", {}, Exception("database is locked")))
    assert is_transient_error(RuntimeError("connection reset by peer"))
    assert not is_transient_error(ValidationError("missing tenant_id"))


def test_backoff_doubles_per_attempt() -> None:
    policy = RetryPolicy(max_attempts=3, backoff_ms=1000)
    assert 0.5 <= backoff_seconds(policy, 1) <= 1.5
    assert 1.0 <= backoff_seconds(policy, 2) <= 3.0
    assert 2.0 <= backoff_seconds(policy, 3) <= 6.0


async def test_retries_transient_failures_until_success(monkeypatch) -> None:
    backoffs: list[int] = []

    def _no_wait(policy: RetryPolicy, attempt: int) -> float:
        backoffs.append(attempt)
        return 0.0

    monkeypatch.setattr(resilience, "backoff_seconds", _no_wait)
    attempts = {"count": 0}

    async def _flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise TimeoutError("timed out")
        return "ok"

    result = await retry_async(_flaky, policy=RetryPolicy(max_attempts=3, backoff_ms=1000))
    assert result == "ok"
    assert attempts["count"] == 3
    assert backoffs == [1, 2]


async def test_permanent_failures_are_not_retried() -> None:
    attempts = {"count": 0}

    async def _broken() -> None:
        attempts["count"] += 1
        raise ValidationError("missing subject_id")

    with pytest.raises(ValidationError):
        await retry_async(_broken, policy=RetryPolicy(max_attempts=3, backoff_ms=1))
    assert attempts["count"] == 1


async def test_gives_up_after_max_attempts() -> None:
    attempts = {"count": 0}

    async def _down() -> None:
        attempts["count"] += 1
        raise TimeoutError("still down")

    with pytest.raises(TimeoutError):
        await retry_async(_down, policy=RetryPolicy(max_attempts=2, backoff_ms=1))
    assert attempts["count"] == 2
