from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_core.services.base import ProviderError  # noqa: E402
from companion_core.services.retry import backoff_delay_ms, with_retry  # noqa: E402


class _Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def test_backoff_grows_by_one_and_a_half() -> None:
    assert backoff_delay_ms(1, 1000) == 1000
    assert backoff_delay_ms(2, 1000) == 1500
    assert backoff_delay_ms(3, 1000) == 2250


def test_with_retry_succeeds_on_third_attempt_after_two_delays() -> None:
    sleeps = _Sleeps()
    attempts = {"count": 0}

    async def flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise RuntimeError("temporary")
        return "ok"

    result = asyncio.run(with_retry(flaky, 3, 1000, sleep=sleeps))

    assert result == "ok"
    assert attempts["count"] == 3
    assert sleeps.calls == [1.0, 1.5]


def test_with_retry_reraises_last_error_without_final_delay() -> None:
    sleeps = _Sleeps()
    errors = [RuntimeError("first"), RuntimeError("second")]

    async def always_fails() -> str:
        raise errors.pop(0)

    with pytest.raises(RuntimeError) as exc_info:
        asyncio.run(with_retry(always_fails, 2, 10, sleep=sleeps))

    assert str(exc_info.value) == "second"
    assert sleeps.calls == [0.01]


def test_with_retry_single_attempt_never_sleeps() -> None:
    sleeps = _Sleeps()

    async def fails() -> str:
        raise ValueError("nope")

    with pytest.raises(ValueError):
        asyncio.run(with_retry(fails, 1, 1000, sleep=sleeps))

    assert sleeps.calls == []


def test_with_retry_calls_always_failing_operation_exactly_max_attempts() -> None:
    sleeps = _Sleeps()
    attempts = {"count": 0}
    original = ProviderError("openai", "openai API error 401: bad key", status=401)

    async def unauthorized() -> str:
        attempts["count"] += 1
        raise original

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(with_retry(unauthorized, 3, 1000, sleep=sleeps))

    assert exc_info.value is original
    assert attempts["count"] == 3
    assert sleeps.calls == [1.0, 1.5]
