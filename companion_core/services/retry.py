from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar


logger = logging.getLogger("companion_core.llm")

T = TypeVar("T")


def backoff_delay_ms(attempt: int, base_delay_ms: float) -> float:
    """Delay to wait after failed ``attempt`` (1-based) before the next one."""
    return float(base_delay_ms) * (1.5 ** (max(1, int(attempt)) - 1))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay_ms: float = 1000,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    label: str = "",
) -> T:
    """Await ``operation()`` until it succeeds or ``max_attempts`` are used up.

    Every error counts as an attempt and the last one is re-raised as-is.
    The operation must be safe to repeat.
    """
    attempts = max(1, int(max_attempts))
    tag = f"[{label}] " if label else ""
    last_error: Exception | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = exc
            logger.warning("%sattempt %s/%s failed: %s", tag, attempt, attempts, exc)
            if attempt < attempts:
                delay_ms = backoff_delay_ms(attempt, base_delay_ms)
                logger.info("%swaiting %.0fms before retry", tag, delay_ms)
                await sleep(delay_ms / 1000.0)

    assert last_error is not None
    raise last_error
