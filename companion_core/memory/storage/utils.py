from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict

import aiosqlite

from ..context import LogStatus, UserContext


logger = logging.getLogger("companion_core.memory")

FINAL_LOG_STATUSES = {LogStatus.COMPLETED, LogStatus.FAILED}


class ContextVersionConflict(RuntimeError):
    """Stored context changed since it was read."""

    def __init__(self, user_id: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"User context for {user_id} is at version {actual_version}, expected {expected_version}"
        )
        self.user_id = user_id
        self.expected_version = expected_version
        self.actual_version = actual_version


def _clamp_limit(value: int, low: int = 1, high: int = 500) -> int:
    return max(low, min(high, int(value)))


def _utc_now() -> str:
    # Fixed-width so stored timestamps compare correctly as text.
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_memory_connection(db_path: str | Path) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(db_path) as db:
        timeout_ms = _sqlite_busy_timeout_ms()
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        yield db


def encode_context(context: UserContext) -> str:
    return json.dumps(context.to_payload(), ensure_ascii=False)


def decode_context_payload(raw: Any, *, user_id: str = "") -> Dict[str, Any] | None:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("[memory.store] user=%s stored context is not valid JSON: %s", user_id, exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("[memory.store] user=%s stored context is not a JSON object", user_id)
        return None
    return payload


def normalize_final_status(status: LogStatus | str) -> LogStatus:
    try:
        normalized = LogStatus(status)
    except ValueError as exc:
        raise ValueError(f"Unknown summarization log status: {status!r}") from exc
    if normalized not in FINAL_LOG_STATUSES:
        raise ValueError(f"Summarization log can only be finalized as completed or failed, got {normalized.value}")
    return normalized
