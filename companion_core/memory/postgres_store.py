from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

import asyncpg

from .context import LogStatus, StoredContext, SummarizationLogEntry, UserContext
from .storage.utils import (
    ContextVersionConflict,
    _clamp_limit,
    decode_context_payload,
    encode_context,
    normalize_final_status,
)


logger = logging.getLogger("companion_core.memory")


def _iso(value: Any) -> str:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return str(value or "")


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_entry(row: asyncpg.Record) -> SummarizationLogEntry:
    return SummarizationLogEntry(
        log_id=int(row["log_id"]),
        user_id=str(row["user_id"]),
        status=LogStatus(str(row["status"])),
        trigger=str(row["trigger_source"]),
        details=row["details"],
        created_at=_iso(row["created_at"]),
        updated_at=_iso(row["updated_at"]),
    )


class PostgresContextStore:
    """Postgres-backed context store implementing the same API as ContextStore."""

    SCHEMA_VERSION = 1
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("MEMORY_POSTGRES_DSN cannot be empty")
        self._pool: asyncpg.Pool | None = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=6,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres context schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade before starting."
                        )
                    await self._create_schema(conn)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True

    async def _get_schema_version(self, conn: asyncpg.Connection) -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM schema_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: asyncpg.Connection, version: int) -> None:
        await conn.execute(
            """
            INSERT INTO schema_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(version),
        )

    async def _create_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_contexts (
                user_id TEXT PRIMARY KEY,
                payload JSONB NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS summarization_logs (
                log_id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('started', 'completed', 'failed')),
                trigger_source TEXT NOT NULL DEFAULT 'manual',
                details TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_summarization_logs_user
            ON summarization_logs(user_id, log_id DESC);

            CREATE TABLE IF NOT EXISTS messages (
                message_id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_messages_user
            ON messages(user_id, message_id DESC);
            """
        )

    async def get_user_context_record(self, user_id: str) -> StoredContext:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT payload, version, updated_at FROM user_contexts WHERE user_id = $1",
                user_id,
            )
        if row is None:
            return StoredContext(user_id=user_id, context=UserContext(), version=0)
        payload = decode_context_payload(row["payload"], user_id=user_id)
        return StoredContext(
            user_id=user_id,
            context=UserContext.from_payload(payload),
            version=int(row["version"]),
            updated_at=_iso(row["updated_at"]),
        )

    async def load_user_context(self, user_id: str) -> UserContext:
        record = await self.get_user_context_record(user_id)
        return record.context

    async def save_user_context(
        self,
        user_id: str,
        context: UserContext,
        expected_version: int | None = None,
    ) -> int:
        payload = encode_context(context)
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if expected_version is None:
                    version = await conn.fetchval(
                        """
                        INSERT INTO user_contexts (user_id, payload, version, updated_at)
                        VALUES ($1, $2::jsonb, 1, NOW())
                        ON CONFLICT(user_id) DO UPDATE SET
                            payload = EXCLUDED.payload,
                            version = user_contexts.version + 1,
                            updated_at = NOW()
                        RETURNING version
                        """,
                        user_id,
                        payload,
                    )
                elif expected_version == 0:
                    version = await conn.fetchval(
                        """
                        INSERT INTO user_contexts (user_id, payload, version, updated_at)
                        VALUES ($1, $2::jsonb, 1, NOW())
                        ON CONFLICT(user_id) DO NOTHING
                        RETURNING version
                        """,
                        user_id,
                        payload,
                    )
                else:
                    version = await conn.fetchval(
                        """
                        UPDATE user_contexts
                        SET payload = $2::jsonb, version = version + 1, updated_at = NOW()
                        WHERE user_id = $1 AND version = $3
                        RETURNING version
                        """,
                        user_id,
                        payload,
                        int(expected_version),
                    )

                if version is None:
                    actual = await conn.fetchval("SELECT version FROM user_contexts WHERE user_id = $1", user_id)
                    raise ContextVersionConflict(user_id, int(expected_version or 0), int(actual or 0))

        logger.info("[memory.store] user=%s context saved version=%s", user_id, version)
        return int(version)

    async def create_summarization_log(self, user_id: str, trigger: str = "manual") -> SummarizationLogEntry:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO summarization_logs (user_id, status, trigger_source)
                VALUES ($1, 'started', $2)
                RETURNING *
                """,
                user_id,
                trigger,
            )
        return _row_to_entry(row)

    async def finalize_summarization_log(
        self,
        log_id: int,
        status: LogStatus | str,
        details: str | None = None,
    ) -> SummarizationLogEntry:
        final_status = normalize_final_status(status)
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE summarization_logs
                SET status = $2, details = $3, updated_at = NOW()
                WHERE log_id = $1 AND status = 'started'
                RETURNING *
                """,
                int(log_id),
                final_status.value,
                details,
            )
            if row is None:
                current = await conn.fetchval("SELECT status FROM summarization_logs WHERE log_id = $1", int(log_id))
                if current is None:
                    raise ValueError(f"Summarization log {log_id} does not exist")
                raise ValueError(f"Summarization log {log_id} is already {current}")
        return _row_to_entry(row)

    async def list_summarization_logs(
        self,
        user_id: str | None = None,
        limit: int = 50,
    ) -> List[SummarizationLogEntry]:
        safe_limit = _clamp_limit(limit)
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            if user_id:
                rows = await conn.fetch(
                    "SELECT * FROM summarization_logs WHERE user_id = $1 ORDER BY log_id DESC LIMIT $2",
                    user_id,
                    safe_limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM summarization_logs ORDER BY log_id DESC LIMIT $1",
                    safe_limit,
                )
        return [_row_to_entry(row) for row in rows]

    async def last_completed_update_at(self, user_id: str) -> str | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT MAX(updated_at) FROM summarization_logs WHERE user_id = $1 AND status = 'completed'",
                user_id,
            )
        return _iso(value) if value is not None else None

    async def save_message(self, user_id: str, role: str, content: str) -> int:
        normalized_role = "assistant" if str(role).strip().lower() == "assistant" else "user"
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            message_id = await conn.fetchval(
                """
                INSERT INTO messages (user_id, role, content)
                VALUES ($1, $2, $3)
                RETURNING message_id
                """,
                user_id,
                normalized_role,
                content,
            )
        return int(message_id)

    async def get_recent_messages(self, user_id: str, limit: int) -> List[Dict[str, object]]:
        if int(limit) <= 0:
            return []
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT message_id, role, content, created_at
                FROM messages
                WHERE user_id = $1
                ORDER BY message_id DESC
                LIMIT $2
                """,
                user_id,
                _clamp_limit(limit),
            )
        return [
            {
                "message_id": int(row["message_id"]),
                "role": str(row["role"]),
                "content": str(row["content"]),
                "created_at": _iso(row["created_at"]),
            }
            for row in reversed(rows)
        ]

    async def count_user_messages_since(self, user_id: str, since: str | None = None) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            if since:
                value = await conn.fetchval(
                    "SELECT COUNT(*) FROM messages WHERE user_id = $1 AND role = 'user' AND created_at > $2",
                    user_id,
                    _parse_iso(since),
                )
            else:
                value = await conn.fetchval(
                    "SELECT COUNT(*) FROM messages WHERE user_id = $1 AND role = 'user'",
                    user_id,
                )
        return int(value or 0)
