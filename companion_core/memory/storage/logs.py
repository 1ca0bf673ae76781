from __future__ import annotations

from typing import List

import aiosqlite

from ..context import LogStatus, SummarizationLogEntry
from .utils import _clamp_limit, _sqlite_memory_connection, _utc_now, normalize_final_status


def _row_to_entry(row: aiosqlite.Row) -> SummarizationLogEntry:
    return SummarizationLogEntry(
        log_id=int(row["log_id"]),
        user_id=str(row["user_id"]),
        status=LogStatus(str(row["status"])),
        trigger=str(row["trigger_source"]),
        details=row["details"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


class SummarizationLogsMixin:
    async def create_summarization_log(self, user_id: str, trigger: str = "manual") -> SummarizationLogEntry:
        now = _utc_now()
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO summarization_logs (user_id, status, trigger_source, details, created_at, updated_at)
                VALUES (?, 'started', ?, NULL, ?, ?)
                """,
                (user_id, trigger, now, now),
            )
            await db.commit()
            log_id = int(cursor.lastrowid)

        return SummarizationLogEntry(
            log_id=log_id,
            user_id=user_id,
            status=LogStatus.STARTED,
            trigger=trigger,
            details=None,
            created_at=now,
            updated_at=now,
        )

    async def finalize_summarization_log(
        self,
        log_id: int,
        status: LogStatus | str,
        details: str | None = None,
    ) -> SummarizationLogEntry:
        final_status = normalize_final_status(status)
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                UPDATE summarization_logs
                SET status = ?, details = ?, updated_at = ?
                WHERE log_id = ? AND status = 'started'
                """,
                (final_status.value, details, _utc_now(), int(log_id)),
            )
            updated = cursor.rowcount
            await db.commit()

            async with db.execute("SELECT * FROM summarization_logs WHERE log_id = ?", (int(log_id),)) as cursor:
                row = await cursor.fetchone()

        if row is None:
            raise ValueError(f"Summarization log {log_id} does not exist")
        if updated == 0:
            raise ValueError(f"Summarization log {log_id} is already {row['status']}")
        return _row_to_entry(row)

    async def list_summarization_logs(
        self,
        user_id: str | None = None,
        limit: int = 50,
    ) -> List[SummarizationLogEntry]:
        safe_limit = _clamp_limit(limit)
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            if user_id:
                query = """
                    SELECT * FROM summarization_logs
                    WHERE user_id = ?
                    ORDER BY log_id DESC
                    LIMIT ?
                """
                params: tuple = (user_id, safe_limit)
            else:
                query = """
                    SELECT * FROM summarization_logs
                    ORDER BY log_id DESC
                    LIMIT ?
                """
                params = (safe_limit,)
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def last_completed_update_at(self, user_id: str) -> str | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT MAX(updated_at)
                FROM summarization_logs
                WHERE user_id = ? AND status = 'completed'
                """,
                (user_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None or row[0] is None:
            return None
        return str(row[0])
