from __future__ import annotations

import logging

import aiosqlite

from ..context import StoredContext, UserContext
from .utils import (
    ContextVersionConflict,
    _sqlite_memory_connection,
    _utc_now,
    decode_context_payload,
    encode_context,
)


logger = logging.getLogger("companion_core.memory")


class ContextRecordsMixin:
    async def get_user_context_record(self, user_id: str) -> StoredContext:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT payload, version, updated_at
                FROM user_contexts
                WHERE user_id = ?
                """,
                (user_id,),
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return StoredContext(user_id=user_id, context=UserContext(), version=0)
        payload = decode_context_payload(row["payload"], user_id=user_id)
        return StoredContext(
            user_id=user_id,
            context=UserContext.from_payload(payload),
            version=int(row["version"]),
            updated_at=str(row["updated_at"]),
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
        """Upsert the context and return its new version.

        With ``expected_version`` the write only lands if the stored version still matches
        (0 meaning no row yet); otherwise ``ContextVersionConflict`` is raised.
        """
        payload = encode_context(context)
        now = _utc_now()
        async with _sqlite_memory_connection(self.db_path) as db:
            if expected_version is None:
                await db.execute(
                    """
                    INSERT INTO user_contexts (user_id, payload, version, updated_at)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        payload = excluded.payload,
                        version = user_contexts.version + 1,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, payload, now),
                )
            elif expected_version == 0:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO user_contexts (user_id, payload, version, updated_at)
                    VALUES (?, ?, 1, ?)
                    """,
                    (user_id, payload, now),
                )
                if cursor.rowcount == 0:
                    await db.rollback()
                    raise ContextVersionConflict(user_id, 0, await self._current_version(db, user_id))
            else:
                cursor = await db.execute(
                    """
                    UPDATE user_contexts
                    SET payload = ?, version = version + 1, updated_at = ?
                    WHERE user_id = ? AND version = ?
                    """,
                    (payload, now, user_id, int(expected_version)),
                )
                if cursor.rowcount == 0:
                    await db.rollback()
                    raise ContextVersionConflict(
                        user_id,
                        int(expected_version),
                        await self._current_version(db, user_id),
                    )

            version = await self._current_version(db, user_id)
            await db.commit()

        logger.info("[memory.store] user=%s context saved version=%s", user_id, version)
        return version

    @staticmethod
    async def _current_version(db: aiosqlite.Connection, user_id: str) -> int:
        async with db.execute("SELECT version FROM user_contexts WHERE user_id = ?", (user_id,)) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0
