from __future__ import annotations

from typing import Dict, List

import aiosqlite

from .utils import _clamp_limit, _sqlite_memory_connection, _utc_now


class ConversationMessagesMixin:
    async def save_message(self, user_id: str, role: str, content: str) -> int:
        normalized_role = "assistant" if str(role).strip().lower() == "assistant" else "user"
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO messages (user_id, role, content, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, normalized_role, content, _utc_now()),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_recent_messages(self, user_id: str, limit: int) -> List[Dict[str, object]]:
        """Newest ``limit`` messages of a user, returned oldest first."""
        if int(limit) <= 0:
            return []
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT message_id, role, content, created_at
                FROM messages
                WHERE user_id = ?
                ORDER BY message_id DESC
                LIMIT ?
                """,
                (user_id, _clamp_limit(limit)),
            ) as cursor:
                rows = await cursor.fetchall()

        rows = list(reversed(rows))
        return [
            {
                "message_id": int(row["message_id"]),
                "role": str(row["role"]),
                "content": str(row["content"]),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]

    async def count_user_messages_since(self, user_id: str, since: str | None = None) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            if since:
                query = """
                    SELECT COUNT(*) FROM messages
                    WHERE user_id = ? AND role = 'user' AND created_at > ?
                """
                params: tuple = (user_id, since)
            else:
                query = "SELECT COUNT(*) FROM messages WHERE user_id = ? AND role = 'user'"
                params = (user_id,)
            async with db.execute(query, params) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
