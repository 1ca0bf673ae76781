from __future__ import annotations

from .storage.contexts import ContextRecordsMixin
from .storage.logs import SummarizationLogsMixin
from .storage.messages import ConversationMessagesMixin
from .storage.schema import ContextSchemaMixin
from .storage.utils import _sqlite_memory_connection


class ContextStore(
    ContextSchemaMixin,
    ContextRecordsMixin,
    SummarizationLogsMixin,
    ConversationMessagesMixin,
):
    """Persistent per-user context store with summarization logs and chat history."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("SELECT 1")
