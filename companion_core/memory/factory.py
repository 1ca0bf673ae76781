from __future__ import annotations

from typing import TYPE_CHECKING, Union

from .postgres_store import PostgresContextStore
from .store import ContextStore

if TYPE_CHECKING:
    from ..config import Settings


AnyContextStore = Union[ContextStore, PostgresContextStore]


def build_context_store(settings: "Settings") -> AnyContextStore:
    backend = (settings.memory_backend or "sqlite").strip().lower()
    if backend == "sqlite":
        return ContextStore(settings.sqlite_path)
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")
        return PostgresContextStore(settings.postgres_dsn)
    raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")
