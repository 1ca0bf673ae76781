from .context import ExtractionResult, LogStatus, StoredContext, SummarizationLogEntry, UserContext
from .factory import build_context_store
from .formatting import format_context_for_prompt
from .merge import merge_user_context
from .pipeline import MemoryUpdatePipeline, PipelineError
from .postgres_store import PostgresContextStore
from .store import ContextStore

__all__ = [
    "ContextStore",
    "ExtractionResult",
    "LogStatus",
    "MemoryUpdatePipeline",
    "PipelineError",
    "PostgresContextStore",
    "StoredContext",
    "SummarizationLogEntry",
    "UserContext",
    "build_context_store",
    "format_context_for_prompt",
    "merge_user_context",
]
