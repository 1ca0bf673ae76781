from .contexts import ContextRecordsMixin
from .logs import SummarizationLogsMixin
from .messages import ConversationMessagesMixin
from .schema import ContextSchemaMixin
from .utils import ContextVersionConflict

__all__ = [
    "ContextSchemaMixin",
    "ContextRecordsMixin",
    "SummarizationLogsMixin",
    "ConversationMessagesMixin",
    "ContextVersionConflict",
]
