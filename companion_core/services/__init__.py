from .anthropic_client import AnthropicClient
from .base import ProviderClient, ProviderError
from .deepseek_client import DeepSeekClient
from .gemini_client import GeminiClient
from .openai_client import OpenAIClient
from .retry import with_retry
from .router import LLMRouter, Vendor, build_router

__all__ = [
    "AnthropicClient",
    "DeepSeekClient",
    "GeminiClient",
    "LLMRouter",
    "OpenAIClient",
    "ProviderClient",
    "ProviderError",
    "Vendor",
    "build_router",
    "with_retry",
]
