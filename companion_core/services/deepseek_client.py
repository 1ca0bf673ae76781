from __future__ import annotations

import logging
from typing import Any, Dict

from .openai_client import OpenAIClient


logger = logging.getLogger("companion_core.llm")


class DeepSeekClient(OpenAIClient):
    """DeepSeek speaks the OpenAI chat-completions dialect on its own host."""

    backend_name = "deepseek"
    api_key_env = "DEEPSEEK_API_KEY"

    def __init__(self, *, base_url: str = "https://api.deepseek.com", **kwargs: Any) -> None:
        super().__init__(base_url=base_url, **kwargs)

    def _headers(self, api_key: str) -> Dict[str, str]:
        headers = super()._headers(api_key)
        headers["Accept"] = "application/json"
        return headers

    def _log_usage(self, data: Dict[str, Any]) -> None:
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        logger.info(
            "[llm.deepseek] response cache_hit_tokens=%s cache_miss_tokens=%s output_tokens=%s",
            usage.get("prompt_cache_hit_tokens", "unknown"),
            usage.get("prompt_cache_miss_tokens", "unknown"),
            usage.get("completion_tokens", "unknown"),
        )
