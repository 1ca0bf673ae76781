from __future__ import annotations

import logging
from typing import Any, Dict, List

from .base import ProviderClient, ProviderError


logger = logging.getLogger("companion_core.llm")


class OpenAIClient(ProviderClient):
    """Chat-completions adapter; system messages travel inline with the turns."""

    backend_name = "openai"
    api_key_env = "OPENAI_API_KEY"

    def __init__(self, *, base_url: str = "https://api.openai.com/v1", **kwargs: Any) -> None:
        super().__init__(base_url=base_url, **kwargs)

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }

    def _build_payload(self, messages: List[Dict[str, str]], model: str, expect_json: bool) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": messages,
            "temperature": self._temperature(expect_json),
            "max_tokens": self.max_output_tokens,
        }

    def _extract_text(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProviderError(self.backend_name, f"Unexpected {self.backend_name} API response structure.")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ProviderError(self.backend_name, f"Unexpected {self.backend_name} API response structure.")
        return content

    def _log_usage(self, data: Dict[str, Any]) -> None:
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        logger.info("[llm.%s] response total_tokens=%s", self.backend_name, usage.get("total_tokens", "unknown"))

    async def invoke(
        self,
        messages: List[Dict[str, str]],
        model: str,
        *,
        expect_json: bool = False,
    ) -> str:
        api_key = self._require_api_key()
        mapped = self._clean_messages(messages)
        self._log_request(model, mapped)
        data = await self._post_json(
            self._endpoint(),
            self._build_payload(mapped, model, expect_json),
            headers=self._headers(api_key),
        )
        text = self._extract_text(data)
        self._log_usage(data)
        return self._finish_text(text, expect_json)
