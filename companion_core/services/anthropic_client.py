from __future__ import annotations

import logging
from typing import Any, Dict, List

from .base import ProviderClient, ProviderError


logger = logging.getLogger("companion_core.llm")


class AnthropicClient(ProviderClient):
    backend_name = "anthropic"
    api_key_env = "ANTHROPIC_API_KEY"

    def __init__(
        self,
        *,
        base_url: str = "https://api.anthropic.com/v1",
        api_version: str = "2023-06-01",
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url=base_url, **kwargs)
        self.api_version = api_version

    def _endpoint(self) -> str:
        return f"{self.base_url}/messages"

    def _build_payload(self, messages: List[Dict[str, str]], model: str, expect_json: bool) -> Dict[str, Any]:
        # The Messages API rejects role=system inside the turn list.
        system_prompt, turns = self._split_system(messages)
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_output_tokens,
            "temperature": self._temperature(expect_json),
            "messages": turns,
        }
        if system_prompt:
            payload["system"] = system_prompt
        return payload

    def _extract_text(self, data: Dict[str, Any]) -> str:
        blocks = data.get("content")
        if not isinstance(blocks, list) or not blocks:
            raise ProviderError(self.backend_name, "Unexpected Anthropic API response structure.")
        chunks: List[str] = []
        for block in blocks:
            if not isinstance(block, dict) or block.get("type", "text") != "text":
                continue
            text = block.get("text")
            if isinstance(text, str) and text.strip():
                chunks.append(text)
        joined = "".join(chunks).strip()
        if not joined:
            raise ProviderError(
                self.backend_name,
                f"Anthropic empty response (stop_reason={data.get('stop_reason')})",
            )
        return joined

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
            headers={
                "Content-Type": "application/json",
                "x-api-key": api_key,
                "anthropic-version": self.api_version,
            },
        )
        text = self._extract_text(data)
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        logger.info(
            "[llm.anthropic] response input_tokens=%s output_tokens=%s",
            usage.get("input_tokens", "unknown"),
            usage.get("output_tokens", "unknown"),
        )
        return self._finish_text(text, expect_json)
