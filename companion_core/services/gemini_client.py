from __future__ import annotations

import logging
from typing import Any, Dict, List

from .base import ProviderClient, ProviderError


logger = logging.getLogger("companion_core.llm")


class GeminiClient(ProviderClient):
    backend_name = "gemini"
    api_key_env = "GEMINI_API_KEY"

    def __init__(self, *, base_url: str = "https://generativelanguage.googleapis.com", **kwargs: Any) -> None:
        super().__init__(base_url=base_url, **kwargs)

    def _endpoint(self, model: str, api_key: str) -> str:
        return f"{self.base_url}/v1beta/models/{model}:generateContent?key={api_key}"

    @staticmethod
    def _map_messages(messages: List[Dict[str, str]]) -> Dict[str, Any]:
        system_lines: List[str] = []
        contents: List[Dict[str, Any]] = []

        for message in messages:
            role = message["role"]
            if role == "system":
                system_lines.append(message["content"])
                continue
            mapped_role = "model" if role == "assistant" else "user"
            contents.append({"role": mapped_role, "parts": [{"text": message["content"]}]})

        payload: Dict[str, Any] = {"contents": contents}
        if system_lines:
            payload["systemInstruction"] = {
                "parts": [{"text": "\n\n".join(system_lines)}],
            }
        return payload

    def _malformed(self, detail: str) -> ProviderError:
        return ProviderError(self.backend_name, f"Unexpected Gemini API response structure: {detail}")

    def _extract_text(self, data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not isinstance(candidates, list):
            raise self._malformed("candidates is not a list")
        if not candidates:
            prompt_feedback = data.get("promptFeedback") or {}
            if not isinstance(prompt_feedback, dict):
                raise self._malformed("promptFeedback is not an object")
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                raise ProviderError(self.backend_name, f"Gemini blocked response: {block_reason}")
            raise ProviderError(self.backend_name, "Gemini returned no candidates")

        first = candidates[0]
        if not isinstance(first, dict):
            raise self._malformed("candidate is not an object")
        content = first.get("content") or {}
        if not isinstance(content, dict):
            raise self._malformed("content is not an object")
        parts = content.get("parts") or []
        if not isinstance(parts, list):
            raise self._malformed("parts is not a list")
        chunks: List[str] = []

        for part in parts:
            text = part.get("text") if isinstance(part, dict) else None
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())

        joined = "\n".join(chunks).strip()
        if joined:
            return joined

        finish_reason = first.get("finishReason")
        if finish_reason:
            raise ProviderError(self.backend_name, f"Gemini empty response (finishReason={finish_reason})")
        raise ProviderError(self.backend_name, "Gemini empty response")

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

        payload = self._map_messages(mapped)
        if not payload["contents"]:
            raise ProviderError(self.backend_name, "No user message found")
        generation_config: Dict[str, Any] = {
            "temperature": self._temperature(expect_json),
            "maxOutputTokens": self.max_output_tokens,
        }
        if expect_json:
            generation_config["responseMimeType"] = "application/json"
        payload["generationConfig"] = generation_config

        data = await self._post_json(self._endpoint(model, api_key), payload)
        text = self._extract_text(data)
        usage = data.get("usageMetadata")
        if not isinstance(usage, dict):
            usage = {}
        logger.info(
            "[llm.gemini] response prompt_tokens=%s output_tokens=%s chars=%s",
            usage.get("promptTokenCount", "unknown"),
            usage.get("candidatesTokenCount", "unknown"),
            len(text),
        )
        return self._finish_text(text, expect_json)
