from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Dict, List

import aiohttp


logger = logging.getLogger("companion_core.llm")

_EMBEDDED_JSON_BLOCK = re.compile(r"```json\s*\n?(.*?)```", re.IGNORECASE | re.DOTALL)


class ProviderError(RuntimeError):
    """Non-2xx response, malformed body or unusable configuration for one vendor."""

    def __init__(self, vendor: str, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.vendor = vendor
        self.status = status


def strip_json_fences(text: str) -> str:
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?", "", cleaned, flags=re.IGNORECASE).strip()
        cleaned = re.sub(r"```$", "", cleaned).strip()
        return cleaned
    # Some models put a short preamble before the fenced JSON block.
    match = _EMBEDDED_JSON_BLOCK.search(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


class ProviderClient:
    """Shared HTTP plumbing for one language-model vendor.

    One instance is built at startup and reused; it owns a single lazily created
    ``aiohttp.ClientSession`` so connections are pooled across calls.
    """

    backend_name = "llm"
    api_key_env = ""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        timeout_seconds: int = 90,
        temperature: float = 0.7,
        json_temperature: float = 0.2,
        max_output_tokens: int = 1500,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.base_url = (base_url or "").strip().rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=max(5, int(timeout_seconds)))
        self.temperature = float(temperature)
        self.json_temperature = float(json_temperature)
        self.max_output_tokens = max(1, int(max_output_tokens))
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def invoke(
        self,
        messages: List[Dict[str, str]],
        model: str,
        *,
        expect_json: bool = False,
    ) -> str:
        raise NotImplementedError

    def _require_api_key(self) -> str:
        if not self.api_key:
            raise ProviderError(
                self.backend_name,
                f"{self.api_key_env or 'API key'} is not set in environment variables",
            )
        return self.api_key

    def _temperature(self, expect_json: bool) -> float:
        return self.json_temperature if expect_json else self.temperature

    @staticmethod
    def _clean_messages(messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
        cleaned: List[Dict[str, str]] = []
        for message in messages:
            role = str(message.get("role", "")).strip().lower() or "user"
            if role not in {"system", "user", "assistant"}:
                role = "user"
            content = str(message.get("content", "")).strip()
            if not content:
                continue
            cleaned.append({"role": role, "content": content})
        return cleaned

    @staticmethod
    def _split_system(messages: List[Dict[str, str]]) -> tuple[str, List[Dict[str, str]]]:
        system_lines: List[str] = []
        turns: List[Dict[str, str]] = []
        for message in messages:
            if message["role"] == "system":
                system_lines.append(message["content"])
                continue
            turns.append(message)
        return "\n\n".join(system_lines), turns

    def _finish_text(self, text: str, expect_json: bool) -> str:
        cleaned = (text or "").strip()
        if expect_json:
            cleaned = strip_json_fences(cleaned)
        return cleaned

    def _log_request(self, model: str, messages: List[Dict[str, str]]) -> None:
        logger.info(
            "[llm.%s] request model=%s messages=%s chars=%s",
            self.backend_name,
            model,
            len(messages),
            sum(len(m.get("content", "")) for m in messages),
        )

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        *,
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        try:
            async with self._session.post(url, json=payload, headers=headers) as response:
                status = response.status
                text = await response.text()
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(self.backend_name, f"{self.backend_name} transport error: {exc}") from exc

        if not 200 <= status < 300:
            raise ProviderError(
                self.backend_name,
                f"{self.backend_name} API error {status}: {text[:800]}",
                status=status,
            )
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderError(self.backend_name, f"{self.backend_name} returned invalid JSON body") from exc
        if not isinstance(parsed, dict):
            raise ProviderError(self.backend_name, f"{self.backend_name} returned non-object JSON response")
        return parsed
