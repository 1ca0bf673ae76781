from __future__ import annotations

import asyncio
import logging
import math
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Mapping

from ..prompts.memory import build_summarize_system_prompt
from .anthropic_client import AnthropicClient
from .base import ProviderClient, ProviderError
from .deepseek_client import DeepSeekClient
from .gemini_client import GeminiClient
from .openai_client import OpenAIClient
from .retry import with_retry

if TYPE_CHECKING:
    from ..config import Settings


logger = logging.getLogger("companion_core.llm")


class Vendor(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    DEEPSEEK = "deepseek"
    GEMINI = "gemini"


MODEL_ALIASES: Dict[str, str] = {
    "gpt-4o": "chatgpt-4o-latest",
    "deepseek-v3": "deepseek-chat",
}

# Checked in order; first marker found in the lower-cased model id wins.
VENDOR_MARKERS: tuple[tuple[str, Vendor], ...] = (
    ("claude", Vendor.ANTHROPIC),
    ("deepseek", Vendor.DEEPSEEK),
    ("gemini", Vendor.GEMINI),
)
DEFAULT_VENDOR = Vendor.OPENAI


def normalize_model_name(model_name: str) -> str:
    cleaned = (model_name or "").strip()
    return MODEL_ALIASES.get(cleaned, cleaned)


def resolve_vendor(model_name: str) -> Vendor:
    lowered = (model_name or "").casefold()
    for marker, vendor in VENDOR_MARKERS:
        if marker in lowered:
            return vendor
    return DEFAULT_VENDOR


class LLMRouter:
    """Routes chat and summarization calls to the adapter that serves the model."""

    def __init__(
        self,
        adapters: Mapping[Vendor, ProviderClient],
        *,
        chat_model: str,
        summarization_model: str | None = None,
        max_attempts: int = 3,
        base_delay_ms: float = 1000,
        debug_token_estimate: bool = False,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.adapters: Dict[Vendor, ProviderClient] = dict(adapters)
        self.chat_model = normalize_model_name(chat_model)
        self.summarization_model = normalize_model_name(summarization_model or chat_model)
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay_ms = max(0.0, float(base_delay_ms))
        self.debug_token_estimate = debug_token_estimate
        self._sleep = sleep

    async def start(self) -> None:
        for adapter in self.adapters.values():
            await adapter.start()

    async def close(self) -> None:
        for adapter in self.adapters.values():
            await adapter.close()

    def required_vendors(self) -> set[Vendor]:
        return {resolve_vendor(self.chat_model), resolve_vendor(self.summarization_model)}

    def adapter_for(self, model: str) -> tuple[Vendor, ProviderClient]:
        vendor = resolve_vendor(model)
        adapter = self.adapters.get(vendor)
        if adapter is None:
            raise ProviderError(vendor.value, f"No adapter configured for vendor '{vendor.value}'")
        return vendor, adapter

    async def converse(self, messages: List[Dict[str, str]], model_override: str | None = None) -> str:
        model = normalize_model_name(model_override or self.chat_model)
        return await self._dispatch(messages, model, expect_json=False, kind="chat")

    async def summarize(
        self,
        prompt: str,
        expect_json: bool = True,
        model_override: str | None = None,
    ) -> str:
        model = normalize_model_name(model_override or self.summarization_model)
        messages = [
            {"role": "system", "content": build_summarize_system_prompt(expect_json)},
            {"role": "user", "content": prompt},
        ]
        return await self._dispatch(messages, model, expect_json=expect_json, kind="summary")

    async def _dispatch(
        self,
        messages: List[Dict[str, str]],
        model: str,
        *,
        expect_json: bool,
        kind: str,
    ) -> str:
        vendor, adapter = self.adapter_for(model)
        logger.info(
            "[llm.route] kind=%s model=%s vendor=%s messages=%s json=%s",
            kind,
            model,
            vendor.value,
            len(messages),
            expect_json,
        )
        if self.debug_token_estimate:
            total_chars = sum(len(str(m.get("content", ""))) for m in messages)
            logger.info("[llm.route] estimated_tokens=~%s", math.ceil(total_chars / 4))

        async def _call() -> str:
            return await adapter.invoke(messages, model, expect_json=expect_json)

        try:
            reply = await with_retry(
                _call,
                self.max_attempts,
                self.base_delay_ms,
                sleep=self._sleep,
                label=f"llm.{vendor.value}",
            )
        except Exception:
            logger.error("[llm.route] kind=%s model=%s failed after retries", kind, model)
            raise

        logger.info("[llm.route] kind=%s model=%s reply_chars=%s", kind, model, len(reply))
        return reply


def build_router(settings: "Settings") -> LLMRouter:
    common = {
        "timeout_seconds": settings.llm_timeout_seconds,
        "temperature": settings.llm_temperature,
        "json_temperature": settings.llm_json_temperature,
        "max_output_tokens": settings.llm_max_output_tokens,
    }
    adapters: Dict[Vendor, ProviderClient] = {
        Vendor.OPENAI: OpenAIClient(api_key=settings.openai_api_key, base_url=settings.openai_base_url, **common),
        Vendor.ANTHROPIC: AnthropicClient(
            api_key=settings.anthropic_api_key,
            base_url=settings.anthropic_base_url,
            api_version=settings.anthropic_version,
            **common,
        ),
        Vendor.DEEPSEEK: DeepSeekClient(
            api_key=settings.deepseek_api_key,
            base_url=settings.deepseek_base_url,
            **common,
        ),
        Vendor.GEMINI: GeminiClient(api_key=settings.gemini_api_key, base_url=settings.gemini_base_url, **common),
    }
    return LLMRouter(
        adapters,
        chat_model=settings.chat_llm_model,
        summarization_model=settings.summarization_llm_model,
        max_attempts=settings.llm_retry_attempts,
        base_delay_ms=settings.llm_retry_base_delay_ms,
        debug_token_estimate=settings.debug_token_estimate,
    )
