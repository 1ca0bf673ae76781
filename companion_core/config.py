from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .services.router import normalize_model_name, resolve_vendor


load_dotenv()


DEFAULT_SYSTEM_PROMPT = (
    "You are a warm, attentive AI companion. Keep continuity with what you know about the user, "
    "speak naturally, and never recite stored notes verbatim."
)


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


_API_KEY_ENV = {
    "openai": ("openai_api_key", "OPENAI_API_KEY"),
    "anthropic": ("anthropic_api_key", "ANTHROPIC_API_KEY"),
    "deepseek": ("deepseek_api_key", "DEEPSEEK_API_KEY"),
    "gemini": ("gemini_api_key", "GEMINI_API_KEY"),
}


@dataclass(slots=True)
class Settings:
    openai_api_key: str
    openai_base_url: str
    anthropic_api_key: str
    anthropic_base_url: str
    anthropic_version: str
    deepseek_api_key: str
    deepseek_base_url: str
    gemini_api_key: str
    gemini_base_url: str

    chat_llm_model: str
    summarization_llm_model: str
    llm_timeout_seconds: int
    llm_temperature: float
    llm_json_temperature: float
    llm_max_output_tokens: int
    llm_retry_attempts: int
    llm_retry_base_delay_ms: int
    debug_token_estimate: bool

    memory_backend: str
    sqlite_path: Path
    postgres_dsn: str
    memory_transcript_messages: int
    memory_consistent_patterns_cap: int
    memory_update_min_new_messages: int
    memory_save_conflict_retries: int

    chat_history_messages: int
    chat_use_context: bool
    system_prompt: str

    @classmethod
    def from_env(cls) -> "Settings":
        chat_model = _env_str("CHAT_LLM_MODEL", "chatgpt-4o-latest")
        return cls(
            openai_api_key=_env_str("OPENAI_API_KEY", ""),
            openai_base_url=_env_str("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            anthropic_api_key=_env_str("ANTHROPIC_API_KEY", ""),
            anthropic_base_url=_env_str("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1"),
            anthropic_version=_env_str("ANTHROPIC_VERSION", "2023-06-01"),
            deepseek_api_key=_env_str("DEEPSEEK_API_KEY", ""),
            deepseek_base_url=_env_str("DEEPSEEK_BASE_URL", "https://api.deepseek.com"),
            gemini_api_key=_env_str("GEMINI_API_KEY", "", aliases=("GOOGLE_API_KEY",)),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            chat_llm_model=chat_model,
            summarization_llm_model=_env_str("SUMMARIZATION_LLM_MODEL", chat_model),
            llm_timeout_seconds=_env_int("LLM_TIMEOUT_SECONDS", 90),
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.7),
            llm_json_temperature=_env_float("LLM_JSON_TEMPERATURE", 0.2),
            llm_max_output_tokens=_env_int("LLM_MAX_OUTPUT_TOKENS", 1500),
            llm_retry_attempts=_env_int("LLM_RETRY_ATTEMPTS", 3),
            llm_retry_base_delay_ms=_env_int("LLM_RETRY_BASE_DELAY_MS", 1000),
            debug_token_estimate=_env_bool("DEBUG_TOKEN_ESTIMATE", False),
            memory_backend=_env_str("MEMORY_BACKEND", "sqlite").lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/companion.db")).expanduser(),
            postgres_dsn=_env_str("MEMORY_POSTGRES_DSN", ""),
            memory_transcript_messages=_env_int("MEMORY_TRANSCRIPT_MESSAGES", 20),
            memory_consistent_patterns_cap=_env_int("MEMORY_CONSISTENT_PATTERNS_CAP", 20),
            memory_update_min_new_messages=_env_int("MEMORY_UPDATE_MIN_NEW_MESSAGES", 5),
            memory_save_conflict_retries=_env_int("MEMORY_SAVE_CONFLICT_RETRIES", 3),
            chat_history_messages=_env_int("CHAT_HISTORY_MESSAGES", 10),
            chat_use_context=_env_bool("CHAT_USE_CONTEXT", True),
            system_prompt=_env_str("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
        )

    def validate(self) -> None:
        if not self.chat_llm_model:
            raise ValueError("CHAT_LLM_MODEL cannot be empty")
        if not self.summarization_llm_model:
            raise ValueError("SUMMARIZATION_LLM_MODEL cannot be empty")

        if self.llm_timeout_seconds < 5:
            raise ValueError("LLM_TIMEOUT_SECONDS must be >= 5")
        if not 0.0 <= self.llm_temperature <= 2.0:
            raise ValueError("LLM_TEMPERATURE must be in [0, 2]")
        if not 0.0 <= self.llm_json_temperature <= 2.0:
            raise ValueError("LLM_JSON_TEMPERATURE must be in [0, 2]")
        if self.llm_max_output_tokens < 64:
            raise ValueError("LLM_MAX_OUTPUT_TOKENS must be >= 64")
        if self.llm_retry_attempts < 1:
            raise ValueError("LLM_RETRY_ATTEMPTS must be >= 1")
        if self.llm_retry_base_delay_ms < 0:
            raise ValueError("LLM_RETRY_BASE_DELAY_MS must be >= 0")

        if self.memory_backend not in {"sqlite", "postgres"}:
            raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")
        if self.memory_backend == "postgres" and not self.postgres_dsn:
            raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")
        if self.memory_transcript_messages < 1:
            raise ValueError("MEMORY_TRANSCRIPT_MESSAGES must be >= 1")
        if self.memory_consistent_patterns_cap < 1:
            raise ValueError("MEMORY_CONSISTENT_PATTERNS_CAP must be >= 1")
        if self.memory_update_min_new_messages < 1:
            raise ValueError("MEMORY_UPDATE_MIN_NEW_MESSAGES must be >= 1")
        if self.memory_save_conflict_retries < 0:
            raise ValueError("MEMORY_SAVE_CONFLICT_RETRIES must be >= 0")
        if self.chat_history_messages < 0:
            raise ValueError("CHAT_HISTORY_MESSAGES must be >= 0")

        for model in (self.chat_llm_model, self.summarization_llm_model):
            vendor = resolve_vendor(normalize_model_name(model)).value
            attr, env_name = _API_KEY_ENV[vendor]
            if not getattr(self, attr):
                raise ValueError(f"{env_name} is required for model '{model}'")
