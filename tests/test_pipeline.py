from __future__ import annotations

import asyncio
import gc
import json
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_core.memory.context import LogStatus, UserContext  # noqa: E402
from companion_core.memory.pipeline import (  # noqa: E402
    EMPTY_TRANSCRIPT,
    MemoryUpdatePipeline,
    PipelineError,
)
from companion_core.memory.storage.utils import ContextVersionConflict  # noqa: E402
from companion_core.memory.store import ContextStore  # noqa: E402
from companion_core.services.base import ProviderError  # noqa: E402


NOW = "2026-03-01T10:00:00Z"

_INTEGRATION_JSON = json.dumps(
    {
        "core_understanding": {"personality": "curious and direct"},
        "relationship_patterns": {},
        "evolving_insights": {
            "recent_observations": ["opened up about work"],
            "consistent_patterns": ["asks follow-up questions"],
            "changing_patterns": [],
        },
    }
)


class _FakeRouter:
    def __init__(self, *, analysis: object = "The user is inquisitive.", integration: object = _INTEGRATION_JSON) -> None:
        self.analysis = analysis
        self.integration = integration
        self.calls: list[tuple[str, bool]] = []

    async def summarize(self, prompt: str, expect_json: bool = True, model_override: str | None = None) -> str:
        self.calls.append((prompt, expect_json))
        reply = self.integration if expect_json else self.analysis
        if isinstance(reply, Exception):
            raise reply
        return str(reply)


def _seed_messages(store: ContextStore, user_id: str, count: int = 5) -> None:
    async def _seed() -> None:
        for index in range(count):
            role = "user" if index % 2 == 0 else "assistant"
            await store.save_message(user_id, role, f"message {index}")

    asyncio.run(_seed())


def _store(tmp_path: Path) -> ContextStore:
    store = ContextStore(tmp_path / "memory.db")
    asyncio.run(store.init())
    return store


def test_end_to_end_update_persists_context_and_completes_log(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed_messages(store, "u1", 5)
    router = _FakeRouter()
    pipeline = MemoryUpdatePipeline(store, router, clock=lambda: NOW)

    result = asyncio.run(pipeline.run("u1", trigger="manual"))

    saved = asyncio.run(store.load_user_context("u1"))
    assert saved.core_understanding.personality == "curious and direct"
    assert saved.evolving_insights.consistent_patterns == ["asks follow-up questions"]
    assert saved.last_update == NOW
    assert result == saved

    logs = asyncio.run(store.list_summarization_logs("u1"))
    assert len(logs) == 1
    assert logs[0].status is LogStatus.COMPLETED
    assert logs[0].trigger == "manual"

    analysis_prompt, analysis_json = router.calls[0]
    integration_prompt, integration_json = router.calls[1]
    assert analysis_json is False and integration_json is True
    assert "RECENT CONVERSATION TRANSCRIPT:\n\nUSER: message 0\nASSISTANT: message 1\n" in analysis_prompt
    assert "The user is inquisitive." in integration_prompt
    assert "Personality: Not yet established" in integration_prompt
    assert "None identified yet" in integration_prompt


def test_provider_failure_marks_log_failed_and_keeps_context(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed_messages(store, "u1", 2)
    asyncio.run(store.save_user_context("u1", UserContext.from_payload({"core_understanding": {"personality": "calm"}})))
    router = _FakeRouter(integration=ProviderError("openai", "OpenAI API error 500: down", status=500))
    pipeline = MemoryUpdatePipeline(store, router)

    with pytest.raises(PipelineError) as exc_info:
        asyncio.run(pipeline.run("u1", trigger="message_count"))

    error = exc_info.value
    assert str(error) == "OpenAI API error 500: down"
    assert isinstance(error.__cause__, ProviderError)
    assert error.user_id == "u1"
    assert error.trigger == "message_count"

    logs = asyncio.run(store.list_summarization_logs("u1"))
    assert logs[0].status is LogStatus.FAILED
    assert logs[0].details == "OpenAI API error 500: down"
    assert logs[0].log_id == error.log_id

    record = asyncio.run(store.get_user_context_record("u1"))
    assert record.version == 1
    assert record.context.core_understanding.personality == "calm"


def test_unparseable_integration_keeps_strings_and_clears_recent(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed_messages(store, "u1", 3)
    existing = UserContext.from_payload(
        {
            "core_understanding": {"personality": "calm"},
            "evolving_insights": {
                "recent_observations": ["stale"],
                "consistent_patterns": ["keeps notes"],
                "changing_patterns": ["softer"],
            },
        }
    )
    asyncio.run(store.save_user_context("u1", existing))
    pipeline = MemoryUpdatePipeline(store, _FakeRouter(integration="Sorry, I cannot do JSON today."), clock=lambda: NOW)

    result = asyncio.run(pipeline.run("u1"))

    assert result.core_understanding.personality == "calm"
    assert result.evolving_insights.consistent_patterns == ["keeps notes"]
    assert result.evolving_insights.recent_observations == []
    assert result.evolving_insights.changing_patterns == []
    assert result.last_update == NOW
    logs = asyncio.run(store.list_summarization_logs("u1"))
    assert logs[0].status is LogStatus.COMPLETED


def test_empty_pattern_analysis_is_replaced_by_placeholder(tmp_path: Path) -> None:
    store = _store(tmp_path)
    router = _FakeRouter(analysis="   ")
    pipeline = MemoryUpdatePipeline(store, router)

    asyncio.run(pipeline.run("u1"))

    integration_prompt = router.calls[1][0]
    assert "No notable patterns were identified" in integration_prompt
    assert EMPTY_TRANSCRIPT in router.calls[0][0]


def test_legacy_stored_context_is_migrated_before_merge(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def _write_legacy() -> None:
        import aiosqlite

        async with aiosqlite.connect(store.db_path) as db:
            await db.execute(
                "INSERT INTO user_contexts (user_id, payload, version, updated_at) VALUES (?, ?, 1, ?)",
                ("u1", json.dumps({"preferences": ["likes tea"], "facts": ["has a dog"]}), NOW),
            )
            await db.commit()

    asyncio.run(_write_legacy())
    pipeline = MemoryUpdatePipeline(store, _FakeRouter(), clock=lambda: NOW)

    result = asyncio.run(pipeline.run("u1"))

    assert result.evolving_insights.consistent_patterns == ["has a dog", "asks follow-up questions"]
    assert result.evolving_insights.recent_observations == ["opened up about work"]
    stored = asyncio.run(store.get_user_context_record("u1"))
    assert stored.version == 2


class _ConflictingStore:
    """Wraps a real store and lets another writer land once before our first save."""

    def __init__(self, inner: ContextStore) -> None:
        self.inner = inner
        self.conflicts = 0

    def __getattr__(self, name: str):  # type: ignore[no-untyped-def]
        return getattr(self.inner, name)

    async def save_user_context(self, user_id, context, expected_version=None):  # type: ignore[no-untyped-def]
        if self.conflicts == 0:
            self.conflicts += 1
            other = UserContext.from_payload(
                {
                    "relationship_patterns": {"trust_development": "set by another worker"},
                    "evolving_insights": {"consistent_patterns": ["other pattern"]},
                }
            )
            await self.inner.save_user_context(user_id, other)
        return await self.inner.save_user_context(user_id, context, expected_version=expected_version)


def test_version_conflict_re_merges_without_new_model_calls(tmp_path: Path) -> None:
    inner = _store(tmp_path)
    store = _ConflictingStore(inner)
    router = _FakeRouter()
    pipeline = MemoryUpdatePipeline(store, router, clock=lambda: NOW)

    result = asyncio.run(pipeline.run("u1"))

    assert len(router.calls) == 2
    assert result.relationship_patterns.trust_development == "set by another worker"
    assert result.core_understanding.personality == "curious and direct"
    assert result.evolving_insights.consistent_patterns == ["other pattern", "asks follow-up questions"]
    assert asyncio.run(inner.get_user_context_record("u1")).version == 2


def test_version_conflict_gives_up_after_configured_retries(tmp_path: Path) -> None:
    class _AlwaysConflicts(_ConflictingStore):
        async def save_user_context(self, user_id, context, expected_version=None):  # type: ignore[no-untyped-def]
            raise ContextVersionConflict(user_id, int(expected_version or 0), 99)

    inner = _store(tmp_path)
    pipeline = MemoryUpdatePipeline(_AlwaysConflicts(inner), _FakeRouter(), save_conflict_retries=1)

    with pytest.raises(PipelineError) as exc_info:
        asyncio.run(pipeline.run("u1"))

    assert isinstance(exc_info.value.__cause__, ContextVersionConflict)
    assert asyncio.run(inner.list_summarization_logs("u1"))[0].status is LogStatus.FAILED


def test_should_update_counts_user_messages_since_last_completed_run(tmp_path: Path) -> None:
    store = _store(tmp_path)
    pipeline = MemoryUpdatePipeline(store, _FakeRouter(), min_new_messages=3)

    _seed_messages(store, "u1", 4)
    assert asyncio.run(pipeline.should_update("u1")) is False

    _seed_messages(store, "u1", 1)
    assert asyncio.run(pipeline.should_update("u1")) is True

    asyncio.run(pipeline.run("u1"))
    assert asyncio.run(pipeline.should_update("u1")) is False


def test_per_user_lock_is_held_during_run_and_released_afterwards(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed_messages(store, "u1", 2)
    router = _FakeRouter()
    pipeline = MemoryUpdatePipeline(store, router)
    seen_running: list[bool] = []

    original_summarize = router.summarize

    async def watching_summarize(prompt: str, expect_json: bool = True, model_override: str | None = None) -> str:
        seen_running.append(pipeline.is_running("u1"))
        return await original_summarize(prompt, expect_json, model_override)

    router.summarize = watching_summarize  # type: ignore[method-assign]

    async def _two_runs() -> None:
        await asyncio.gather(pipeline.run("u1"), pipeline.run("u1"))

    asyncio.run(_two_runs())
    gc.collect()

    assert seen_running == [True, True, True, True]
    assert len(router.calls) == 4
    assert pipeline.is_running("u1") is False
    assert len(pipeline._user_locks) == 0
