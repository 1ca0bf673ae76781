from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any, Callable

from ..prompts.memory import (
    build_integration_prompt,
    build_pattern_analysis_prompt,
    pattern_analysis_placeholder,
)
from .context import ExtractionResult, LogStatus, StoredContext, UserContext
from .extraction import parse_extraction_response
from .merge import merge_user_context, utc_now_iso
from .storage.utils import ContextVersionConflict


logger = logging.getLogger("companion_core.memory")

EMPTY_TRANSCRIPT = "No recent conversation history available."
TRANSCRIPT_HEADER = "RECENT CONVERSATION TRANSCRIPT:\n\n"


class PipelineError(RuntimeError):
    """A memory update run failed; the original error is chained as ``__cause__``."""

    def __init__(self, user_id: str, log_id: int | None, trigger: str, original: BaseException) -> None:
        super().__init__(str(original))
        self.user_id = user_id
        self.log_id = log_id
        self.trigger = trigger
        self.original = original


class MemoryUpdatePipeline:
    """Two-stage summarization of recent messages into the stored user context.

    Stage one asks the summarization model for free-text behavioral observations, stage
    two folds them into the structured context as JSON. Every run is recorded in the
    summarization log as started, then completed or failed.
    """

    def __init__(
        self,
        store: Any,
        router: Any,
        *,
        transcript_messages: int = 20,
        consistent_patterns_cap: int = 20,
        min_new_messages: int = 5,
        save_conflict_retries: int = 3,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.store = store
        self.router = router
        self.transcript_messages = max(1, int(transcript_messages))
        self.consistent_patterns_cap = max(1, int(consistent_patterns_cap))
        self.min_new_messages = max(1, int(min_new_messages))
        self.save_conflict_retries = max(0, int(save_conflict_retries))
        self._clock = clock
        # Entries vanish once no run holds or awaits the lock.
        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    def is_running(self, user_id: str) -> bool:
        lock = self._user_locks.get(user_id)
        return bool(lock and lock.locked())

    async def build_transcript(self, user_id: str) -> str:
        messages = await self.store.get_recent_messages(user_id, self.transcript_messages)
        if not messages:
            return EMPTY_TRANSCRIPT
        lines = [f"{str(message['role']).upper()}: {message['content']}\n" for message in messages]
        return TRANSCRIPT_HEADER + "".join(lines)

    async def analyze_patterns(self, transcript: str) -> str:
        prompt = build_pattern_analysis_prompt(transcript)
        analysis = (await self.router.summarize(prompt, expect_json=False)).strip()
        if not analysis:
            logger.warning("[memory.patterns] empty pattern analysis, using placeholder")
            return pattern_analysis_placeholder()
        return analysis

    async def integrate(self, pattern_analysis: str, current_context: UserContext) -> ExtractionResult:
        prompt = build_integration_prompt(pattern_analysis, current_context)
        raw = await self.router.summarize(prompt, expect_json=True)
        return parse_extraction_response(raw)

    async def should_update(self, user_id: str) -> bool:
        if self.is_running(user_id):
            return False
        since = await self.store.last_completed_update_at(user_id)
        count = await self.store.count_user_messages_since(user_id, since)
        return count >= self.min_new_messages

    async def run(self, user_id: str, trigger: str = "manual") -> UserContext:
        log_entry = await self.store.create_summarization_log(user_id, trigger)
        logger.info("[memory.update] user=%s log=%s trigger=%s status=started", user_id, log_entry.log_id, trigger)

        try:
            async with self._lock_for(user_id):
                updated = await self._update(user_id)
            await self.store.finalize_summarization_log(log_entry.log_id, LogStatus.COMPLETED)
        except Exception as exc:
            logger.error(
                "[memory.update] user=%s log=%s trigger=%s status=failed error=%s",
                user_id,
                log_entry.log_id,
                trigger,
                exc,
            )
            await self._record_failure(log_entry.log_id, exc)
            raise PipelineError(user_id, log_entry.log_id, trigger, exc) from exc

        logger.info("[memory.update] user=%s log=%s trigger=%s status=completed", user_id, log_entry.log_id, trigger)
        return updated

    async def _record_failure(self, log_id: int, exc: Exception) -> None:
        try:
            await self.store.finalize_summarization_log(log_id, LogStatus.FAILED, str(exc))
        except Exception:
            logger.exception("[memory.update] log=%s could not be marked failed", log_id)

    async def _update(self, user_id: str) -> UserContext:
        record = await self.store.get_user_context_record(user_id)
        transcript = await self.build_transcript(user_id)
        analysis = await self.analyze_patterns(transcript)
        extraction = await self.integrate(analysis, record.context)
        return await self._merge_and_save(user_id, record, extraction)

    async def _merge_and_save(
        self,
        user_id: str,
        record: StoredContext,
        extraction: ExtractionResult,
    ) -> UserContext:
        conflicts = 0
        while True:
            merged = merge_user_context(
                record.context,
                extraction,
                now=self._clock(),
                consistent_patterns_cap=self.consistent_patterns_cap,
            )
            try:
                version = await self.store.save_user_context(user_id, merged, expected_version=record.version)
            except ContextVersionConflict as exc:
                if conflicts >= self.save_conflict_retries:
                    raise
                conflicts += 1
                logger.warning(
                    "[memory.update] user=%s version conflict (%s), re-merging %s/%s",
                    user_id,
                    exc,
                    conflicts,
                    self.save_conflict_retries,
                )
                record = await self.store.get_user_context_record(user_id)
                continue
            logger.info("[memory.update] user=%s saved version=%s", user_id, version)
            return merged
