from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Set

from .memory.formatting import format_context_for_prompt
from .memory.pipeline import PipelineError


logger = logging.getLogger("companion_core.chat")


class CompanionConversation:
    """One chat turn: context-aware prompt, model reply, then a memory refresh when due."""

    def __init__(
        self,
        store: Any,
        router: Any,
        pipeline: Any,
        system_prompt: str,
        *,
        history_limit: int = 10,
        use_context: bool = True,
    ) -> None:
        self.store = store
        self.router = router
        self.pipeline = pipeline
        self.system_prompt = system_prompt.strip()
        self.history_limit = max(0, int(history_limit))
        self.use_context = use_context
        self._pending: Set[asyncio.Task[None]] = set()

    async def _system_message(self, user_id: str) -> str:
        if not self.use_context:
            return self.system_prompt
        record = await self.store.get_user_context_record(user_id)
        context = record.context if record.version > 0 else None
        return f"{self.system_prompt}\n\n{format_context_for_prompt(context)}"

    async def build_messages(self, user_id: str, text: str) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = [{"role": "system", "content": await self._system_message(user_id)}]
        if self.history_limit > 0:
            history = await self.store.get_recent_messages(user_id, self.history_limit)
            for item in history:
                messages.append({"role": str(item["role"]), "content": str(item["content"])})
        messages.append({"role": "user", "content": text})
        return messages

    async def reply(self, user_id: str, text: str, model_override: str | None = None) -> str:
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValueError("Message text cannot be empty")

        messages = await self.build_messages(user_id, cleaned)
        await self.store.save_message(user_id, "user", cleaned)
        answer = await self.router.converse(messages, model_override=model_override)
        await self.store.save_message(user_id, "assistant", answer)
        logger.info("[chat.turn] user=%s history=%s reply_chars=%s", user_id, len(messages) - 2, len(answer))

        if await self.pipeline.should_update(user_id):
            self._schedule_update(user_id)
        return answer

    def _schedule_update(self, user_id: str) -> None:
        task = asyncio.create_task(self._background_update(user_id), name=f"memory-update-{user_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _background_update(self, user_id: str) -> None:
        try:
            await self.pipeline.run(user_id, "message_count")
        except PipelineError as exc:
            logger.warning("[chat.memory] user=%s background update failed: %s", user_id, exc)
        except Exception:
            logger.exception("[chat.memory] user=%s background update could not start", user_id)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
