from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Sequence

from .config import Settings
from .conversation import CompanionConversation
from .memory.factory import build_context_store
from .memory.formatting import format_context_for_prompt
from .memory.pipeline import MemoryUpdatePipeline, PipelineError
from .services.router import LLMRouter, build_router

logger = logging.getLogger("companion_core")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    router: LLMRouter
    store: Any
    pipeline: MemoryUpdatePipeline
    conversation: CompanionConversation


def build_pipeline(settings: Settings, store: Any, router: LLMRouter) -> MemoryUpdatePipeline:
    return MemoryUpdatePipeline(
        store,
        router,
        transcript_messages=settings.memory_transcript_messages,
        consistent_patterns_cap=settings.memory_consistent_patterns_cap,
        min_new_messages=settings.memory_update_min_new_messages,
        save_conflict_retries=settings.memory_save_conflict_retries,
    )


def build_runtime(settings: Settings) -> Runtime:
    router = build_router(settings)
    store = build_context_store(settings)
    pipeline = build_pipeline(settings, store, router)
    conversation = CompanionConversation(
        store,
        router,
        pipeline,
        settings.system_prompt,
        history_limit=settings.chat_history_messages,
        use_context=settings.chat_use_context,
    )
    return Runtime(settings=settings, router=router, store=store, pipeline=pipeline, conversation=conversation)


async def _run_shutdown_step(label: str, coro: object, *, timeout: float) -> None:
    try:
        await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
    except asyncio.TimeoutError:
        logger.warning("Shutdown step timed out: %s", label)
    except Exception as exc:
        logger.warning("Shutdown step failed: %s (%s)", label, exc)


async def _cmd_update(runtime: Runtime, args: argparse.Namespace) -> int:
    try:
        context = await runtime.pipeline.run(args.user_id, args.trigger)
    except PipelineError as exc:
        print(f"Update failed (log {exc.log_id}): {exc}", file=sys.stderr)
        return 1
    print(json.dumps(context.to_payload(), ensure_ascii=False, indent=2))
    return 0


async def _cmd_show(runtime: Runtime, args: argparse.Namespace) -> int:
    record = await runtime.store.get_user_context_record(args.user_id)
    if args.json:
        payload = record.context.to_payload() if record.version > 0 else None
        print(json.dumps({"version": record.version, "context": payload}, ensure_ascii=False, indent=2))
    else:
        print(format_context_for_prompt(record.context if record.version > 0 else None))
    return 0


async def _cmd_logs(runtime: Runtime, args: argparse.Namespace) -> int:
    entries = await runtime.store.list_summarization_logs(args.user_id, args.limit)
    if not entries:
        print("No summarization logs.")
        return 0
    for entry in entries:
        details = f" | {entry.details}" if entry.details else ""
        print(
            f"#{entry.log_id} {entry.created_at} user={entry.user_id} "
            f"trigger={entry.trigger} status={entry.status.value}{details}"
        )
    return 0


async def _cmd_chat(runtime: Runtime, args: argparse.Namespace) -> int:
    answer = await runtime.conversation.reply(args.user_id, args.message, model_override=args.model)
    print(answer)
    await runtime.conversation.drain()
    return 0


_COMMANDS = {
    "update": _cmd_update,
    "show": _cmd_show,
    "logs": _cmd_logs,
    "chat": _cmd_chat,
}


async def _run(settings: Settings, args: argparse.Namespace) -> int:
    runtime = build_runtime(settings)
    await runtime.store.init()
    await runtime.router.start()
    try:
        return await _COMMANDS[args.command](runtime, args)
    finally:
        await _run_shutdown_step("conversation.drain", runtime.conversation.drain(), timeout=60.0)
        await _run_shutdown_step("router.close", runtime.router.close(), timeout=6.0)
        await _run_shutdown_step("store.close", runtime.store.close(), timeout=6.0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="companion-core", description="Companion memory and model dispatch tools.")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    update = sub.add_parser("update", help="run the memory update pipeline for a user")
    update.add_argument("--user-id", required=True)
    update.add_argument("--trigger", default="manual")

    show = sub.add_parser("show", help="print the stored context of a user")
    show.add_argument("--user-id", required=True)
    show.add_argument("--json", action="store_true", help="print the raw payload instead of the prompt block")

    logs = sub.add_parser("logs", help="list summarization log entries, newest first")
    logs.add_argument("--user-id", default=None)
    logs.add_argument("--limit", type=int, default=50)

    chat = sub.add_parser("chat", help="send one message and print the reply")
    chat.add_argument("--user-id", required=True)
    chat.add_argument("--message", required=True)
    chat.add_argument("--model", default=None)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    settings = Settings.from_env()
    settings.validate()
    try:
        return asyncio.run(_run(settings, args))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
        return 130
