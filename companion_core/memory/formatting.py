from __future__ import annotations

import logging
from typing import Any, List, Mapping, Sequence

from .context import UserContext


logger = logging.getLogger("companion_core.memory")

NO_CONTEXT_NOTE = "SYSTEM_NOTE: No user context available yet. Start a fresh conversation."
MIGRATING_CONTEXT_NOTE = "SYSTEM_NOTE: User context is currently being migrated to a new format. Proceed normally."
EMPTY_CONTEXT_NOTE = "SYSTEM_NOTE: User context is currently empty."
CONTEXT_ERROR_NOTE = "SYSTEM_ERROR: Error retrieving user context. Proceed with caution."

CONTEXT_START = "USER_CONTEXT_START"
CONTEXT_END = "USER_CONTEXT_END"


def _join_items(items: Sequence[str]) -> str:
    lowered = [item.lower() for item in items]
    if len(lowered) <= 1:
        return "".join(lowered)
    return ", ".join(lowered[:-1]) + ", and " + lowered[-1]


def _core_section(context: UserContext) -> str:
    core = context.core_understanding
    text = ""
    if core.personality:
        text += f"{core.personality}. "
    if core.current_journey:
        text += f"They're currently focused on {core.current_journey}. "
    if core.communication_style:
        text += f"Their conversations tend to be {core.communication_style}."
    return "Core Understanding:\n" + text + "\n\n"


def _relationship_section(context: UserContext) -> str:
    relationship = context.relationship_patterns
    text = ""
    if relationship.interaction_style:
        text += f"Our interactions {relationship.interaction_style}. "
    if relationship.trust_development:
        text += f"We've developed a rapport that {relationship.trust_development}. "
    if relationship.engagement_patterns:
        text += f"They engage most deeply when {relationship.engagement_patterns}."
    return "Relationship Dynamic:\n" + (text or "Our relationship is still developing.") + "\n\n"


def _insights_section(context: UserContext) -> str:
    insights = context.evolving_insights
    if not (insights.recent_observations or insights.consistent_patterns or insights.changing_patterns):
        return ""

    parts: List[str] = ["Recent Insights:\n"]
    if insights.recent_observations:
        parts.append(f"I've recently noticed {_join_items(insights.recent_observations)}. ")
    if insights.consistent_patterns:
        sample = _join_items(insights.consistent_patterns[:3])
        if len(insights.consistent_patterns) > 3:
            sample += ", among other patterns"
        parts.append(f"They consistently {sample}. ")
    if insights.changing_patterns:
        parts.append(f"Their approach seems to be evolving toward {_join_items(insights.changing_patterns)}.")
    parts.append("\n\n")
    return "".join(parts)


def format_context_for_prompt(context: UserContext | Mapping[str, Any] | None) -> str:
    """Render a stored context as the narrative block injected into the chat system prompt.

    Always returns a string: a SYSTEM_NOTE sentinel when there is nothing to say and a
    SYSTEM_ERROR sentinel if rendering fails.
    """
    if context is None:
        return NO_CONTEXT_NOTE

    try:
        if isinstance(context, Mapping):
            if "core_understanding" not in context:
                logger.info("[memory.format] legacy context shape, migration pending")
                return MIGRATING_CONTEXT_NOTE
            context = UserContext.from_payload(context)

        if not context.has_content():
            return EMPTY_CONTEXT_NOTE

        rendered = (
            f"{CONTEXT_START}\n\n"
            + _core_section(context)
            + _relationship_section(context)
            + _insights_section(context)
            + f"{CONTEXT_END}\n"
        )
    except Exception:
        logger.exception("[memory.format] failed to render user context")
        return CONTEXT_ERROR_NOTE

    logger.debug("[memory.format] rendered context chars=%s words=%s", len(rendered), len(rendered.split()))
    return rendered
