from __future__ import annotations

import json
from typing import TYPE_CHECKING

from .json_loader import load_prompt_json

if TYPE_CHECKING:
    from ..memory.context import UserContext


NOT_ESTABLISHED = "Not yet established"
NO_CONSISTENT_PATTERNS = "None identified yet"

_DEFAULTS = {
    "summarize_json_system_prompt": (
        "You are an AI assistant that specializes in analyzing conversations and extracting "
        "structured information. Respond ONLY with valid JSON according to the specified format."
    ),
    "summarize_text_system_prompt": (
        "You are an AI assistant skilled at concisely summarizing conversations based on "
        "provided transcripts and instructions."
    ),
    "pattern_analysis_prompt_template": (
        "Analyze recent interactions with the user to identify meaningful patterns:\n\n"
        "{transcript}\n\n"
        "INSTRUCTIONS:\n"
        "As an expert in understanding human communication and relationship development, "
        "analyze this conversation to identify:\n\n"
        "1. Any new insights about the user's personality or preferences\n"
        "2. How your interaction patterns with them are evolving\n"
        "3. Changes in their current journey, focus, or priorities\n"
        "4. Deepening understanding of their communication style\n\n"
        "Focus on meaningful patterns rather than surface-level facts. Look for:\n"
        "- Recurring themes in how they express themselves\n"
        "- Emotional patterns or shifts\n"
        "- How they approach problem-solving or decision-making\n"
        "- Changes in openness, trust, or vulnerability\n"
        "- Unique language patterns or expressions\n\n"
        "Do not restate literal facts from the transcript. Respond with a detailed analysis "
        "that goes beyond the obvious, focusing on the person behind the words."
    ),
    "pattern_analysis_empty_placeholder": "No notable patterns were identified in the recent interactions.",
    "integration_prompt_template": (
        "Based on our existing understanding of the user and new insights, create an updated "
        "natural understanding:\n\n"
        "PATTERN ANALYSIS:\n{pattern_analysis}\n\n"
        "CURRENT UNDERSTANDING:\n\n"
        "CORE UNDERSTANDING:\n"
        "Personality: {personality}\n"
        "Current Journey: {current_journey}\n"
        "Communication Style: {communication_style}\n\n"
        "RELATIONSHIP PATTERNS:\n"
        "Interaction Style: {interaction_style}\n"
        "Trust Development: {trust_development}\n"
        "Engagement Patterns: {engagement_patterns}\n\n"
        "CONSISTENT PATTERNS:\n{consistent_patterns}\n\n"
        "INSTRUCTIONS:\n"
        "Based on the pattern analysis and our existing understanding:\n"
        "1. How has our understanding deepened?\n"
        "2. What patterns are becoming clearer?\n"
        "3. How is our interaction evolving?\n"
        "4. What aspects of their journey are most relevant now?\n\n"
        "Create a natural, integrated understanding of the user as if you're describing a "
        "friend's evolution to another friend. Return a JSON object with the following structure:\n\n"
        "{schema}"
    ),
    "integration_schema_object": {
        "core_understanding": {
            "personality": "Natural description of user's personality traits, values, and characteristics",
            "current_journey": "What they're focused on, working through, or pursuing currently",
            "communication_style": "How they tend to express themselves and communicate",
        },
        "relationship_patterns": {
            "interaction_style": "How you and the user work together and interact",
            "trust_development": "How rapport and trust have developed between you",
            "engagement_patterns": "What topics or approaches drive meaningful engagement",
        },
        "evolving_insights": {
            "recent_observations": [
                "New pattern or insight observed in this conversation",
                "Another new observation if relevant",
            ],
            "consistent_patterns": [
                "Pattern that remains consistent with previous understanding",
                "Another consistent trait or preference",
            ],
            "changing_patterns": [
                "How the user seems to be evolving or changing",
                "Another area of evolution if relevant",
            ],
        },
    },
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("memory.json", _DEFAULTS)


def _cfg_str(key: str) -> str:
    return str(_cfg()[key])


def build_summarize_system_prompt(expect_json: bool) -> str:
    if expect_json:
        return _cfg_str("summarize_json_system_prompt")
    return _cfg_str("summarize_text_system_prompt")


def pattern_analysis_placeholder() -> str:
    return _cfg_str("pattern_analysis_empty_placeholder")


def build_pattern_analysis_prompt(transcript: str) -> str:
    return _cfg_str("pattern_analysis_prompt_template").format(transcript=transcript)


def _or_placeholder(value: str) -> str:
    return value or NOT_ESTABLISHED


def build_integration_prompt(pattern_analysis: str, context: "UserContext") -> str:
    schema = _cfg()["integration_schema_object"]

    core = context.core_understanding
    relationship = context.relationship_patterns
    consistent = context.evolving_insights.consistent_patterns
    consistent_lines = "\n".join(f"- {item}" for item in consistent) if consistent else NO_CONSISTENT_PATTERNS

    return _cfg_str("integration_prompt_template").format(
        pattern_analysis=pattern_analysis,
        personality=_or_placeholder(core.personality),
        current_journey=_or_placeholder(core.current_journey),
        communication_style=_or_placeholder(core.communication_style),
        interaction_style=_or_placeholder(relationship.interaction_style),
        trust_development=_or_placeholder(relationship.trust_development),
        engagement_patterns=_or_placeholder(relationship.engagement_patterns),
        consistent_patterns=consistent_lines,
        schema=json.dumps(schema, ensure_ascii=False, indent=2),
    )
