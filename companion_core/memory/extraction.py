from __future__ import annotations

import json
import logging
from typing import Any, List, Mapping

from ..services.base import strip_json_fences
from .context import CoreUnderstanding, EvolvingInsights, ExtractionResult, RelationshipPatterns


logger = logging.getLogger("companion_core.memory")


class ExtractionParseError(ValueError):
    """Integration output that is not a JSON object."""


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _items(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    cleaned: List[str] = []
    for item in value:
        if isinstance(item, str) and item.strip():
            cleaned.append(item.strip())
    return cleaned


def _group(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, Mapping) else {}


def extraction_from_mapping(payload: Mapping[str, Any]) -> ExtractionResult:
    core = _group(payload, "core_understanding")
    relationship = _group(payload, "relationship_patterns")
    insights = _group(payload, "evolving_insights")
    return ExtractionResult(
        core_understanding=CoreUnderstanding(
            personality=_text(core.get("personality")),
            current_journey=_text(core.get("current_journey")),
            communication_style=_text(core.get("communication_style")),
        ),
        relationship_patterns=RelationshipPatterns(
            interaction_style=_text(relationship.get("interaction_style")),
            trust_development=_text(relationship.get("trust_development")),
            engagement_patterns=_text(relationship.get("engagement_patterns")),
        ),
        evolving_insights=EvolvingInsights(
            recent_observations=_items(insights.get("recent_observations")),
            consistent_patterns=_items(insights.get("consistent_patterns")),
            changing_patterns=_items(insights.get("changing_patterns")),
        ),
    )


def parse_extraction_payload(raw_text: str) -> ExtractionResult:
    cleaned = strip_json_fences(raw_text)
    if not cleaned:
        raise ExtractionParseError("Integration response is empty")
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ExtractionParseError(f"Integration response is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ExtractionParseError("Integration response must be a JSON object")
    return extraction_from_mapping(payload)


def parse_extraction_response(raw_text: str) -> ExtractionResult:
    """Parse integration output, degrading to an empty extraction on malformed text."""
    try:
        return parse_extraction_payload(raw_text)
    except ExtractionParseError as exc:
        logger.warning("[memory.extract] unparseable integration response (%s chars): %s", len(raw_text or ""), exc)
        return ExtractionResult()
