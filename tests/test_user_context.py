from __future__ import annotations

import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_core.memory.context import UserContext, is_legacy_payload  # noqa: E402


def test_from_payload_none_is_fully_populated_and_empty() -> None:
    context = UserContext.from_payload(None)

    assert context.to_payload() == {
        "core_understanding": {"personality": "", "current_journey": "", "communication_style": ""},
        "relationship_patterns": {"interaction_style": "", "trust_development": "", "engagement_patterns": ""},
        "evolving_insights": {"recent_observations": [], "consistent_patterns": [], "changing_patterns": []},
        "last_update": "",
    }
    assert context.has_content() is False


def test_from_payload_fills_missing_keys_and_coerces_wrong_types() -> None:
    context = UserContext.from_payload(
        {
            "core_understanding": {"personality": "warm", "current_journey": 7},
            "relationship_patterns": "not-a-dict",
            "evolving_insights": {"consistent_patterns": "oops", "recent_observations": ["a", 3, "b"]},
            "last_update": "2026-01-01T00:00:00Z",
        }
    )

    assert context.core_understanding.personality == "warm"
    assert context.core_understanding.current_journey == ""
    assert context.relationship_patterns.interaction_style == ""
    assert context.evolving_insights.consistent_patterns == []
    assert context.evolving_insights.recent_observations == ["a", "b"]
    assert context.last_update == "2026-01-01T00:00:00Z"


def test_legacy_payload_is_detected_and_migrated() -> None:
    legacy = {"preferences": ["likes tea"], "facts": ["lives in Kyiv"]}

    assert is_legacy_payload(legacy) is True
    context = UserContext.from_payload(legacy)

    assert context.evolving_insights.recent_observations == ["likes tea"]
    assert context.evolving_insights.consistent_patterns == ["lives in Kyiv"]
    assert context.evolving_insights.changing_patterns == []
    assert context.core_understanding.personality == ""


def test_structured_payload_is_not_legacy_even_with_extra_keys() -> None:
    assert is_legacy_payload({"core_understanding": {}, "facts": ["x"]}) is False
    assert is_legacy_payload({}) is False
    assert is_legacy_payload(None) is False


def test_to_payload_round_trip_preserves_values() -> None:
    original = UserContext.from_payload(
        {
            "core_understanding": {"personality": "curious"},
            "evolving_insights": {"changing_patterns": ["more open"]},
        }
    )
    restored = UserContext.from_payload(original.to_payload())

    assert restored == original
    assert restored.has_content() is True
