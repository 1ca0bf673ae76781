from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping

STRING_FIELDS: Dict[str, tuple[str, ...]] = {
    "core_understanding": ("personality", "current_journey", "communication_style"),
    "relationship_patterns": ("interaction_style", "trust_development", "engagement_patterns"),
}
LIST_FIELDS: Dict[str, tuple[str, ...]] = {
    "evolving_insights": ("recent_observations", "consistent_patterns", "changing_patterns"),
}


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, Mapping) else {}


@dataclass(slots=True)
class CoreUnderstanding:
    personality: str = ""
    current_journey: str = ""
    communication_style: str = ""


@dataclass(slots=True)
class RelationshipPatterns:
    interaction_style: str = ""
    trust_development: str = ""
    engagement_patterns: str = ""


@dataclass(slots=True)
class EvolvingInsights:
    recent_observations: List[str] = field(default_factory=list)
    consistent_patterns: List[str] = field(default_factory=list)
    changing_patterns: List[str] = field(default_factory=list)


def is_legacy_payload(payload: Any) -> bool:
    """Flat ``{preferences, facts}`` summaries written before the structured shape."""
    if not isinstance(payload, Mapping):
        return False
    return "core_understanding" not in payload and ("preferences" in payload or "facts" in payload)


def migrate_legacy_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "evolving_insights": {
            "recent_observations": _as_str_list(payload.get("preferences")),
            "consistent_patterns": _as_str_list(payload.get("facts")),
            "changing_patterns": [],
        },
        "last_update": _as_str(payload.get("last_update")),
    }


@dataclass(slots=True)
class UserContext:
    """Structured long-term understanding of one user."""

    core_understanding: CoreUnderstanding = field(default_factory=CoreUnderstanding)
    relationship_patterns: RelationshipPatterns = field(default_factory=RelationshipPatterns)
    evolving_insights: EvolvingInsights = field(default_factory=EvolvingInsights)
    last_update: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "UserContext":
        """Build a fully populated context from a persisted, possibly partial payload.

        Missing keys and values of the wrong type fall back to the empty default. Legacy
        flat payloads are migrated first.
        """
        if not isinstance(payload, Mapping):
            return cls()
        if is_legacy_payload(payload):
            payload = migrate_legacy_payload(payload)

        core = _section(payload, "core_understanding")
        relationship = _section(payload, "relationship_patterns")
        insights = _section(payload, "evolving_insights")
        return cls(
            core_understanding=CoreUnderstanding(
                personality=_as_str(core.get("personality")),
                current_journey=_as_str(core.get("current_journey")),
                communication_style=_as_str(core.get("communication_style")),
            ),
            relationship_patterns=RelationshipPatterns(
                interaction_style=_as_str(relationship.get("interaction_style")),
                trust_development=_as_str(relationship.get("trust_development")),
                engagement_patterns=_as_str(relationship.get("engagement_patterns")),
            ),
            evolving_insights=EvolvingInsights(
                recent_observations=_as_str_list(insights.get("recent_observations")),
                consistent_patterns=_as_str_list(insights.get("consistent_patterns")),
                changing_patterns=_as_str_list(insights.get("changing_patterns")),
            ),
            last_update=_as_str(payload.get("last_update")),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "core_understanding": {
                "personality": self.core_understanding.personality,
                "current_journey": self.core_understanding.current_journey,
                "communication_style": self.core_understanding.communication_style,
            },
            "relationship_patterns": {
                "interaction_style": self.relationship_patterns.interaction_style,
                "trust_development": self.relationship_patterns.trust_development,
                "engagement_patterns": self.relationship_patterns.engagement_patterns,
            },
            "evolving_insights": {
                "recent_observations": list(self.evolving_insights.recent_observations),
                "consistent_patterns": list(self.evolving_insights.consistent_patterns),
                "changing_patterns": list(self.evolving_insights.changing_patterns),
            },
            "last_update": self.last_update,
        }

    def copy(self) -> "UserContext":
        return copy.deepcopy(self)

    def has_content(self) -> bool:
        payload = self.to_payload()
        for group, keys in STRING_FIELDS.items():
            if any(payload[group][key].strip() for key in keys):
                return True
        for group, keys in LIST_FIELDS.items():
            if any(payload[group][key] for key in keys):
                return True
        return False


@dataclass(slots=True)
class ExtractionResult:
    """Structured output of the integration call, before it is merged."""

    core_understanding: CoreUnderstanding = field(default_factory=CoreUnderstanding)
    relationship_patterns: RelationshipPatterns = field(default_factory=RelationshipPatterns)
    evolving_insights: EvolvingInsights = field(default_factory=EvolvingInsights)


class LogStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class SummarizationLogEntry:
    log_id: int
    user_id: str
    status: LogStatus
    trigger: str
    details: str | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass(slots=True)
class StoredContext:
    user_id: str
    context: UserContext
    version: int = 0
    updated_at: str = ""
