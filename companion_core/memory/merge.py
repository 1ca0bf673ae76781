from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List

from .context import STRING_FIELDS, ExtractionResult, UserContext


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _dedupe_keep_first(items: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        ordered.append(item)
    return ordered


def merge_user_context(
    existing: UserContext,
    extracted: ExtractionResult,
    *,
    now: str | None = None,
    consistent_patterns_cap: int = 20,
) -> UserContext:
    """Fold one extraction into the stored context and return a new context.

    String fields are replaced only by non-empty values. Recent observations and changing
    patterns are replaced wholesale, even by an empty list. Consistent patterns accumulate,
    exact duplicates dropped in first-seen order, and only the newest ``cap`` entries stay.
    """
    merged = existing.copy()

    for group, keys in STRING_FIELDS.items():
        target = getattr(merged, group)
        source = getattr(extracted, group)
        for key in keys:
            value = getattr(source, key)
            if value:
                setattr(target, key, value)

    insights = merged.evolving_insights
    incoming = extracted.evolving_insights
    insights.recent_observations = list(incoming.recent_observations)
    insights.changing_patterns = list(incoming.changing_patterns)

    if incoming.consistent_patterns:
        combined = _dedupe_keep_first([*insights.consistent_patterns, *incoming.consistent_patterns])
        cap = max(1, int(consistent_patterns_cap))
        insights.consistent_patterns = combined[-cap:]

    merged.last_update = now or utc_now_iso()
    return merged

