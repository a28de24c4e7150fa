"""Learning matcher — surfaces stored learnings that apply to a change.

Only `pattern.conditions` decides a match. `recommendation.trigger_conditions`
are advisory text for consumers and are returned as hints, never evaluated.
Nothing here blocks or gates a change.
"""

from collections.abc import Mapping
from typing import Any

from dig.errors import ValidationError
from dig.models import Change, EventFilter, EventType, Learning, LearningMatch
from dig.store import EventStore, utc_key

_FIELD_PREFIXES = ("tags.", "classification.", "tag:")


def _norm(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def change_attributes(change: Change | Mapping[str, Any]) -> dict[str, Any]:
    """Flatten a change's tags and classification into matchable attributes.

    Accepts a Change or a mapping with optional "tags" and "classification"
    keys, so a change can be checked before it is stored.
    """
    if isinstance(change, Change):
        tags = dict(change.tags)
        c = change.classification
        classification = {
            "change_type": c.change_type,
            "risk_level": c.risk_level,
            "risk_signals": c.risk_signals,
            "blast_radius": c.blast_radius,
        }
        models = change.authorship.ai_model_ids if change.authorship else []
    else:
        tags = dict(change.get("tags") or {})
        classification = dict(change.get("classification") or {})
        models = list(change.get("ai_model_ids") or [])

    attributes: dict[str, Any] = dict(tags)
    for key, value in classification.items():
        if value is not None and value != []:
            attributes[key] = value
    if models:
        attributes["ai_model_ids"] = models
    return attributes


def _attribute_key(condition_key: str) -> str:
    for prefix in _FIELD_PREFIXES:
        if condition_key.startswith(prefix):
            return condition_key[len(prefix):]
    return condition_key


def _value_matches(expected: Any, actual: Any) -> bool:
    """Scalar actual must equal; list actual must contain."""
    if isinstance(actual, list):
        return any(_norm(a) == expected for a in actual)
    return _norm(actual) == expected


def conditions_match(conditions: Mapping[str, Any], attributes: Mapping[str, Any]) -> bool:
    """True when every condition holds. A list condition is any-of. Empty conditions never match."""
    if not conditions:
        return False
    for key, expected in conditions.items():
        actual = attributes.get(_attribute_key(key))
        if actual is None:
            return False
        options = expected if isinstance(expected, list) else [expected]
        if not any(_value_matches(_norm(option), actual) for option in options):
            return False
    return True


class LearningMatcher:
    """Read-only lookup of learnings whose conditions fit a change."""

    def __init__(self, store: EventStore):
        self.store = store

    def active_learnings(self) -> list[Learning]:
        """Stored learnings, minus those a newer learning supersedes."""
        learnings = list(self.store.query_by_type(EventType.LEARNING, EventFilter()))
        superseded = {lr.supersedes for lr in learnings if lr.supersedes}
        return [lr for lr in learnings if lr.id not in superseded]

    def match(self, change: Change | Mapping[str, Any]) -> list[LearningMatch]:
        """Matching learnings, highest confidence first (newest first on ties)."""
        attributes = change_attributes(change)
        matched = [lr for lr in self.active_learnings()
                   if conditions_match(lr.pattern.conditions, attributes)]
        matched.sort(key=lambda lr: utc_key(lr.created_at), reverse=True)
        matched.sort(key=lambda lr: lr.pattern.confidence, reverse=True)

        results = []
        for learning in matched:
            rec = learning.recommendation
            results.append(LearningMatch(
                learning_id=learning.id,
                pattern_name=learning.pattern.name,
                confidence=learning.pattern.confidence,
                created_at=learning.created_at,
                matched_conditions=dict(learning.pattern.conditions),
                severity=rec.severity if rec else None,
                action=rec.action if rec else None,
                message=rec.message if rec else None,
                hints=list(rec.trigger_conditions) if rec else [],
            ))
        return results

    def match_change_id(self, change_id: str) -> list[LearningMatch]:
        change = self.store.get(change_id)
        if not isinstance(change, Change):
            raise ValidationError("change_id", f"{change_id} is a {change.event_type}, not a change")
        return self.match(change)
