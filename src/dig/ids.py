"""Type-prefixed event identifiers."""

import re
import secrets

from dig.models import EventType

PREFIXES: dict[EventType, str] = {
    EventType.SESSION: "session_",
    EventType.AI_INTERACTION: "ai_",
    EventType.CHANGE: "change_",
    EventType.ROLLOUT: "rollout_",
    EventType.OUTCOME: "outcome_",
    EventType.LEARNING: "learning_",
}
CUSTOM_PREFIX = "evt_"

# token_urlsafe(12) yields 16 characters
SUFFIX_BYTES = 12

_SUFFIX_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def prefix_for(event_type: EventType | str) -> str:
    """Return the id prefix for a core type, or the custom prefix otherwise."""
    try:
        return PREFIXES[EventType(event_type)]
    except ValueError:
        return CUSTOM_PREFIX


def new_id(event_type: EventType | str) -> str:
    return f"{prefix_for(event_type)}{secrets.token_urlsafe(SUFFIX_BYTES)}"


def has_valid_prefix(event_type: EventType | str, event_id: str) -> bool:
    prefix = prefix_for(event_type)
    if not isinstance(event_id, str) or not event_id.startswith(prefix):
        return False
    return bool(_SUFFIX_RE.match(event_id[len(prefix):]))


def type_for_id(event_id: str) -> EventType | None:
    """Infer the core event type from an id prefix."""
    for event_type, prefix in PREFIXES.items():
        if event_id.startswith(prefix):
            return event_type
    return None
