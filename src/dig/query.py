"""Query engine with relative time parsing and filter normalization."""

import re
from datetime import datetime, timedelta, timezone

from dig.codec import event_class_for
from dig.errors import ValidationError
from dig.models import BaseEvent, EventFilter, EventType, TimeWindow
from dig.store import EventQuery, EventStore

RELATIVE_TIME_PATTERN = re.compile(r"^(\d+)(m|h|d|w)$")

TIME_MULTIPLIERS = {
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_since(since: str) -> str:
    """Convert a relative or absolute time string to an ISO timestamp.

    Accepts:
        "30m", "24h", "7d", "2w" — relative to now
        "2026-02-20" — date (assumes start of day UTC)
        "2026-02-20T14:00:00" — ISO timestamp (assumes UTC)
        "2026-02-20T14:00:00+02:00" — passed through
    """
    match = RELATIVE_TIME_PATTERN.match(since.strip())
    if match:
        amount = int(match.group(1))
        unit = match.group(2)
        dt = datetime.now(timezone.utc) - (TIME_MULTIPLIERS[unit] * amount)
        return dt.isoformat()

    try:
        dt = datetime.fromisoformat(since.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("since", f"unrecognised time: {since!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def parse_window(since: str | None = None, until: str | None = None) -> TimeWindow | None:
    if not since and not until:
        return None
    return TimeWindow(
        since=parse_since(since) if since else None,
        until=parse_since(until) if until else None,
    )


def parse_event_type(type_str: str) -> EventType | str:
    """Parse a type name. Core kinds become EventType; namespaced custom types pass through."""
    name = type_str.strip()
    lowered = name.lower()
    if lowered in {t.value for t in EventType}:
        return EventType(lowered)
    event_class_for(name)  # rejects un-namespaced unknown types
    return name


def parse_group_by(group_by: str | list[str] | tuple[str, ...]) -> list[str]:
    """Split "model_id,domain" into dimension names, dropping blanks and duplicates."""
    parts = group_by.split(",") if isinstance(group_by, str) else list(group_by)
    names = [p.strip() for p in parts if p and p.strip()]
    if not names:
        raise ValidationError("group_by", "at least one grouping key is required")
    return list(dict.fromkeys(names))


def parse_tag_filters(pairs: list[str] | tuple[str, ...]) -> dict[str, str]:
    """Parse ["domain=ml", "team=core"] into a tag filter mapping."""
    tags = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValidationError("tag", f"expected key=value, got {pair!r}")
        tags[key.strip()] = value.strip()
    return tags


class QueryEngine:
    """Normalizes query parameters and delegates to EventStore."""

    def __init__(self, store: EventStore):
        self.store = store

    def by_type(self, event_type: str,
                tags: dict[str, str] | None = None,
                since: str | None = None,
                until: str | None = None,
                change_id: str | None = None,
                limit: int | None = 50) -> EventQuery:
        filters = EventFilter(
            tags=tags or {},
            window=parse_window(since, until),
            change_id=change_id,
            limit=limit,
        )
        return self.store.query_by_type(parse_event_type(event_type), filters)

    def by_change(self, change_id: str) -> list[BaseEvent]:
        return self.store.query_by_change(change_id)
