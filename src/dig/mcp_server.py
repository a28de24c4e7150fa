"""DIG MCP server — exposes the event store to agents over MCP."""

import json

from mcp.server.fastmcp import FastMCP

from dig.codec import event_from_dict
from dig.config import Settings
from dig.correlation import CancelToken, CanonicalAttemptPolicy, CorrelationEngine
from dig.formatting import (
    format_compact,
    format_json,
    format_matches_compact,
    format_matches_json,
    format_psr_compact,
    format_psr_json,
)
from dig.matcher import LearningMatcher
from dig.query import QueryEngine, parse_window
from dig.store import EventStore

mcp = FastMCP("dig", instructions=(
    "DIG records decision traces: sessions, AI interactions, changes, "
    "rollouts, outcomes and learnings. Append events as they happen, "
    "query a change to see its trace, and call 'match_learnings' before "
    "shipping a change to surface what past outcomes taught."
))


def _get_store() -> EventStore:
    """Get EventStore for the configured DIG_HOME."""
    settings = Settings.from_env()
    if not settings.db_path.exists():
        raise FileNotFoundError(
            f"DIG not initialized in {settings.home}. Run 'dig init' first."
        )
    return EventStore(settings.db_path)


def _render(events, format: str) -> str:
    return format_json(events) if format == "json" else format_compact(events)


@mcp.tool()
def append_event(event: dict, idempotent: bool = False, format: str = "compact") -> str:
    """Append one event to the store.

    The event is a JSON object with a "type" (session, ai_interaction,
    change, rollout, outcome, learning, or a namespaced custom type such
    as "x-acme.review") and that type's fields. Leave "id" and
    "created_at" out to have them assigned.

    Args:
        event: The event record
        idempotent: Treat a duplicate id with identical content as already stored (for retries)
        format: Output format: "compact" or "json"
    """
    store = _get_store()
    try:
        candidate = event_from_dict(event)
        stored = store.append_idempotent(candidate) if idempotent else store.append(candidate)
        return _render([stored], format)
    finally:
        store.close()


@mcp.tool()
def get_event(event_id: str, format: str = "json") -> str:
    """Fetch one event by id.

    Args:
        event_id: Type-prefixed id, e.g. "change_abc123"
        format: Output format: "compact" or "json"
    """
    store = _get_store()
    try:
        return _render([store.get(event_id)], format)
    finally:
        store.close()


@mcp.tool()
def query_change(change_id: str, format: str = "compact") -> str:
    """All events keyed to a change (the change, its rollouts and outcomes), oldest first.

    Args:
        change_id: The change id
        format: Output format: "compact" or "json"
    """
    store = _get_store()
    try:
        return _render(QueryEngine(store).by_change(change_id), format)
    finally:
        store.close()


@mcp.tool()
def list_events(
    event_type: str,
    tags: dict[str, str] | None = None,
    since: str | None = None,
    until: str | None = None,
    change_id: str | None = None,
    limit: int = 20,
    format: str = "compact",
) -> str:
    """List events of one type, oldest first.

    Args:
        event_type: session, ai_interaction, change, rollout, outcome, learning, or a custom type
        tags: Exact tag filters, e.g. {"domain": "payments"}
        since: Time filter: "24h", "7d", "2w", or ISO date
        until: Upper time bound, same forms as since
        change_id: Only events keyed to this change
        limit: Maximum results (default 20)
        format: Output format: "compact" or "json"
    """
    store = _get_store()
    try:
        results = list(QueryEngine(store).by_type(
            event_type, tags=tags, since=since, until=until, change_id=change_id, limit=limit,
        ))
        return _render(results, format)
    finally:
        store.close()


@mcp.tool()
def compute_psr(
    group_by: list[str],
    min_sample_size: int | None = None,
    since: str | None = None,
    until: str | None = None,
    format: str = "json",
) -> str:
    """Production Survival Rate of deployed changes, per group.

    Only each change's canonical production attempt counts. Groups with
    fewer labelled outcomes than min_sample_size report
    "insufficient_sample" instead of a rate.

    Args:
        group_by: Grouping keys: model_id, change_type, risk_level, blast_radius,
            strategy, environment, or any change tag name
        min_sample_size: Minimum labelled outcomes per group (default DIG_MIN_SAMPLE)
        since: Only outcomes observed since: "30d" or ISO date
        until: Only outcomes observed until
        format: Output format: "compact" or "json"
    """
    settings = Settings.from_env()
    store = _get_store()
    try:
        engine = CorrelationEngine(store, CanonicalAttemptPolicy(settings.production_environment))
        report = engine.compute_psr(
            group_by,
            min_sample_size=min_sample_size if min_sample_size is not None else settings.min_sample_size,
            window=parse_window(since, until),
            cancel=CancelToken(settings.aggregation_timeout),
        )
        return format_psr_json(report) if format == "json" else format_psr_compact(report)
    finally:
        store.close()


@mcp.tool()
def match_learnings(
    change_id: str | None = None,
    tags: dict | None = None,
    classification: dict | None = None,
    format: str = "compact",
) -> str:
    """Learnings whose pattern conditions fit a change. Advisory only.

    Pass a stored change_id, or describe a change not yet recorded with
    tags and classification (change_type, risk_level, blast_radius).

    Args:
        change_id: A stored change to match
        tags: Tags of an unrecorded change
        classification: Classification of an unrecorded change
        format: Output format: "compact" or "json"
    """
    store = _get_store()
    try:
        matcher = LearningMatcher(store)
        if change_id:
            matches = matcher.match_change_id(change_id)
        else:
            matches = matcher.match({"tags": tags or {}, "classification": classification or {}})
        return format_matches_json(matches) if format == "json" else format_matches_compact(matches)
    finally:
        store.close()


@mcp.tool()
def status() -> str:
    """Get DIG status: event counts by type, database size, last activity.

    Returns store statistics as JSON.
    """
    settings = Settings.from_env()
    store = _get_store()
    try:
        return json.dumps({
            "home": str(settings.home),
            "total_events": store.count(),
            "events_by_type": store.count_by_type(),
            "latest_seq": store.latest_seq(),
            "last_activity": store.last_activity(),
            "initialized_at": store.get_meta("initialized_at") or "unknown",
            "db_size_bytes": settings.db_path.stat().st_size,
        }, indent=2)
    finally:
        store.close()


def main():
    """Entry point for dig-mcp console script."""
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
