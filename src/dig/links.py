"""Reference extraction and dangling-reference detection."""

import logging
import warnings
from collections.abc import Iterable
from typing import TYPE_CHECKING

from dig.errors import DanglingReferenceWarning
from dig.models import (
    SUPERSEDES_KEY,
    AIInteraction,
    BaseEvent,
    Change,
    CustomEvent,
    Learning,
    Outcome,
    Reference,
    Rollout,
)

if TYPE_CHECKING:
    from dig.store import EventStore

logger = logging.getLogger(__name__)


def references(event: BaseEvent) -> list[Reference]:
    """Every outbound reference of an event, single- and multi-valued."""
    refs: list[tuple[str, str | None]] = []
    if isinstance(event, AIInteraction):
        refs.append(("session_id", event.session_id))
    elif isinstance(event, Change):
        # Change points backward at work that predates it
        refs.extend(("session_ids", sid) for sid in event.session_ids)
        refs.extend(("ai_interaction_ids", aid) for aid in event.ai_interaction_ids)
    elif isinstance(event, Rollout):
        refs.append(("change_id", event.change_id))
    elif isinstance(event, Outcome):
        refs.append(("change_id", event.change_id))
        refs.append(("rollout_id", event.rollout_id))
        for incident in event.incidents:
            refs.extend(("incidents.change_ids", a.change_id) for a in incident.change_ids)
    elif isinstance(event, Learning):
        refs.extend(("derived_from.outcome_ids", oid) for oid in event.derived_from.outcome_ids)
        refs.extend(("derived_from.change_ids", cid) for cid in event.derived_from.change_ids)
        if event.supersedes:
            refs.append((f"metadata.{SUPERSEDES_KEY}", event.supersedes))
    elif isinstance(event, CustomEvent):
        refs.append(("change_id", event.change_id))

    seen: set[tuple[str, str]] = set()
    out = []
    for field, target in refs:
        if not target or (field, target) in seen:
            continue
        seen.add((field, target))
        out.append(Reference(source_id=event.id, field=field, target_id=target))
    return out


def change_key(event: BaseEvent) -> str | None:
    """The change an event belongs to, for the by-change index."""
    if isinstance(event, Change):
        return event.id
    if isinstance(event, (Rollout, Outcome, CustomEvent)):
        return event.change_id
    return None


def find_dangling(store: "EventStore", events: Iterable[BaseEvent],
                  max_seq: int | None = None) -> list[Reference]:
    """References from `events` whose target is not stored (as of max_seq)."""
    known: dict[str, bool] = {}
    dangling = []
    for event in events:
        for ref in references(event):
            if ref.target_id not in known:
                known[ref.target_id] = store.exists(ref.target_id, max_seq=max_seq)
            if not known[ref.target_id]:
                dangling.append(ref)
    return dangling


def report_dangling(dangling: list[Reference]) -> None:
    """Surface dangling references as a warning and a log line each."""
    for ref in dangling:
        logger.warning("Dangling reference %s.%s -> %s", ref.source_id, ref.field, ref.target_id)
    if dangling:
        warnings.warn(
            f"{len(dangling)} dangling reference(s) found",
            DanglingReferenceWarning,
            stacklevel=3,
        )
