"""Output formatters for events, traces, PSR reports and learning matches."""

import json
from dataclasses import asdict
from enum import Enum

from dig.codec import event_to_dict
from dig.models import (
    AIInteraction,
    BaseEvent,
    BatchResult,
    Change,
    CustomEvent,
    IncidentLink,
    InteractionStats,
    Learning,
    LearningMatch,
    Outcome,
    PSRReport,
    Rollout,
    Session,
    Trace,
)


def _short_timestamp(ts: str) -> str:
    """Convert ISO timestamp to compact form: '2026-02-23 14:30'."""
    return ts[:16].replace("T", " ")


def _v(value) -> str:
    if value is None:
        return "-"
    return value.value if isinstance(value, Enum) else str(value)


def _tags_str(tags: dict) -> str:
    if not tags:
        return ""
    parts = []
    for key, value in sorted(tags.items()):
        parts.append(f"{key}={','.join(value) if isinstance(value, list) else value}")
    return " {" + " ".join(parts) + "}"


def _summary(event: BaseEvent) -> str:
    if isinstance(event, Session):
        intent = event.intent.description if event.intent and event.intent.description else ""
        return intent or "(no intent)"
    if isinstance(event, AIInteraction):
        action = _v(event.human_action.action) if event.human_action else "no action"
        return f"{event.response.model_id} in {event.session_id} — {action}"
    if isinstance(event, Change):
        sc = event.source_control
        c = event.classification
        return f"{sc.repository}@{sc.commit_sha[:7]} {_v(c.change_type)}/{_v(c.risk_level)}"
    if isinstance(event, Rollout):
        strategy = _v(event.strategy.type) if event.strategy else "-"
        return (f"{event.change_id} -> {event.deployment.environment} "
                f"({strategy}) {_v(event.final_status)}")
    if isinstance(event, Outcome):
        survived = event.survival.survived
        label = "unlabeled" if survived is None else ("survived" if survived else "failed")
        incidents = f", {len(event.incidents)} incident(s)" if event.incidents else ""
        return f"{event.rollout_id} {label}{incidents}"
    if isinstance(event, Learning):
        return f"{event.pattern.name} (confidence {event.pattern.confidence:.2f})"
    if isinstance(event, CustomEvent):
        return f"change={event.change_id}" if event.change_id else "(opaque)"
    return ""


def format_event_compact(event: BaseEvent) -> str:
    """Single-line compact format for one event."""
    ts = _short_timestamp(event.created_at)
    return f"[{ts}] [{event.event_type}] {event.id} — {_summary(event)}{_tags_str(event.tags)}"


def format_compact(events: list[BaseEvent]) -> str:
    """Compact multi-line output for a list of events."""
    if not events:
        return "(no events)"
    return "\n".join(format_event_compact(e) for e in events)


def format_json(events: list[BaseEvent]) -> str:
    """JSON array output in the persisted record format."""
    return json.dumps([event_to_dict(e) for e in events], indent=2)


def _jsonable(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def format_batch_result(result: BatchResult) -> str:
    lines = [f"Accepted {len(result.accepted)}, rejected {len(result.rejected)}."]
    for event in result.accepted:
        lines.append(f"  + {event.id} (seq {event.seq})")
    for failure in result.rejected:
        label = failure.event_id or f"#{failure.index}"
        kind = "duplicate" if failure.duplicate else "rejected"
        lines.append(f"  ! {label} {kind}: {failure.error}")
    return "\n".join(lines)


def format_trace_compact(trace: Trace) -> str:
    lines = [f"# Trace {trace.change_id}"]
    if trace.change is None:
        lines.append("(change not stored)")
    sections = [
        ("Change", [trace.change] if trace.change else []),
        ("Sessions", trace.sessions),
        ("AI Interactions", trace.interactions),
        ("Rollouts", trace.rollouts),
        ("Outcomes", trace.outcomes),
        ("Learnings", trace.learnings),
        ("Other", trace.other),
    ]
    for title, events in sections:
        if events:
            lines.append(f"## {title} ({len(events)})")
            for e in events:
                marker = " *" if e.id in (trace.canonical_rollout_id, trace.canonical_outcome_id) else ""
                lines.append(f"{format_event_compact(e)}{marker}")
    if trace.dangling:
        lines.append(f"## Dangling References ({len(trace.dangling)})")
        for ref in trace.dangling:
            lines.append(f"{ref.source_id}.{ref.field} -> {ref.target_id}")
    return "\n".join(lines)


def format_trace_json(trace: Trace) -> str:
    d = {
        "change_id": trace.change_id,
        "change": event_to_dict(trace.change) if trace.change else None,
        "sessions": [event_to_dict(e) for e in trace.sessions],
        "interactions": [event_to_dict(e) for e in trace.interactions],
        "rollouts": [event_to_dict(e) for e in trace.rollouts],
        "outcomes": [event_to_dict(e) for e in trace.outcomes],
        "learnings": [event_to_dict(e) for e in trace.learnings],
        "other": [event_to_dict(e) for e in trace.other],
        "canonical_rollout_id": trace.canonical_rollout_id,
        "canonical_outcome_id": trace.canonical_outcome_id,
        "dangling": [asdict(r) for r in trace.dangling],
    }
    return json.dumps(d, indent=2)


def format_psr_compact(report: PSRReport) -> str:
    """One line per group, then data-quality notes."""
    lines = [
        f"# PSR by {', '.join(report.group_by)} (min sample {report.min_sample_size}, "
        f"snapshot seq {report.snapshot_seq})",
    ]
    if not report.groups:
        lines.append("(no deployed changes)")
    for g in report.groups:
        key = " ".join(f"{k}={_v(v)}" for k, v in g.key.items())
        if g.psr is None:
            value = "insufficient sample"
        else:
            value = f"{g.psr:.1f}%"
        unlabeled = f", {g.unlabeled} unlabeled" if g.unlabeled else ""
        lines.append(f"{key}: {value} ({g.survived}/{g.total}{unlabeled})")
    if report.undeployed_changes:
        lines.append(f"Undeployed or unobserved changes: {len(report.undeployed_changes)}")
    if report.excluded_by_window:
        lines.append(f"Outside window: {report.excluded_by_window}")
    if report.dangling:
        lines.append(f"Dangling references: {len(report.dangling)}")
        for ref in report.dangling:
            lines.append(f"  {ref.source_id}.{ref.field} -> {ref.target_id}")
    return "\n".join(lines)


def format_psr_json(report: PSRReport) -> str:
    return json.dumps(_jsonable(asdict(report)), indent=2)


def format_matches_compact(matches: list[LearningMatch]) -> str:
    if not matches:
        return "(no matching learnings)"
    lines = []
    for m in matches:
        severity = f"[{_v(m.severity).upper()}] " if m.severity else ""
        message = f" — {m.message}" if m.message else ""
        lines.append(f"{severity}{m.pattern_name} ({m.confidence:.2f}) {m.learning_id}{message}")
        for hint in m.hints:
            lines.append(f"    hint: {hint}")
    return "\n".join(lines)


def format_matches_json(matches: list[LearningMatch]) -> str:
    return json.dumps([_jsonable(asdict(m)) for m in matches], indent=2)


def format_incidents_compact(links: list[IncidentLink]) -> str:
    if not links:
        return "(no incidents)"
    return "\n".join(
        f"{link.incident_id} [{_v(link.severity)}] {link.role.value} via {link.outcome_id}"
        + (f" — {link.title}" if link.title else "")
        for link in links
    )


def format_interaction_stats_compact(stats: list[InteractionStats]) -> str:
    if not stats:
        return "(no AI interactions)"
    lines = []
    for s in stats:
        rate = f"{100 * s.acceptance_rate:.1f}%" if s.acceptance_rate is not None else "-"
        lines.append(f"{s.model_id}: {s.interactions} interactions, acceptance {rate}")
    return "\n".join(lines)
