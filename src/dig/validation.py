"""Event validation. All-or-nothing: an event either passes every check or is rejected."""

import json
import math
import re
from collections.abc import Iterator
from datetime import datetime
from enum import Enum
from typing import Any

from dig import ids
from dig.codec import CUSTOM_TYPE_PATTERN
from dig.errors import ValidationError
from dig.models import (
    SUPERSEDES_KEY,
    AIInteraction,
    AttributionRole,
    BaseEvent,
    Change,
    ChangeType,
    Comparison,
    CustomEvent,
    DecisionType,
    EventType,
    HumanActionType,
    IntentSource,
    Learning,
    Outcome,
    RecommendationSeverity,
    RiskLevel,
    Rollout,
    RolloutStatus,
    Session,
    Severity,
    StrategyType,
)

VERSION_PATTERN = re.compile(r"^\d+(\.\d+)*$")

# Allowed drift when both authorship percentages are present
AUTHORSHIP_TOLERANCE = 0.5


def parse_timestamp(value: Any, field: str) -> datetime:
    """Parse an ISO 8601 timestamp, requiring an explicit UTC offset."""
    if not isinstance(value, str) or not value:
        raise ValidationError(field, "must be an ISO 8601 timestamp")
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(field, f"not a valid ISO 8601 timestamp: {value!r}") from None
    if dt.tzinfo is None or dt.utcoffset() is None:
        raise ValidationError(field, "must be timezone-aware")
    return dt


def validate(event: BaseEvent) -> None:
    """Raise ValidationError for the first violated constraint."""
    for error in _check_event(event):
        raise error


def collect_errors(event: BaseEvent) -> list[ValidationError]:
    """Every violated constraint, in field order."""
    return list(_check_event(event))


# --- Primitive checks (each yields zero or one error) ---

def _required_str(value: Any, field: str) -> Iterator[ValidationError]:
    if not isinstance(value, str) or not value.strip():
        yield ValidationError(field, "is required")


def _optional_str(value: Any, field: str) -> Iterator[ValidationError]:
    if value is not None and not isinstance(value, str):
        yield ValidationError(field, "must be a string")


def _enum(value: Any, enum_cls: type[Enum], field: str,
          required: bool = False) -> Iterator[ValidationError]:
    if value is None:
        if required:
            yield ValidationError(field, "is required")
        return
    allowed = {m.value for m in enum_cls}
    raw = value.value if isinstance(value, Enum) else value
    if raw not in allowed:
        yield ValidationError(field, f"must be one of: {', '.join(sorted(allowed))}")


def _number(value: Any, field: str, low: float | None = None, high: float | None = None,
            required: bool = False) -> Iterator[ValidationError]:
    if value is None:
        if required:
            yield ValidationError(field, "is required")
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        yield ValidationError(field, "must be a finite number")
        return
    if low is not None and value < low:
        yield ValidationError(field, f"must be >= {low:g}")
    elif high is not None and value > high:
        yield ValidationError(field, f"must be <= {high:g}")


def _fraction(value: Any, field: str, required: bool = False) -> Iterator[ValidationError]:
    yield from _number(value, field, 0.0, 1.0, required)


def _percentage(value: Any, field: str, required: bool = False) -> Iterator[ValidationError]:
    yield from _number(value, field, 0.0, 100.0, required)


def _count(value: Any, field: str) -> Iterator[ValidationError]:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        yield ValidationError(field, "must be an integer")
    elif value < 0:
        yield ValidationError(field, "must be >= 0")


def _timestamp(value: Any, field: str, required: bool = False) -> Iterator[ValidationError]:
    if value is None or value == "":
        if required:
            yield ValidationError(field, "is required")
        return
    try:
        parse_timestamp(value, field)
    except ValidationError as e:
        yield e


def _bool(value: Any, field: str) -> Iterator[ValidationError]:
    if value is not None and not isinstance(value, bool):
        yield ValidationError(field, "must be a boolean")


def _str_list(value: Any, field: str) -> Iterator[ValidationError]:
    if not isinstance(value, list):
        yield ValidationError(field, "must be a list")
        return
    for i, item in enumerate(value):
        if not isinstance(item, str):
            yield ValidationError(f"{field}[{i}]", "must be a string")
            return


def _reference(value: Any, target: EventType, field: str,
               required: bool = True) -> Iterator[ValidationError]:
    if value is None or value == "":
        if required:
            yield ValidationError(field, "is required")
        return
    if not ids.has_valid_prefix(target, value):
        yield ValidationError(field, f"must reference a {target.value} id ({ids.prefix_for(target)}...)")


def _reference_list(values: Any, target: EventType, field: str) -> Iterator[ValidationError]:
    if not isinstance(values, list):
        yield ValidationError(field, "must be a list")
        return
    for i, value in enumerate(values):
        yield from _reference(value, target, f"{field}[{i}]")


def _ordered(timestamps: list[tuple[str, Any]]) -> Iterator[ValidationError]:
    """Timestamps must be non-decreasing. Unparseable entries are reported elsewhere."""
    previous = None
    for field, value in timestamps:
        try:
            current = parse_timestamp(value, field)
        except ValidationError:
            continue
        if previous is not None and current < previous:
            yield ValidationError(field, "must not precede the previous entry")
            return
        previous = current


def _not_before(start: Any, end: Any, field: str) -> Iterator[ValidationError]:
    try:
        s = parse_timestamp(start, field)
        e = parse_timestamp(end, field)
    except ValidationError:
        return
    if e < s:
        yield ValidationError(field, "must not precede the start")


# --- Header ---

def _check_header(event: BaseEvent) -> Iterator[ValidationError]:
    if not event.id:
        yield ValidationError("id", "is required")
    elif not ids.has_valid_prefix(event.event_type, event.id):
        yield ValidationError("id", f"must start with '{ids.prefix_for(event.event_type)}' "
                                    "followed by URL-safe characters")

    if not isinstance(event.version, str) or not VERSION_PATTERN.match(event.version):
        yield ValidationError("version", "must be a dotted version string such as '1.0'")

    yield from _timestamp(event.created_at, "created_at", required=True)
    yield from _timestamp(event.updated_at, "updated_at")
    if event.updated_at:
        yield from _not_before(event.created_at, event.updated_at, "updated_at")

    if not isinstance(event.tags, dict):
        yield ValidationError("tags", "must be a mapping")
    else:
        for key, value in event.tags.items():
            if isinstance(value, str):
                continue
            if isinstance(value, list) and all(isinstance(v, str) for v in value):
                continue
            yield ValidationError(f"tags.{key}", "must be a string or a list of strings")

    if not isinstance(event.metadata, dict):
        yield ValidationError("metadata", "must be a mapping")
    else:
        try:
            json.dumps(event.metadata)
        except (TypeError, ValueError):
            yield ValidationError("metadata", "must be JSON-serializable")


# --- Per-type payloads ---

def _check_session(event: Session) -> Iterator[ValidationError]:
    if event.developer is not None:
        yield from _optional_str(event.developer.id, "developer.id")
        yield from _optional_str(event.developer.anonymized_id, "developer.anonymized_id")
    if event.intent is not None:
        yield from _enum(event.intent.source, IntentSource, "intent.source")
        yield from _optional_str(event.intent.description, "intent.description")
    if event.context is not None:
        yield from _str_list(event.context.open_files, "context.open_files")
        yield from _str_list(event.context.active_tools, "context.active_tools")


def _check_ai_interaction(event: AIInteraction) -> Iterator[ValidationError]:
    yield from _reference(event.session_id, EventType.SESSION, "session_id")
    if event.request is not None:
        yield from _count(event.request.token_count, "request.token_count")
        yield from _str_list(event.request.context_files, "request.context_files")
    if event.response is None:
        yield ValidationError("response", "is required")
    else:
        yield from _required_str(event.response.model_id, "response.model_id")
        yield from _count(event.response.tokens_generated, "response.tokens_generated")
        yield from _number(event.response.latency_ms, "response.latency_ms", low=0)
    action = event.human_action
    if action is not None:
        yield from _enum(action.action, HumanActionType, "human_action.action", required=True)
        yield from _fraction(action.accepted_fraction, "human_action.accepted_fraction")
        if action.action == HumanActionType.PARTIAL_ACCEPT and action.accepted_fraction is None:
            yield ValidationError("human_action.accepted_fraction",
                                  "is required when action is partial_accept")
        yield from _number(action.decision_latency_ms, "human_action.decision_latency_ms", low=0)


def _check_change(event: Change) -> Iterator[ValidationError]:
    yield from _reference_list(event.session_ids, EventType.SESSION, "session_ids")
    yield from _reference_list(event.ai_interaction_ids, EventType.AI_INTERACTION,
                               "ai_interaction_ids")
    sc = event.source_control
    if sc is None:
        yield ValidationError("source_control", "is required")
    else:
        yield from _required_str(sc.repository, "source_control.repository")
        yield from _required_str(sc.commit_sha, "source_control.commit_sha")
        if sc.pr is not None:
            yield from _count(sc.pr.number, "source_control.pr.number")

    if event.diff is not None:
        yield from _count(event.diff.files_changed, "diff.files_changed")
        yield from _count(event.diff.lines_added, "diff.lines_added")
        yield from _count(event.diff.lines_removed, "diff.lines_removed")
        for i, f in enumerate(event.diff.files):
            yield from _required_str(f.path, f"diff.files[{i}].path")
            yield from _count(f.lines_added, f"diff.files[{i}].lines_added")
            yield from _count(f.lines_removed, f"diff.files[{i}].lines_removed")

    a = event.authorship
    if a is not None:
        yield from _percentage(a.human_authored_pct, "authorship.human_authored_pct")
        yield from _percentage(a.ai_authored_pct, "authorship.ai_authored_pct")
        yield from _str_list(a.ai_model_ids, "authorship.ai_model_ids")
        both = (a.human_authored_pct, a.ai_authored_pct)
        if all(isinstance(p, (int, float)) and not isinstance(p, bool) for p in both):
            if abs(sum(both) - 100.0) > AUTHORSHIP_TOLERANCE:
                yield ValidationError("authorship", "human_authored_pct + ai_authored_pct must equal 100")

    c = event.classification
    if c is not None:
        yield from _enum(c.change_type, ChangeType, "classification.change_type")
        yield from _enum(c.risk_level, RiskLevel, "classification.risk_level")
        yield from _str_list(c.risk_signals, "classification.risk_signals")

    if event.review is not None:
        yield from _count(event.review.approvals, "review.approvals")
        yield from _count(event.review.comments, "review.comments")
        yield from _number(event.review.time_to_merge_minutes, "review.time_to_merge_minutes", low=0)


def _check_rollout(event: Rollout) -> Iterator[ValidationError]:
    yield from _reference(event.change_id, EventType.CHANGE, "change_id")
    if event.deployment is None:
        yield ValidationError("deployment", "is required")
    else:
        yield from _required_str(event.deployment.environment, "deployment.environment")

    s = event.strategy
    if s is not None:
        yield from _enum(s.type, StrategyType, "strategy.type", required=True)
        for i, stage in enumerate(s.stages):
            yield from _percentage(stage.percentage, f"strategy.stages[{i}].percentage", required=True)
            yield from _number(stage.duration_minutes, f"strategy.stages[{i}].duration_minutes", low=0)

    if event.guardrails is not None:
        for i, g in enumerate(event.guardrails.metrics):
            yield from _required_str(g.metric, f"guardrails.metrics[{i}].metric")
            yield from _number(g.threshold, f"guardrails.metrics[{i}].threshold", required=True)
            yield from _enum(g.comparison, Comparison, f"guardrails.metrics[{i}].comparison",
                             required=True)

    stamps = []
    for i, entry in enumerate(event.progression):
        field = f"progression[{i}]"
        yield from _timestamp(entry.timestamp, f"{field}.timestamp", required=True)
        yield from _percentage(entry.stage_percentage, f"{field}.stage_percentage", required=True)
        yield from _required_str(entry.status, f"{field}.status")
        stamps.append((f"{field}.timestamp", entry.timestamp))
    yield from _ordered(stamps)

    yield from _enum(event.final_status, RolloutStatus, "final_status", required=True)


def _check_outcome(event: Outcome) -> Iterator[ValidationError]:
    yield from _reference(event.change_id, EventType.CHANGE, "change_id")
    yield from _reference(event.rollout_id, EventType.ROLLOUT, "rollout_id")

    w = event.observation_window
    if w is not None:
        yield from _timestamp(w.start, "observation_window.start")
        yield from _timestamp(w.end, "observation_window.end")
        if w.start and w.end:
            yield from _not_before(w.start, w.end, "observation_window.end")
        yield from _number(w.duration_hours, "observation_window.duration_hours", low=0)

    if event.telemetry is not None:
        for i, m in enumerate(event.telemetry.metrics):
            field = f"telemetry.metrics[{i}]"
            yield from _required_str(m.metric, f"{field}.metric")
            yield from _number(m.baseline, f"{field}.baseline")
            yield from _number(m.observed, f"{field}.observed")
            yield from _number(m.change_pct, f"{field}.change_pct")

    for i, incident in enumerate(event.incidents):
        field = f"incidents[{i}]"
        yield from _required_str(incident.incident_id, f"{field}.incident_id")
        yield from _enum(incident.severity, Severity, f"{field}.severity")
        yield from _timestamp(incident.detected_at, f"{field}.detected_at")
        yield from _timestamp(incident.resolved_at, f"{field}.resolved_at")
        if incident.detected_at and incident.resolved_at:
            yield from _not_before(incident.detected_at, incident.resolved_at, f"{field}.resolved_at")
        yield from _number(incident.duration_minutes, f"{field}.duration_minutes", low=0)
        yield from _bool(incident.attributed, f"{field}.attributed")
        for j, attribution in enumerate(incident.change_ids):
            yield from _reference(attribution.change_id, EventType.CHANGE,
                                  f"{field}.change_ids[{j}].change_id")
            yield from _enum(attribution.role, AttributionRole, f"{field}.change_ids[{j}].role",
                             required=True)

    stamps = []
    for i, d in enumerate(event.decisions):
        field = f"decisions[{i}]"
        yield from _timestamp(d.timestamp, f"{field}.timestamp", required=True)
        yield from _enum(d.decision, DecisionType, f"{field}.decision", required=True)
        stamps.append((f"{field}.timestamp", d.timestamp))
    yield from _ordered(stamps)

    s = event.survival
    if s is not None:
        yield from _bool(s.survived, "survival.survived")
        yield from _bool(s.rolled_back, "survival.rolled_back")
        yield from _bool(s.hotfix_required, "survival.hotfix_required")
        yield from _number(s.time_to_rollback_minutes, "survival.time_to_rollback_minutes", low=0)


def _check_learning(event: Learning) -> Iterator[ValidationError]:
    d = event.derived_from
    if d is not None:
        yield from _reference_list(d.outcome_ids, EventType.OUTCOME, "derived_from.outcome_ids")
        yield from _reference_list(d.change_ids, EventType.CHANGE, "derived_from.change_ids")
        yield from _count(d.sample_size, "derived_from.sample_size")
        yield from _timestamp(d.period_start, "derived_from.period_start")
        yield from _timestamp(d.period_end, "derived_from.period_end")

    p = event.pattern
    if p is None:
        yield ValidationError("pattern", "is required")
    else:
        yield from _required_str(p.name, "pattern.name")
        yield from _fraction(p.confidence, "pattern.confidence", required=True)
        yield from _fraction(p.significance, "pattern.significance")
        if not isinstance(p.conditions, dict):
            yield ValidationError("pattern.conditions", "must be a mapping")
        else:
            for key, value in p.conditions.items():
                values = value if isinstance(value, list) else [value]
                if not all(isinstance(v, (str, int, float, bool)) for v in values):
                    yield ValidationError(f"pattern.conditions.{key}",
                                          "must be a scalar or a list of scalars")

    r = event.recommendation
    if r is not None:
        yield from _enum(r.severity, RecommendationSeverity, "recommendation.severity", required=True)
        yield from _str_list(r.trigger_conditions, "recommendation.trigger_conditions")

    for i, insight in enumerate(event.model_insights):
        yield from _required_str(insight.model_id, f"model_insights[{i}].model_id")
        yield from _percentage(insight.survival_rate, f"model_insights[{i}].survival_rate")
        yield from _count(insight.sample_size, f"model_insights[{i}].sample_size")

    if isinstance(event.metadata, dict) and SUPERSEDES_KEY in event.metadata:
        yield from _reference(event.metadata[SUPERSEDES_KEY], EventType.LEARNING,
                              f"metadata.{SUPERSEDES_KEY}")


def _check_custom(event: CustomEvent) -> Iterator[ValidationError]:
    if not isinstance(event.custom_type, str) or not CUSTOM_TYPE_PATTERN.match(event.custom_type):
        yield ValidationError("type", "custom types must be namespaced (x-<ns>.<name> or <ns>:<name>)")
    yield from _reference(event.change_id, EventType.CHANGE, "change_id", required=False)
    if not isinstance(event.payload, dict):
        yield ValidationError("payload", "must be a mapping")


_CHECKS = {
    Session: _check_session,
    AIInteraction: _check_ai_interaction,
    Change: _check_change,
    Rollout: _check_rollout,
    Outcome: _check_outcome,
    Learning: _check_learning,
    CustomEvent: _check_custom,
}


def _check_event(event: BaseEvent) -> Iterator[ValidationError]:
    check = _CHECKS.get(type(event))
    if check is None:
        yield ValidationError("type", f"unsupported event class {type(event).__name__}")
        return
    yield from _check_header(event)
    yield from check(event)
