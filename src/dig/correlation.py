"""Correlation and aggregation over the reference graph.

Traversal order follows the trace: session -> AI interaction -> change ->
rollout -> outcome -> learning. Sessions and interactions never point
forward; the change lists them, so that one edge is walked backward.

Every run is read-only and pinned to the ingestion sequence observed at
its start, so events appended mid-run never leak into the result.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from dig.errors import AggregationCancelled, NotFoundError
from dig.links import find_dangling, report_dangling
from dig.models import (
    INSUFFICIENT_SAMPLE,
    AIInteraction,
    AttributionRole,
    BaseEvent,
    Change,
    EventFilter,
    EventType,
    HumanActionType,
    IncidentLink,
    InteractionStats,
    Learning,
    Outcome,
    PSRGroup,
    PSRReport,
    Reference,
    Rollout,
    Session,
    TimeWindow,
    Trace,
)
from dig.query import parse_group_by
from dig.store import EventStore, utc_key

logger = logging.getLogger(__name__)

DEFAULT_PRODUCTION_ENVIRONMENT = "production"
HUMAN_ONLY = "human"
UNRESOLVED_MODEL = "unresolved"
CLASSIFICATION_DIMENSIONS = ("change_type", "risk_level", "blast_radius")


def _value(v):
    return v.value if hasattr(v, "value") else v


class CancelToken:
    """Cooperative cancellation for long aggregation runs."""

    def __init__(self, timeout: float | None = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def timed_out(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.timed_out

    def check(self) -> None:
        if self._event.is_set():
            raise AggregationCancelled("aggregation cancelled")
        if self.timed_out:
            raise AggregationCancelled("aggregation timed out")


@dataclass
class CanonicalAttemptPolicy:
    """Which rollout attempt (and which outcome of it) counts for PSR.

    The canonical attempt is the latest production rollout of a change by
    created_at, ties broken by ingestion order. Its canonical outcome is
    the latest outcome recorded for that rollout. A change with no
    production rollout has no canonical attempt.
    """

    production_environment: str = DEFAULT_PRODUCTION_ENVIRONMENT

    def select_rollout(self, rollouts: list[Rollout]) -> Rollout | None:
        production = [r for r in rollouts
                      if r.deployment.environment == self.production_environment]
        if not production:
            return None
        return max(production, key=lambda r: (utc_key(r.created_at), r.seq or 0))

    def select_outcome(self, rollout: Rollout, outcomes: list[Outcome]) -> Outcome | None:
        mine = [o for o in outcomes if o.rollout_id == rollout.id]
        if not mine:
            return None
        return max(mine, key=lambda o: (utc_key(o.created_at), o.seq or 0))


@dataclass
class _GroupAccumulator:
    survived: int = 0
    total: int = 0
    unlabeled: int = 0
    rolled_back: int = 0
    hotfix_required: int = 0
    attributed_incidents: int = 0
    rollback_minutes: list[float] = field(default_factory=list)
    change_ids: list[str] = field(default_factory=list)

    def add(self, change: Change, outcome: Outcome) -> None:
        self.change_ids.append(change.id)
        survival = outcome.survival
        if survival.rolled_back:
            self.rolled_back += 1
        if survival.hotfix_required:
            self.hotfix_required += 1
        if survival.time_to_rollback_minutes is not None:
            self.rollback_minutes.append(survival.time_to_rollback_minutes)
        self.attributed_incidents += sum(1 for i in outcome.incidents if i.attributed)

        if survival.survived is None:
            self.unlabeled += 1
            return
        self.total += 1
        if survival.survived:
            self.survived += 1

    def to_group(self, key: dict[str, str | None], min_sample_size: int) -> PSRGroup:
        group = PSRGroup(
            key=key,
            survived=self.survived,
            total=self.total,
            unlabeled=self.unlabeled,
            rolled_back=self.rolled_back,
            hotfix_required=self.hotfix_required,
            attributed_incidents=self.attributed_incidents,
            change_ids=self.change_ids,
        )
        if self.rollback_minutes:
            group.mean_time_to_rollback_minutes = sum(self.rollback_minutes) / len(self.rollback_minutes)
        if self.total < max(min_sample_size, 1):
            group.status = INSUFFICIENT_SAMPLE
        else:
            group.psr = 100.0 * self.survived / self.total
        return group


class CorrelationEngine:
    """Joins events along their references and computes derived metrics."""

    def __init__(self, store: EventStore, policy: CanonicalAttemptPolicy | None = None):
        self.store = store
        self.policy = policy or CanonicalAttemptPolicy()

    # --- Traces ---

    def trace(self, change_id: str) -> Trace:
        """Everything connected to one change, with its canonical attempt.

        Raises NotFoundError only when nothing at all is known about the id;
        events pointing at a missing change yield a Trace with change=None
        and the missing edges listed as dangling.
        """
        snapshot = self.store.latest_seq()
        keyed = self.store.query_by_change(change_id, max_seq=snapshot)
        result = Trace(change_id=change_id)
        for event in keyed:
            if isinstance(event, Change):
                result.change = event
            elif isinstance(event, Rollout):
                result.rollouts.append(event)
            elif isinstance(event, Outcome):
                result.outcomes.append(event)
            else:
                result.other.append(event)

        for event in self.store.referencing(change_id, max_seq=snapshot):
            if isinstance(event, Learning):
                result.learnings.append(event)

        if not keyed and not result.learnings:
            raise NotFoundError(change_id)

        touched: list[BaseEvent] = list(keyed)
        if result.change is not None:
            linked = self.store.get_many(
                [*result.change.session_ids, *result.change.ai_interaction_ids], max_seq=snapshot
            )
            result.sessions = [e for e in linked.values() if isinstance(e, Session)]
            result.interactions = [e for e in linked.values() if isinstance(e, AIInteraction)]
            touched.extend(result.interactions)

        canonical = self.policy.select_rollout(result.rollouts)
        if canonical is not None:
            result.canonical_rollout_id = canonical.id
            outcome = self.policy.select_outcome(canonical, result.outcomes)
            if outcome is not None:
                result.canonical_outcome_id = outcome.id

        result.dangling = find_dangling(self.store, touched, max_seq=snapshot)
        report_dangling(result.dangling)
        return result

    # --- PSR ---

    def _dimension_values(self, name: str, change: Change,
                          interactions: list[AIInteraction],
                          rollout: Rollout) -> list[str | None]:
        if name == "model_id":
            models = list(dict.fromkeys(i.response.model_id for i in interactions))
            if not models and change.authorship is not None:
                models = list(dict.fromkeys(change.authorship.ai_model_ids))
            if models:
                return models
            # AI-linked but none of the interactions are stored (yet)
            return [UNRESOLVED_MODEL] if change.ai_interaction_ids else [HUMAN_ONLY]
        if name in CLASSIFICATION_DIMENSIONS:
            return [_value(getattr(change.classification, name))]
        if name == "strategy":
            return [_value(rollout.strategy.type) if rollout.strategy else None]
        if name == "environment":
            return [rollout.deployment.environment]

        tag = name.removeprefix("tag:")
        value = change.tags.get(tag)
        if isinstance(value, list):
            return list(dict.fromkeys(value)) or [None]
        return [value]

    def compute_psr(self, group_by: str | list[str], min_sample_size: int = 1,
                    window: TimeWindow | None = None,
                    cancel: CancelToken | None = None) -> PSRReport:
        """Production Survival Rate per group.

        PSR = 100 * survived / labelled outcomes, using only each change's
        canonical outcome. Groups smaller than min_sample_size report
        status "insufficient_sample" and psr None. Unlabeled outcomes are
        counted per group but excluded from both numerator and
        denominator. Changes without a canonical outcome are listed as
        undeployed and contribute to no group.

        Raises AggregationCancelled if `cancel` fires; no partial report
        is returned.
        """
        dimensions = parse_group_by(group_by)
        cancel = cancel or CancelToken()
        snapshot = self.store.latest_seq()
        logger.debug("PSR run over %s pinned at seq %d", dimensions, snapshot)

        report = PSRReport(
            group_by=dimensions,
            min_sample_size=min_sample_size,
            snapshot_seq=snapshot,
            generated_at=datetime.now(timezone.utc).isoformat(),
            window=window,
        )
        since = utc_key(window.since, "since") if window and window.since else None
        until = utc_key(window.until, "until") if window and window.until else None

        groups: dict[tuple, _GroupAccumulator] = {}
        dangling: list[Reference] = []
        try:
            for change in self.store.query_by_type(EventType.CHANGE, EventFilter(max_seq=snapshot)):
                cancel.check()
                keyed = self.store.query_by_change(change.id, max_seq=snapshot)
                rollouts = [e for e in keyed if isinstance(e, Rollout)]
                outcomes = [e for e in keyed if isinstance(e, Outcome)]
                dangling.extend(find_dangling(self.store, [change, *outcomes], max_seq=snapshot))

                rollout = self.policy.select_rollout(rollouts)
                outcome = self.policy.select_outcome(rollout, outcomes) if rollout else None
                if outcome is None:
                    report.undeployed_changes.append(change.id)
                    continue

                observed = utc_key(outcome.created_at)
                if (since and observed < since) or (until and observed > until):
                    report.excluded_by_window += 1
                    continue

                linked = self.store.get_many(change.ai_interaction_ids, max_seq=snapshot)
                interactions = [e for e in linked.values() if isinstance(e, AIInteraction)]

                if outcome.survival.survived is None:
                    report.unlabeled_outcomes.append(outcome.id)

                values = [self._dimension_values(d, change, interactions, rollout) for d in dimensions]
                for combo in itertools.product(*values):
                    groups.setdefault(combo, _GroupAccumulator()).add(change, outcome)

            cancel.check()
            dangling.extend(self._orphan_outcomes(snapshot, cancel))
        except AggregationCancelled:
            logger.warning("PSR aggregation abandoned at snapshot seq %d", snapshot)
            raise

        report.groups = [
            acc.to_group(dict(zip(dimensions, key)), min_sample_size)
            for key, acc in sorted(groups.items(), key=lambda kv: [str(k) for k in kv[0]])
        ]
        report.dangling = list(dict.fromkeys(dangling))
        report_dangling(report.dangling)
        return report

    def _orphan_outcomes(self, snapshot: int, cancel: CancelToken) -> list[Reference]:
        """Outcomes whose change is missing are invisible to the change walk."""
        orphans = []
        for outcome in self.store.query_by_type(EventType.OUTCOME, EventFilter(max_seq=snapshot)):
            cancel.check()
            if not self.store.exists(outcome.change_id, max_seq=snapshot):
                orphans.append(Reference(outcome.id, "change_id", outcome.change_id))
        return orphans

    # --- Derived metrics ---

    def interaction_stats(self, window: TimeWindow | None = None,
                          cancel: CancelToken | None = None) -> list[InteractionStats]:
        """Human disposition of AI output, per model."""
        cancel = cancel or CancelToken()
        snapshot = self.store.latest_seq()
        stats: dict[str, InteractionStats] = {}
        fractions: dict[str, list[float]] = {}

        for interaction in self.store.query_by_type(
                EventType.AI_INTERACTION, EventFilter(window=window, max_seq=snapshot)):
            cancel.check()
            model_id = interaction.response.model_id
            s = stats.setdefault(model_id, InteractionStats(model_id=model_id))
            s.interactions += 1
            action = interaction.human_action
            if action is None:
                continue
            s.with_action += 1
            name = _value(action.action)
            s.actions[name] = s.actions.get(name, 0) + 1
            if action.action == HumanActionType.ACCEPT:
                fraction = 1.0
            elif action.action == HumanActionType.PARTIAL_ACCEPT:
                fraction = action.accepted_fraction or 0.0
            else:
                fraction = 0.0
            fractions.setdefault(model_id, []).append(fraction)

        for model_id, s in stats.items():
            if s.with_action:
                accepted = s.actions.get("accept", 0) + s.actions.get("partial_accept", 0)
                s.acceptance_rate = accepted / s.with_action
                values = fractions[model_id]
                s.mean_accepted_fraction = sum(values) / len(values)
        return sorted(stats.values(), key=lambda s: s.model_id)

    def incidents_for_change(self, change_id: str) -> list[IncidentLink]:
        """Incidents attributed to a change, as primary or contributing cause.

        An incident may name several changes; each named change sees it.
        Incidents that name no change are attributed to the outcome's own
        change as primary.
        """
        outcomes: dict[str, Outcome] = {}
        for event in self.store.query_by_change(change_id):
            if isinstance(event, Outcome):
                outcomes[event.id] = event
        for event in self.store.referencing(change_id):
            if isinstance(event, Outcome):
                outcomes[event.id] = event

        links = []
        for outcome in outcomes.values():
            for incident in outcome.incidents:
                if incident.change_ids:
                    roles = [a.role for a in incident.change_ids if a.change_id == change_id]
                    if not roles:
                        continue
                    role = AttributionRole.PRIMARY if AttributionRole.PRIMARY in roles \
                        else AttributionRole.CONTRIBUTING
                elif outcome.change_id == change_id:
                    role = AttributionRole.PRIMARY
                else:
                    continue
                links.append(IncidentLink(
                    incident_id=incident.incident_id,
                    outcome_id=outcome.id,
                    change_id=change_id,
                    role=role,
                    severity=incident.severity,
                    attributed=incident.attributed,
                    title=incident.title,
                ))
        return links

    def session_activity(self, session_id: str) -> str | None:
        """Projected updated_at of a session: latest created_at among it and its referrers."""
        events = self.store.referencing(session_id)
        try:
            events.append(self.store.get(session_id))
        except NotFoundError:
            if not events:
                raise
        latest = max(events, key=lambda e: utc_key(e.created_at))
        return latest.created_at
