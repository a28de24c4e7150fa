"""Tests for traces, canonical attempts, PSR and derived metrics."""

import time
import warnings

import pytest

from conftest import ts
from dig.correlation import CancelToken, CanonicalAttemptPolicy, CorrelationEngine
from dig.errors import AggregationCancelled, DanglingReferenceWarning, NotFoundError
from dig.models import (
    INSUFFICIENT_SAMPLE,
    AttributionRole,
    ChangeType,
    CustomEvent,
    DerivedFrom,
    Incident,
    IncidentAttribution,
    Learning,
    Outcome,
    Pattern,
    Reference,
    RiskLevel,
    Severity,
    StrategyType,
    Survival,
    TimeWindow,
)


@pytest.fixture
def engine(store):
    return CorrelationEngine(store)


def group(report, **key):
    matches = [g for g in report.groups if g.key == key]
    assert len(matches) == 1, f"no single group for {key}: {[g.key for g in report.groups]}"
    return matches[0]


class TestCanonicalAttempt:

    def test_latest_production_rollout_wins(self, factory):
        change = factory.change()
        first = factory.rollout(change.id, at=10)
        factory.rollout(change.id, at=40, environment="staging")
        second = factory.rollout(change.id, at=30)
        policy = CanonicalAttemptPolicy()
        rollouts = factory.store.query_by_change(change.id)[1:]
        assert policy.select_rollout(rollouts).id == second.id
        assert first.id != second.id

    def test_ties_broken_by_ingestion_order(self, factory):
        change = factory.change()
        factory.rollout(change.id, at=10)
        later = factory.rollout(change.id, at=10)
        rollouts = factory.store.query_by_change(change.id)[1:]
        assert CanonicalAttemptPolicy().select_rollout(rollouts).id == later.id

    def test_no_production_rollout(self, factory):
        change = factory.change()
        staging = factory.rollout(change.id, environment="staging")
        assert CanonicalAttemptPolicy().select_rollout([staging]) is None
        assert CanonicalAttemptPolicy("staging").select_rollout([staging]).id == staging.id

    def test_latest_outcome_of_the_rollout(self, factory):
        change = factory.change()
        rollout = factory.rollout(change.id)
        other = factory.rollout(change.id, at=11)
        early = factory.outcome(change.id, rollout.id, at=60, survived=None)
        late = factory.outcome(change.id, rollout.id, at=120, survived=True)
        factory.outcome(change.id, other.id, at=200, survived=False)
        outcomes = [early, late]
        assert CanonicalAttemptPolicy().select_outcome(rollout, outcomes).id == late.id


class TestTrace:

    def test_full_trace(self, factory, engine):
        session = factory.session(at=0)
        ai = factory.interaction(session.id, at=1, action="accept")
        change = factory.change(at=5, session_ids=[session.id], ai_interaction_ids=[ai.id])
        r1, o1 = factory.deploy(change.id, survived=False, at=10)
        r2, o2 = factory.deploy(change.id, survived=True, at=100)
        learning = factory.store.append(Learning(
            created_at=ts(300),
            derived_from=DerivedFrom(outcome_ids=[o2.id], change_ids=[change.id]),
            pattern=Pattern(name="retry-ok", confidence=0.6),
        ))

        trace = engine.trace(change.id)
        assert trace.change == change
        assert trace.sessions == [session]
        assert trace.interactions == [ai]
        assert [r.id for r in trace.rollouts] == [r1.id, r2.id]
        assert [o.id for o in trace.outcomes] == [o1.id, o2.id]
        assert trace.learnings == [learning]
        assert trace.canonical_rollout_id == r2.id
        assert trace.canonical_outcome_id == o2.id
        assert trace.dangling == []

    def test_unknown_change(self, engine):
        with pytest.raises(NotFoundError):
            engine.trace("change_nothing")

    def test_missing_change_is_dangling_not_absent(self, factory, engine):
        outcome = factory.outcome("change_missing", "rollout_missing")
        with pytest.warns(DanglingReferenceWarning):
            trace = engine.trace("change_missing")
        assert trace.change is None
        assert trace.outcomes == [outcome]
        assert Reference(outcome.id, "change_id", "change_missing") in trace.dangling
        assert Reference(outcome.id, "rollout_id", "rollout_missing") in trace.dangling

    def test_custom_events_listed_as_other(self, factory, engine):
        change = factory.change()
        note = factory.store.append(CustomEvent(
            created_at=ts(20), custom_type="x-acme.note", change_id=change.id,
        ))
        assert engine.trace(change.id).other == [note]


class TestPSR:

    def test_canonical_attempt_only(self, factory, engine):
        change = factory.change(tags={"domain": "ml"})
        factory.deploy(change.id, survived=False, at=10)
        factory.deploy(change.id, survived=True, at=100)

        report = engine.compute_psr("domain")
        ml = group(report, domain="ml")
        assert (ml.survived, ml.total) == (1, 1)
        assert ml.psr == 100.0

    def test_unlabeled_excluded(self, factory, engine):
        labelled = factory.change(tags={"domain": "ml"})
        unlabeled = factory.change(tags={"domain": "ml"})
        factory.deploy(labelled.id, survived=False)
        _, outcome = factory.deploy(unlabeled.id, survived=None)

        report = engine.compute_psr(["domain"])
        ml = group(report, domain="ml")
        assert (ml.survived, ml.total, ml.unlabeled) == (0, 1, 1)
        assert ml.psr == 0.0
        assert report.unlabeled_outcomes == [outcome.id]

    def test_all_unlabeled_is_insufficient(self, factory, engine):
        change = factory.change(tags={"domain": "ml"})
        factory.deploy(change.id, survived=None)
        ml = group(engine.compute_psr("domain"), domain="ml")
        assert ml.total == 0
        assert ml.status == INSUFFICIENT_SAMPLE
        assert ml.psr is None

    def test_insufficient_sample(self, factory, engine):
        for survived in (True, False):
            change = factory.change(tags={"domain": "web"})
            factory.deploy(change.id, survived=survived)
        web = group(engine.compute_psr("domain", min_sample_size=3), domain="web")
        assert web.status == INSUFFICIENT_SAMPLE
        assert web.psr is None
        assert web.total == 2

        web = group(engine.compute_psr("domain", min_sample_size=2), domain="web")
        assert web.status == "ok"
        assert web.psr == 50.0

    def test_undeployed_changes_excluded(self, factory, engine):
        never = factory.change(tags={"domain": "ml"})
        staged = factory.change(tags={"domain": "ml"})
        factory.rollout(staged.id, environment="staging")
        unobserved = factory.change(tags={"domain": "ml"})
        factory.rollout(unobserved.id)
        shipped = factory.change(tags={"domain": "ml"})
        factory.deploy(shipped.id, survived=True)

        report = engine.compute_psr("domain")
        assert set(report.undeployed_changes) == {never.id, staged.id, unobserved.id}
        ml = group(report, domain="ml")
        assert ml.total == 1
        assert ml.change_ids == [shipped.id]

    def test_staging_outcome_is_not_canonical(self, factory, engine):
        change = factory.change(tags={"domain": "ml"})
        factory.deploy(change.id, survived=True, at=10)
        factory.deploy(change.id, survived=False, at=100, environment="staging")
        assert group(engine.compute_psr("domain"), domain="ml").psr == 100.0

    def test_production_environment_is_configurable(self, factory, store):
        change = factory.change(tags={"domain": "ml"})
        factory.deploy(change.id, survived=False, environment="prod-eu")
        engine = CorrelationEngine(store, CanonicalAttemptPolicy("prod-eu"))
        assert group(engine.compute_psr("domain"), domain="ml").psr == 0.0

    def test_missing_tag_groups_under_none(self, factory, engine):
        change = factory.change(tags={})
        factory.deploy(change.id)
        assert group(engine.compute_psr("tag:domain"), **{"tag:domain": None}).total == 1

    def test_multi_valued_tag_fans_out(self, factory, engine):
        change = factory.change(tags={"domain": ["ml", "payments"]})
        factory.deploy(change.id, survived=False)
        report = engine.compute_psr("domain")
        assert group(report, domain="ml").total == 1
        assert group(report, domain="payments").total == 1

    def test_group_by_model(self, factory, engine):
        session = factory.session()
        a = factory.interaction(session.id, model_id="claude-sonnet")
        b = factory.interaction(session.id, model_id="gpt-5")
        both = factory.change(session_ids=[session.id], ai_interaction_ids=[a.id, b.id])
        declared = factory.change(ai_model_ids=["gpt-5"])
        human = factory.change()
        factory.deploy(both.id, survived=True)
        factory.deploy(declared.id, survived=False)
        factory.deploy(human.id, survived=True)

        report = engine.compute_psr("model_id")
        assert group(report, model_id="claude-sonnet").psr == 100.0
        gpt = group(report, model_id="gpt-5")
        assert (gpt.survived, gpt.total) == (1, 2)
        assert group(report, model_id="human").change_ids == [human.id]

    def test_unresolved_interactions_are_not_human(self, factory, engine):
        pending = factory.change(ai_interaction_ids=["ai_notflushedyet"])
        human = factory.change()
        factory.deploy(pending.id, survived=False)
        factory.deploy(human.id, survived=True)

        with pytest.warns(DanglingReferenceWarning):
            report = engine.compute_psr("model_id")
        assert group(report, model_id="human").change_ids == [human.id]
        assert group(report, model_id="human").psr == 100.0
        unresolved = group(report, model_id="unresolved")
        assert (unresolved.survived, unresolved.total) == (0, 1)

    def test_group_by_classification_product(self, factory, engine):
        a = factory.change(change_type=ChangeType.BUGFIX, risk_level=RiskLevel.HIGH)
        b = factory.change(change_type=ChangeType.BUGFIX, risk_level=RiskLevel.LOW)
        factory.deploy(a.id, survived=False)
        factory.deploy(b.id, survived=True)
        report = engine.compute_psr("change_type,risk_level")
        assert report.group_by == ["change_type", "risk_level"]
        assert group(report, change_type="bugfix", risk_level="high").psr == 0.0
        assert group(report, change_type="bugfix", risk_level="low").psr == 100.0

    def test_group_by_strategy_uses_canonical_rollout(self, factory, engine):
        change = factory.change()
        factory.deploy(change.id, at=10, strategy=StrategyType.ALL_AT_ONCE, survived=False)
        factory.deploy(change.id, at=100, strategy=StrategyType.CANARY, survived=True)
        report = engine.compute_psr("strategy")
        assert [g.key for g in report.groups] == [{"strategy": "canary"}]

    def test_window_on_canonical_outcome(self, factory, engine):
        old = factory.change(tags={"domain": "ml"})
        factory.deploy(old.id, at=0, survived=False)
        recent = factory.change(tags={"domain": "ml"})
        factory.deploy(recent.id, at=500, survived=True)

        report = engine.compute_psr("domain", window=TimeWindow(since=ts(300)))
        assert report.excluded_by_window == 1
        assert group(report, domain="ml").change_ids == [recent.id]

    def test_derived_metrics(self, factory, engine, store):
        change = factory.change(tags={"domain": "ml"})
        rollout = factory.rollout(change.id)
        store.append(Outcome(
            created_at=ts(60), change_id=change.id, rollout_id=rollout.id,
            survival=Survival(survived=False, rolled_back=True, time_to_rollback_minutes=12,
                              hotfix_required=True),
            incidents=[Incident(incident_id="INC-1", attributed=True),
                       Incident(incident_id="INC-2", attributed=False)],
        ))
        ml = group(engine.compute_psr("domain"), domain="ml")
        assert ml.rolled_back == 1
        assert ml.hotfix_required == 1
        assert ml.attributed_incidents == 1
        assert ml.mean_time_to_rollback_minutes == 12.0

    def test_snapshot_recorded(self, factory, engine):
        change = factory.change()
        factory.deploy(change.id)
        report = engine.compute_psr("domain")
        assert report.snapshot_seq == factory.store.latest_seq()
        assert report.generated_at

    def test_dangling_references_reported(self, factory, engine):
        change = factory.change(tags={"domain": "ml"}, session_ids=["session_gone"])
        factory.deploy(change.id)
        orphan = factory.outcome("change_gone", "rollout_gone")
        with pytest.warns(DanglingReferenceWarning):
            report = engine.compute_psr("domain")
        assert Reference(change.id, "session_ids", "session_gone") in report.dangling
        assert Reference(orphan.id, "change_id", "change_gone") in report.dangling
        assert group(report, domain="ml").total == 1

    def test_clean_store_does_not_warn(self, factory, engine):
        change = factory.change()
        factory.deploy(change.id)
        with warnings.catch_warnings():
            warnings.simplefilter("error", DanglingReferenceWarning)
            engine.compute_psr("change_type")

    def test_empty_store(self, engine):
        report = engine.compute_psr("domain")
        assert report.groups == []
        assert report.snapshot_seq == 0


class TestCancellation:

    def test_cancelled_token_aborts(self, factory, engine):
        change = factory.change()
        factory.deploy(change.id)
        token = CancelToken()
        token.cancel()
        with pytest.raises(AggregationCancelled, match="cancelled"):
            engine.compute_psr("domain", cancel=token)

    def test_timeout_aborts(self, factory, engine):
        factory.change()
        token = CancelToken(timeout=0.001)
        time.sleep(0.01)
        assert token.cancelled
        with pytest.raises(AggregationCancelled, match="timed out"):
            engine.compute_psr("domain", cancel=token)

    def test_zero_timeout_aborts_immediately(self, factory, engine):
        factory.change()
        token = CancelToken(timeout=0)
        assert token.cancelled
        with pytest.raises(AggregationCancelled, match="timed out"):
            engine.compute_psr("domain", cancel=token)

    def test_no_timeout(self):
        token = CancelToken()
        assert not token.cancelled
        token.check()


class TestIncidents:

    def test_many_to_many_attribution(self, factory, engine):
        a = factory.change()
        b = factory.change()
        rollout = factory.rollout(a.id)
        outcome = factory.outcome(a.id, rollout.id, survived=False, incidents=[
            Incident(incident_id="INC-9", severity=Severity.SEV1, title="Checkout 500s", change_ids=[
                IncidentAttribution(a.id, AttributionRole.PRIMARY),
                IncidentAttribution(b.id, AttributionRole.CONTRIBUTING),
            ]),
        ])

        [for_a] = engine.incidents_for_change(a.id)
        assert (for_a.incident_id, for_a.role, for_a.outcome_id) == ("INC-9", AttributionRole.PRIMARY, outcome.id)
        [for_b] = engine.incidents_for_change(b.id)
        assert for_b.role is AttributionRole.CONTRIBUTING
        assert for_b.severity is Severity.SEV1

    def test_unattributed_incident_defaults_to_outcome_change(self, factory, engine):
        change = factory.change()
        rollout = factory.rollout(change.id)
        factory.outcome(change.id, rollout.id, incidents=[Incident(incident_id="INC-3")])
        [link] = engine.incidents_for_change(change.id)
        assert link.role is AttributionRole.PRIMARY

    def test_incident_naming_other_changes_only(self, factory, engine):
        change = factory.change()
        other = factory.change()
        rollout = factory.rollout(change.id)
        factory.outcome(change.id, rollout.id, incidents=[
            Incident(incident_id="INC-4", change_ids=[IncidentAttribution(other.id)]),
        ])
        assert engine.incidents_for_change(change.id) == []
        assert len(engine.incidents_for_change(other.id)) == 1


class TestDerived:

    def test_interaction_stats(self, factory, engine):
        session = factory.session()
        factory.interaction(session.id, model_id="claude-sonnet", action="accept")
        factory.interaction(session.id, model_id="claude-sonnet", action="partial_accept", fraction=0.5)
        factory.interaction(session.id, model_id="claude-sonnet", action="reject")
        factory.interaction(session.id, model_id="gpt-5")

        claude, gpt = engine.interaction_stats()
        assert claude.model_id == "claude-sonnet"
        assert claude.interactions == 3
        assert claude.acceptance_rate == pytest.approx(2 / 3)
        assert claude.mean_accepted_fraction == pytest.approx(0.5)
        assert claude.actions == {"accept": 1, "partial_accept": 1, "reject": 1}
        assert gpt.interactions == 1
        assert gpt.acceptance_rate is None

    def test_session_activity(self, factory, engine):
        session = factory.session(at=0)
        factory.interaction(session.id, at=3)
        factory.change(at=9, session_ids=[session.id])
        assert engine.session_activity(session.id) == ts(9)

    def test_session_activity_unknown(self, engine):
        with pytest.raises(NotFoundError):
            engine.session_activity("session_nope")
