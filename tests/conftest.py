"""Shared fixtures for DIG tests."""

from datetime import datetime, timedelta, timezone

import pytest

from dig.models import (
    AIInteraction,
    AIResponse,
    Authorship,
    Change,
    ChangeType,
    Classification,
    Deployment,
    HumanAction,
    Intent,
    IntentSource,
    Learning,
    Outcome,
    Pattern,
    Recommendation,
    RiskLevel,
    Rollout,
    RolloutStatus,
    RolloutStrategy,
    Session,
    SourceControl,
    StrategyType,
    Survival,
)
from dig.store import EventStore

T0 = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


def ts(minutes: int = 0) -> str:
    """ISO timestamp `minutes` after a fixed base time."""
    return (T0 + timedelta(minutes=minutes)).isoformat()


class EventFactory:
    """Builds and appends events with sensible defaults."""

    def __init__(self, store: EventStore):
        self.store = store

    def session(self, id="", at=0, description="Add retry to payment client", **kw) -> Session:
        return self.store.append(Session(
            id=id, created_at=ts(at),
            intent=Intent(description=description, source=IntentSource.TICKET),
            **kw,
        ))

    def interaction(self, session_id, id="", at=1, model_id="claude-sonnet",
                    action=None, fraction=None, **kw) -> AIInteraction:
        return self.store.append(AIInteraction(
            id=id, created_at=ts(at), session_id=session_id,
            response=AIResponse(model_id=model_id, provider="anthropic"),
            human_action=HumanAction(action=action, accepted_fraction=fraction) if action else None,
            **kw,
        ))

    def change(self, id="", at=5, change_type=ChangeType.FEATURE, risk_level=RiskLevel.LOW,
               tags=None, session_ids=(), ai_interaction_ids=(), ai_model_ids=None,
               **kw) -> Change:
        return self.store.append(Change(
            id=id, created_at=ts(at), tags=tags or {},
            source_control=SourceControl(repository="acme/payments", commit_sha="a1b2c3d4e5f6"),
            session_ids=list(session_ids),
            ai_interaction_ids=list(ai_interaction_ids),
            authorship=Authorship(ai_model_ids=ai_model_ids) if ai_model_ids else None,
            classification=Classification(change_type=change_type, risk_level=risk_level),
            **kw,
        ))

    def rollout(self, change_id, id="", at=10, environment="production",
                strategy=StrategyType.CANARY, status=RolloutStatus.SUCCESS, **kw) -> Rollout:
        return self.store.append(Rollout(
            id=id, created_at=ts(at), change_id=change_id,
            deployment=Deployment(environment=environment),
            strategy=RolloutStrategy(type=strategy),
            final_status=status,
            **kw,
        ))

    def outcome(self, change_id, rollout_id, id="", at=60, survived=True,
                rolled_back=None, incidents=(), **kw) -> Outcome:
        return self.store.append(Outcome(
            id=id, created_at=ts(at), change_id=change_id, rollout_id=rollout_id,
            survival=Survival(survived=survived, rolled_back=rolled_back),
            incidents=list(incidents),
            **kw,
        ))

    def deploy(self, change_id, survived=True, at=10, environment="production",
               strategy=StrategyType.CANARY, incidents=()) -> tuple[Rollout, Outcome]:
        """A rollout and its observed outcome."""
        rollout = self.rollout(change_id, at=at, environment=environment, strategy=strategy)
        outcome = self.outcome(change_id, rollout.id, at=at + 50, survived=survived,
                               incidents=incidents)
        return rollout, outcome

    def learning(self, conditions, confidence=0.8, id="", at=120, name="pattern",
                 trigger_conditions=(), supersedes=None, message=None) -> Learning:
        return self.store.append(Learning(
            id=id, created_at=ts(at),
            metadata={"dig.supersedes": supersedes} if supersedes else {},
            pattern=Pattern(name=name, confidence=confidence, conditions=conditions),
            recommendation=Recommendation(
                trigger_conditions=list(trigger_conditions), message=message,
            ),
        ))


@pytest.fixture
def store(tmp_path):
    """Empty initialized event store."""
    s = EventStore(tmp_path / "events.db")
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def factory(store):
    return EventFactory(store)

