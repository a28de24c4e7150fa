"""Data models for DIG events, queries and aggregation results."""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

SCHEMA_VERSION = "1.0"


class EventType(str, Enum):
    SESSION = "session"
    AI_INTERACTION = "ai_interaction"
    CHANGE = "change"
    ROLLOUT = "rollout"
    OUTCOME = "outcome"
    LEARNING = "learning"


class IntentSource(str, Enum):
    MANUAL = "manual"
    TICKET = "ticket"
    INCIDENT = "incident"
    AGENT = "agent"


class HumanActionType(str, Enum):
    ACCEPT = "accept"
    PARTIAL_ACCEPT = "partial_accept"
    REJECT = "reject"
    IGNORE = "ignore"
    REGENERATE = "regenerate"


class ChangeType(str, Enum):
    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTORING = "refactoring"
    CONFIG = "config"
    DEPENDENCY = "dependency"
    DOCUMENTATION = "documentation"
    TEST = "test"
    INFRASTRUCTURE = "infrastructure"
    OTHER = "other"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StrategyType(str, Enum):
    ALL_AT_ONCE = "all_at_once"
    PROGRESSIVE = "progressive"
    CANARY = "canary"
    BLUE_GREEN = "blue_green"
    FEATURE_FLAG = "feature_flag"


class Comparison(str, Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"


class RolloutStatus(str, Enum):
    SUCCESS = "success"
    ROLLED_BACK = "rolled_back"
    PAUSED = "paused"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Severity(str, Enum):
    SEV1 = "sev1"
    SEV2 = "sev2"
    SEV3 = "sev3"
    SEV4 = "sev4"


class AttributionRole(str, Enum):
    PRIMARY = "primary"
    CONTRIBUTING = "contributing"


class DecisionType(str, Enum):
    PROCEED = "proceed"
    PAUSE = "pause"
    ROLLBACK = "rollback"
    HOTFIX = "hotfix"
    INVESTIGATE = "investigate"


class RecommendationSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    BLOCK = "block"


def relative_change_pct(baseline: float | None, observed: float | None) -> float | None:
    """Percent change from baseline to observed; None when undefined."""
    if baseline is None or observed is None or baseline == 0:
        return None
    pct = 100.0 * (observed - baseline) / abs(baseline)
    return pct if math.isfinite(pct) else None


# --- Shared header ---

@dataclass(kw_only=True)
class BaseEvent:
    KIND: ClassVar[EventType | None] = None

    id: str = ""
    created_at: str = ""
    version: str = SCHEMA_VERSION
    updated_at: str | None = None
    tags: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    # Unknown top-level keys from newer producers, kept verbatim.
    extra: dict[str, Any] = field(default_factory=dict)
    # Store bookkeeping, never part of the persisted record.
    seq: int | None = field(default=None, compare=False)
    ingested_at: str | None = field(default=None, compare=False)

    @property
    def event_type(self) -> str:
        return self.KIND.value


# --- Session ---

@dataclass
class Developer:
    id: str | None = None
    anonymized_id: str | None = None
    team: str | None = None


@dataclass
class Intent:
    description: str | None = None
    source: IntentSource | None = None
    ticket_ref: str | None = None


@dataclass
class SessionContext:
    repository: str | None = None
    branch: str | None = None
    open_files: list[str] = field(default_factory=list)
    active_tools: list[str] = field(default_factory=list)


@dataclass(kw_only=True)
class Session(BaseEvent):
    KIND: ClassVar[EventType] = EventType.SESSION

    developer: Developer | None = None
    intent: Intent | None = None
    context: SessionContext | None = None


# --- AI interaction ---

@dataclass
class AIRequest:
    content_hash: str | None = None
    summary: str | None = None
    context_files: list[str] = field(default_factory=list)
    token_count: int | None = None


@dataclass
class AIResponse:
    model_id: str
    provider: str | None = None
    content_hash: str | None = None
    summary: str | None = None
    tokens_generated: int | None = None
    latency_ms: float | None = None
    finish_reason: str | None = None


@dataclass
class HumanAction:
    action: HumanActionType
    accepted_fraction: float | None = None
    modification_note: str | None = None
    decision_latency_ms: float | None = None


@dataclass(kw_only=True)
class AIInteraction(BaseEvent):
    KIND: ClassVar[EventType] = EventType.AI_INTERACTION

    session_id: str
    response: AIResponse
    request: AIRequest | None = None
    human_action: HumanAction | None = None


# --- Change ---

@dataclass
class PullRequest:
    number: int | None = None
    title: str | None = None
    url: str | None = None
    state: str | None = None


@dataclass
class SourceControl:
    repository: str
    commit_sha: str
    provider: str | None = None
    pr: PullRequest | None = None
    branch: str | None = None
    base_branch: str | None = None


@dataclass
class FileDiff:
    path: str
    lines_added: int = 0
    lines_removed: int = 0


@dataclass
class DiffStats:
    files_changed: int | None = None
    lines_added: int | None = None
    lines_removed: int | None = None
    files: list[FileDiff] = field(default_factory=list)


@dataclass
class Authorship:
    human_authored_pct: float | None = None
    ai_authored_pct: float | None = None
    ai_model_ids: list[str] = field(default_factory=list)


@dataclass
class Classification:
    change_type: ChangeType | None = None
    risk_level: RiskLevel | None = None
    risk_signals: list[str] = field(default_factory=list)
    blast_radius: str | None = None


@dataclass
class Review:
    reviewers: list[str] = field(default_factory=list)
    approvals: int | None = None
    comments: int | None = None
    time_to_merge_minutes: float | None = None


@dataclass(kw_only=True)
class Change(BaseEvent):
    KIND: ClassVar[EventType] = EventType.CHANGE

    source_control: SourceControl
    session_ids: list[str] = field(default_factory=list)
    ai_interaction_ids: list[str] = field(default_factory=list)
    diff: DiffStats | None = None
    authorship: Authorship | None = None
    classification: Classification = field(default_factory=Classification)
    review: Review | None = None


# --- Rollout ---

@dataclass
class Deployment:
    environment: str
    target: str | None = None
    tool: str | None = None
    deploy_id: str | None = None
    artifact_version: str | None = None


@dataclass
class RolloutStage:
    percentage: float
    duration_minutes: float | None = None


@dataclass
class RolloutStrategy:
    type: StrategyType
    stages: list[RolloutStage] = field(default_factory=list)
    auto_promote: bool | None = None
    auto_rollback: bool | None = None


@dataclass
class GuardrailMetric:
    metric: str
    threshold: float
    comparison: Comparison


@dataclass
class Guardrails:
    metrics: list[GuardrailMetric] = field(default_factory=list)
    alert_routes: list[str] = field(default_factory=list)
    requires_manual_approval: bool | None = None


@dataclass
class ProgressionEntry:
    timestamp: str
    stage_percentage: float
    status: str
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass(kw_only=True)
class Rollout(BaseEvent):
    KIND: ClassVar[EventType] = EventType.ROLLOUT

    change_id: str
    deployment: Deployment
    final_status: RolloutStatus
    strategy: RolloutStrategy | None = None
    guardrails: Guardrails | None = None
    progression: list[ProgressionEntry] = field(default_factory=list)


# --- Outcome ---

@dataclass
class ObservationWindow:
    start: str | None = None
    end: str | None = None
    duration_hours: float | None = None


@dataclass
class TelemetryMetric:
    metric: str
    baseline: float | None = None
    observed: float | None = None
    change_pct: float | None = None
    significant: bool | None = None

    def __post_init__(self):
        if self.baseline is None or self.baseline == 0:
            self.change_pct = None
        elif self.change_pct is None:
            self.change_pct = relative_change_pct(self.baseline, self.observed)


@dataclass
class Telemetry:
    baseline_period: str | None = None
    metrics: list[TelemetryMetric] = field(default_factory=list)


@dataclass
class IncidentAttribution:
    change_id: str
    role: AttributionRole = AttributionRole.PRIMARY


@dataclass
class Incident:
    incident_id: str
    severity: Severity | None = None
    title: str | None = None
    detected_at: str | None = None
    resolved_at: str | None = None
    duration_minutes: float | None = None
    attributed: bool | None = None
    root_cause: str | None = None
    mitigation: str | None = None
    link: str | None = None
    change_ids: list[IncidentAttribution] = field(default_factory=list)


@dataclass
class OutcomeDecision:
    timestamp: str
    decision: DecisionType
    actor: str | None = None
    rationale: str | None = None


@dataclass
class Survival:
    survived: bool | None = None
    rolled_back: bool | None = None
    time_to_rollback_minutes: float | None = None
    hotfix_required: bool | None = None


@dataclass(kw_only=True)
class Outcome(BaseEvent):
    KIND: ClassVar[EventType] = EventType.OUTCOME

    change_id: str
    rollout_id: str
    observation_window: ObservationWindow | None = None
    telemetry: Telemetry | None = None
    incidents: list[Incident] = field(default_factory=list)
    decisions: list[OutcomeDecision] = field(default_factory=list)
    survival: Survival = field(default_factory=Survival)


# --- Learning ---

SUPERSEDES_KEY = "dig.supersedes"


@dataclass
class DerivedFrom:
    outcome_ids: list[str] = field(default_factory=list)
    change_ids: list[str] = field(default_factory=list)
    sample_size: int | None = None
    period_start: str | None = None
    period_end: str | None = None


@dataclass
class Pattern:
    name: str
    confidence: float
    conditions: dict[str, Any] = field(default_factory=dict)
    description: str | None = None
    significance: float | None = None


@dataclass
class Recommendation:
    severity: RecommendationSeverity = RecommendationSeverity.INFO
    trigger_conditions: list[str] = field(default_factory=list)
    action: str | None = None
    message: str | None = None


@dataclass
class ModelInsight:
    model_id: str
    survival_rate: float | None = None
    sample_size: int | None = None
    delta_vs_baseline: float | None = None


@dataclass(kw_only=True)
class Learning(BaseEvent):
    KIND: ClassVar[EventType] = EventType.LEARNING

    pattern: Pattern
    derived_from: DerivedFrom = field(default_factory=DerivedFrom)
    recommendation: Recommendation | None = None
    model_insights: list[ModelInsight] = field(default_factory=list)

    @property
    def supersedes(self) -> str | None:
        return self.metadata.get(SUPERSEDES_KEY)


# --- Custom (namespaced) events ---

@dataclass(kw_only=True)
class CustomEvent(BaseEvent):
    """Opaque pass-through record for namespaced, non-core event types."""

    custom_type: str
    change_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        return self.custom_type


EVENT_CLASSES: dict[EventType, type[BaseEvent]] = {
    EventType.SESSION: Session,
    EventType.AI_INTERACTION: AIInteraction,
    EventType.CHANGE: Change,
    EventType.ROLLOUT: Rollout,
    EventType.OUTCOME: Outcome,
    EventType.LEARNING: Learning,
}


# --- Queries ---

@dataclass
class TimeWindow:
    since: str | None = None
    until: str | None = None


@dataclass
class EventFilter:
    tags: dict[str, str] = field(default_factory=dict)
    window: TimeWindow | None = None
    change_id: str | None = None
    max_seq: int | None = None
    limit: int | None = None
    where: Any = None  # optional callable(event) -> bool


# --- Linking and results ---

@dataclass(frozen=True)
class Reference:
    source_id: str
    field: str
    target_id: str


@dataclass
class BatchFailure:
    index: int
    event_id: str | None
    error: str
    duplicate: bool = False


@dataclass
class BatchResult:
    accepted: list[BaseEvent] = field(default_factory=list)
    rejected: list[BatchFailure] = field(default_factory=list)


@dataclass
class Trace:
    change_id: str
    change: Change | None = None
    sessions: list[Session] = field(default_factory=list)
    interactions: list[AIInteraction] = field(default_factory=list)
    rollouts: list[Rollout] = field(default_factory=list)
    outcomes: list[Outcome] = field(default_factory=list)
    learnings: list[Learning] = field(default_factory=list)
    other: list[BaseEvent] = field(default_factory=list)
    canonical_rollout_id: str | None = None
    canonical_outcome_id: str | None = None
    dangling: list[Reference] = field(default_factory=list)


PSR_OK = "ok"
INSUFFICIENT_SAMPLE = "insufficient_sample"


@dataclass
class PSRGroup:
    key: dict[str, str | None]
    survived: int = 0
    total: int = 0
    unlabeled: int = 0
    psr: float | None = None
    status: str = PSR_OK
    rolled_back: int = 0
    hotfix_required: int = 0
    attributed_incidents: int = 0
    mean_time_to_rollback_minutes: float | None = None
    change_ids: list[str] = field(default_factory=list)


@dataclass
class PSRReport:
    group_by: list[str]
    min_sample_size: int
    snapshot_seq: int
    generated_at: str
    window: TimeWindow | None = None
    groups: list[PSRGroup] = field(default_factory=list)
    undeployed_changes: list[str] = field(default_factory=list)
    unlabeled_outcomes: list[str] = field(default_factory=list)
    excluded_by_window: int = 0
    dangling: list[Reference] = field(default_factory=list)


@dataclass
class InteractionStats:
    model_id: str
    interactions: int = 0
    with_action: int = 0
    actions: dict[str, int] = field(default_factory=dict)
    acceptance_rate: float | None = None
    mean_accepted_fraction: float | None = None


@dataclass
class IncidentLink:
    incident_id: str
    outcome_id: str
    change_id: str
    role: AttributionRole
    severity: Severity | None = None
    attributed: bool | None = None
    title: str | None = None


@dataclass
class LearningMatch:
    learning_id: str
    pattern_name: str
    confidence: float
    created_at: str
    matched_conditions: dict[str, Any] = field(default_factory=dict)
    severity: RecommendationSeverity | None = None
    action: str | None = None
    message: str | None = None
    hints: list[str] = field(default_factory=list)
