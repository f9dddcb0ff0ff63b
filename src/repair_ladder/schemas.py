"""Pydantic models for structured data throughout the escalation loop."""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class PipelineMode(str, Enum):
    """Phase pipeline a tier runs for each attempt."""

    RESTRICTED = "restricted"  # generate + test
    FULL = "full"  # gather + generate + review + test (+ adversarial)


class AgentRole(str, Enum):
    """Collaborator roles invoked by the iteration pipeline."""

    GATHER = "gather"
    GENERATE = "generate"
    REVIEW = "review"
    ADVERSARIAL = "adversarial"


class Phase(str, Enum):
    """Phases of a single attempt."""

    GATHER = "gather"
    GENERATE = "generate"
    REVIEW = "review"
    TEST = "test"
    ADVERSARIAL = "adversarial"


class TestVerdict(str, Enum):
    """Verdict of a test run (and of the attempt that produced it)."""
    __test__ = False  # Prevent pytest from collecting this enum as a test class.

    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"


class SessionOutcome(str, Enum):
    """Terminal outcome of an escalation session."""

    SUCCESS = "success"
    ALL_TIERS_EXHAUSTED = "all-tiers-exhausted"
    BUDGET_EXHAUSTED = "budget-exhausted"
    ABORTED_BY_CIRCUIT_BREAKER = "aborted-by-circuit-breaker"
    VALIDATION_FAILED = "validation-failed"


IN_PROGRESS = "in-progress"
"""Outcome column value persisted while a session is still running."""


class TierExitReason(str, Enum):
    """Why a single tier stopped running attempts."""

    SUCCESS = "success"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    BUDGET_EXHAUSTED = "budget_exhausted"
    CIRCUIT_BREAKER = "circuit_breaker"


# ---------------------------------------------------------------------------
# Ladder definition
# ---------------------------------------------------------------------------

class TierModels(BaseModel):
    """Model identifier assigned to each agent role within a tier."""

    model_config = ConfigDict(frozen=True)

    gather: str | None = None
    generate: str | None = None
    review: str | None = None
    adversarial: str | None = None

    def for_role(self, role: AgentRole) -> str | None:
        """Return the model assigned to *role*, or ``None`` when unassigned."""
        value = getattr(self, role.value)
        if value is None or not str(value).strip():
            return None
        return str(value).strip()


REQUIRED_ROLES: dict[PipelineMode, tuple[AgentRole, ...]] = {
    PipelineMode.RESTRICTED: (AgentRole.GENERATE,),
    PipelineMode.FULL: (AgentRole.GATHER, AgentRole.GENERATE, AgentRole.REVIEW),
}

MAX_TIER_ATTEMPTS = 100


class TierDefinition(BaseModel):
    """One rung of the escalation ladder.

    ``max_attempts`` is a soft, tier-local cap: the engine stops starting new
    attempts in this tier once it is reached. Global spend is governed by the
    shared :class:`~repair_ladder.budget.Budget`, never by a tier.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    mode: PipelineMode = PipelineMode.RESTRICTED
    models: TierModels = Field(default_factory=TierModels)
    max_attempts: int = Field(default=5, ge=1, le=MAX_TIER_ATTEMPTS)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("tier name is required")
        return cleaned

    @model_validator(mode="after")
    def _require_role_models(self) -> TierDefinition:
        """Every role the mode's pipeline invokes must have a model."""
        missing = [
            role.value for role in REQUIRED_ROLES[self.mode] if self.models.for_role(role) is None
        ]
        if missing:
            raise ValueError(
                f"{self.mode.value} mode requires a model for: {', '.join(missing)}"
            )
        return self

    def model_for(self, role: AgentRole) -> str | None:
        return self.models.for_role(role)

    @property
    def phases(self) -> tuple[Phase, ...]:
        """Phases an attempt in this tier runs, in order (adversarial is optional)."""
        if self.mode == PipelineMode.RESTRICTED:
            return (Phase.GENERATE, Phase.TEST)
        phases = (Phase.GATHER, Phase.GENERATE, Phase.REVIEW, Phase.TEST)
        if self.model_for(AgentRole.ADVERSARIAL) is not None:
            phases += (Phase.ADVERSARIAL,)
        return phases


# ---------------------------------------------------------------------------
# Collaborator results
# ---------------------------------------------------------------------------

class AgentOutput(BaseModel):
    """Result of a single agent invocation.

    ``approved`` carries the verdict of judging roles (review, adversarial);
    it is ``None`` for roles that produce content only.
    """

    model_config = ConfigDict(frozen=True)

    output: str = ""
    tokens_used: int = 0
    cost_usd: float = 0.0
    approved: bool | None = None


class TestRunResult(BaseModel):
    """Result of running the objective's test command."""
    __test__ = False

    model_config = ConfigDict(frozen=True)

    verdict: TestVerdict = TestVerdict.ERRORED
    failing_tests: tuple[str, ...] = ()
    error_messages: tuple[str, ...] = ()
    summary: str = ""
    exit_code: int = -1
    duration_seconds: float = 0.0

    @property
    def passed(self) -> bool:
        return self.verdict == TestVerdict.PASSED


# ---------------------------------------------------------------------------
# Attempt / session records
# ---------------------------------------------------------------------------

class AttemptRecord(BaseModel):
    """Immutable record of one pass through the iteration pipeline."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    tier_index: int
    tier_name: str
    tier_mode: PipelineMode = PipelineMode.RESTRICTED
    models: TierModels = Field(default_factory=TierModels)
    attempt_number: int
    change_description: str = ""
    verdict: TestVerdict = TestVerdict.ERRORED
    failing_tests: tuple[str, ...] = ()
    error_messages: tuple[str, ...] = ()
    cost_usd: float = 0.0
    tokens_used: int = 0
    duration_seconds: float = 0.0
    completed_at: str = Field(default_factory=utc_now_iso)
    failed_phase: Phase | None = None
    review_approved: bool | None = None
    review_notes: str = ""
    adversarial_passed: bool | None = None
    adversarial_notes: str = ""

    @property
    def passed(self) -> bool:
        return self.verdict == TestVerdict.PASSED


class Session(BaseModel):
    """One end-to-end run against a single objective."""

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    objective: str
    working_directory: str
    test_command: str
    started_at: str = Field(default_factory=utc_now_iso)
    outcome: SessionOutcome | None = None


class SessionSummary(BaseModel):
    """Persisted per-session row."""

    session_id: str
    objective: str
    working_directory: str
    test_command: str
    started_at: str
    finished_at: str | None = None
    outcome: str = IN_PROGRESS
    resolved_tier_name: str | None = None
    resolved_attempt: int | None = None

    @classmethod
    def for_session(cls, session: Session) -> SessionSummary:
        return cls(
            session_id=session.session_id,
            objective=session.objective,
            working_directory=session.working_directory,
            test_command=session.test_command,
            started_at=session.started_at,
        )


class TierRunResult(BaseModel):
    """Per-tier breakdown of a finished session."""

    tier_index: int
    tier_name: str
    mode: PipelineMode
    exit_reason: TierExitReason
    records: list[AttemptRecord] = Field(default_factory=list)

    @property
    def attempts(self) -> int:
        return len(self.records)

    @property
    def cost_usd(self) -> float:
        return sum(r.cost_usd for r in self.records)

    @property
    def succeeded(self) -> bool:
        return self.exit_reason == TierExitReason.SUCCESS


class BreakerTrip(BaseModel):
    """Details of a circuit-breaker trip."""

    signature: str
    count: int
    threshold: int
    attempts: list[int] = Field(default_factory=list)


class BudgetSnapshot(BaseModel):
    """Immutable view of the budget ledger at a point in time."""

    model_config = ConfigDict(frozen=True)

    max_cost_usd: float
    spent_usd: float
    max_duration_seconds: float
    elapsed_seconds: float
    max_iterations: int | None = None
    iterations: int = 0


class SessionResult(BaseModel):
    """Final result of an escalation session."""

    session: Session
    outcome: SessionOutcome
    reason: str = ""
    tier_results: list[TierRunResult] = Field(default_factory=list)
    escalations: int = 0
    resolved_tier_name: str | None = None
    resolved_attempt: int | None = None
    breaker_trip: BreakerTrip | None = None
    budget_constraint: str | None = None
    validation_errors: list[str] = Field(default_factory=list)
    budget: BudgetSnapshot | None = None
    finished_at: str = Field(default_factory=utc_now_iso)

    @property
    def records(self) -> list[AttemptRecord]:
        return [rec for tier in self.tier_results for rec in tier.records]

    @property
    def success(self) -> bool:
        return self.outcome == SessionOutcome.SUCCESS
