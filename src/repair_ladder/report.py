"""Completion report for a finished escalation session."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from repair_ladder.accumulator import distinct_errors
from repair_ladder.budget import CONSTRAINT_COST, CONSTRAINT_DURATION, CONSTRAINT_ITERATIONS
from repair_ladder.schemas import SessionOutcome, SessionResult, TierExitReason, utc_now_iso

logger = logging.getLogger(__name__)

_RULE_WIDTH = 72


class TierReport(BaseModel):
    """Per-tier line of the completion report."""

    tier_index: int
    tier_name: str
    mode: str
    exit_reason: str
    attempts: int
    passed: int
    cost_usd: float
    duration_seconds: float
    unique_errors: list[str] = Field(default_factory=list)


class CompletionReport(BaseModel):
    """Structured summary of a session, ready for display or JSON export."""

    session_id: str
    objective: str
    outcome: SessionOutcome
    reason: str = ""
    escalation_path: str = ""
    escalations: int = 0
    resolved_tier_name: str | None = None
    resolved_attempt: int | None = None
    tiers: list[TierReport] = Field(default_factory=list)
    total_attempts: int = 0
    total_cost_usd: float = 0.0
    total_duration_seconds: float = 0.0
    cost_per_attempt: float = 0.0
    utilization: dict[str, float] = Field(default_factory=dict)
    validation_errors: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    generated_at: str = Field(default_factory=utc_now_iso)

    @property
    def success(self) -> bool:
        return self.outcome == SessionOutcome.SUCCESS


def recommended_next_steps(outcome: SessionOutcome, constraint: str | None = None) -> list[str]:
    """Suggested follow-ups for a terminal outcome."""
    if outcome == SessionOutcome.SUCCESS:
        return [
            "Review the generated change and commit it",
            "Run the full test suite to verify",
        ]
    if outcome == SessionOutcome.BUDGET_EXHAUSTED:
        steps = {
            CONSTRAINT_COST: [
                "Increase global_limits.max_total_cost_usd",
                "Or move cheaper tiers earlier in the ladder",
            ],
            CONSTRAINT_DURATION: [
                "Increase global_limits.max_total_duration_minutes",
                "Or simplify the objective",
            ],
            CONSTRAINT_ITERATIONS: [
                "Increase global_limits.max_total_iterations",
                "Or review test failures for systemic issues",
            ],
        }.get(constraint or "", [])
        return [*steps, "Review progress so far; partial progress may be acceptable"]
    if outcome == SessionOutcome.ABORTED_BY_CIRCUIT_BREAKER:
        return [
            "The same failure kept repeating; manual intervention needed",
            "Check that the test expectations are correct",
            "Verify dependencies and environment",
            "Consider adjusting the objective or providing more context",
        ]
    if outcome == SessionOutcome.ALL_TIERS_EXHAUSTED:
        return [
            "Every tier ran out of attempts without passing tests",
            "Review the per-tier errors for patterns",
            "Consider adding a stronger tier or raising max_attempts",
        ]
    return [
        "Fix the tier configuration errors listed above",
        "Validate the config before running again",
    ]


def build_completion_report(result: SessionResult) -> CompletionReport:
    """Summarise *result* into a :class:`CompletionReport`."""
    tiers: list[TierReport] = []
    for tier in result.tier_results:
        unique = (
            []
            if tier.exit_reason == TierExitReason.SUCCESS
            else distinct_errors(m for r in tier.records for m in r.error_messages)
        )
        tiers.append(
            TierReport(
                tier_index=tier.tier_index,
                tier_name=tier.tier_name,
                mode=tier.mode.value,
                exit_reason=tier.exit_reason.value,
                attempts=tier.attempts,
                passed=sum(1 for r in tier.records if r.passed),
                cost_usd=tier.cost_usd,
                duration_seconds=sum(r.duration_seconds for r in tier.records),
                unique_errors=unique,
            )
        )

    records = result.records
    total_cost = sum(r.cost_usd for r in records)
    utilization: dict[str, float] = {}
    if result.budget is not None:
        snap = result.budget
        utilization[CONSTRAINT_COST] = _percent(snap.spent_usd, snap.max_cost_usd)
        utilization[CONSTRAINT_DURATION] = _percent(
            snap.elapsed_seconds, snap.max_duration_seconds
        )
        if snap.max_iterations is not None:
            utilization[CONSTRAINT_ITERATIONS] = _percent(snap.iterations, snap.max_iterations)

    report = CompletionReport(
        session_id=result.session.session_id,
        objective=result.session.objective,
        outcome=result.outcome,
        reason=result.reason,
        escalation_path=" -> ".join(t.tier_name for t in result.tier_results),
        escalations=result.escalations,
        resolved_tier_name=result.resolved_tier_name,
        resolved_attempt=result.resolved_attempt,
        tiers=tiers,
        total_attempts=len(records),
        total_cost_usd=total_cost,
        total_duration_seconds=sum(r.duration_seconds for r in records),
        cost_per_attempt=(total_cost / len(records)) if records else 0.0,
        utilization=utilization,
        validation_errors=list(result.validation_errors),
        next_steps=recommended_next_steps(result.outcome, result.budget_constraint),
    )
    logger.debug(
        "Completion report built for %s: %s, %d attempt(s)",
        report.session_id,
        report.outcome.value,
        report.total_attempts,
    )
    return report


def format_completion_report(report: CompletionReport) -> str:
    """Render *report* as plain text."""
    heavy = "=" * _RULE_WIDTH
    light = "-" * _RULE_WIDTH
    lines = [
        heavy,
        "Escalation Session Complete",
        heavy,
        f"Session:   {report.session_id}",
        f"Objective: {report.objective}",
        f"Outcome:   {report.outcome.value}",
    ]
    if report.reason:
        lines.append(f"Reason:    {report.reason}")
    if report.escalation_path:
        lines.append(f"Path:      {report.escalation_path} ({report.escalations} escalation(s))")
    if report.resolved_tier_name:
        lines.append(
            f"Resolved:  tier '{report.resolved_tier_name}' attempt {report.resolved_attempt}"
        )

    if report.validation_errors:
        lines += ["", light, "Validation Errors", light]
        lines += [f"  - {issue}" for issue in report.validation_errors]

    if report.tiers:
        lines += ["", light, "Tier Breakdown", light]
        for tier in report.tiers:
            lines.append(
                f"  {tier.tier_index + 1}. {tier.tier_name} [{tier.mode}] "
                f"{tier.attempts} attempt(s), ${tier.cost_usd:.2f}, "
                f"{tier.duration_seconds:.1f}s -> {tier.exit_reason}"
            )
            for error in tier.unique_errors[:5]:
                lines.append(f"       ! {error[:120]}")

    lines += [
        "",
        light,
        "Budget",
        light,
        f"  Attempts:   {report.total_attempts}",
        f"  Total cost: ${report.total_cost_usd:.2f} (${report.cost_per_attempt:.2f}/attempt)",
        f"  Duration:   {report.total_duration_seconds / 60:.1f} min",
    ]
    for name, percent in report.utilization.items():
        lines.append(f"  {name.capitalize()} used: {percent:.0f}%")

    lines += ["", light, "Recommended Next Steps", light]
    lines += [f"  * {step}" for step in report.next_steps]
    lines.append(heavy)
    return "\n".join(lines)


def _percent(used: float, cap: float) -> float:
    if cap <= 0:
        return 100.0
    return used / cap * 100.0
