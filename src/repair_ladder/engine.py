"""Tier escalation engine.

The :class:`TierEscalationEngine` drives one session through an ordered
ladder of tiers. Within a tier it runs attempts via the
:class:`~repair_ladder.orchestrator.IterationOrchestrator` until one of:

- an attempt's tests pass (``success``; later tiers never run)
- the tier's attempt cap is reached (escalate to the next tier)
- the shared budget is exhausted (``budget-exhausted``)
- the circuit breaker trips (``aborted-by-circuit-breaker``)

Running off the end of the ladder yields ``all-tiers-exhausted``. The ladder
is validated before anything else; an invalid ladder yields
``validation-failed`` with no attempts and a single session-marker write.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

from repair_ladder.accumulator import DEFAULT_MAX_CHARS, build_escalation_bundle
from repair_ladder.agents import AgentFactory
from repair_ladder.audit import AuditLog, AuditSink, NullAuditSink, SqliteAuditSink
from repair_ladder.budget import Budget
from repair_ladder.circuit_breaker import (
    SOURCE_AGENT,
    SOURCE_TEST,
    UNKNOWN_SIGNATURE,
    BreakerVerdict,
    CircuitBreaker,
)
from repair_ladder.config import EscalationConfig, validate_ladder
from repair_ladder.context import AttemptContext
from repair_ladder.orchestrator import IterationOrchestrator
from repair_ladder.runners import TestRunner
from repair_ladder.schemas import (
    AttemptRecord,
    Session,
    SessionOutcome,
    SessionResult,
    SessionSummary,
    TestVerdict,
    TierDefinition,
    TierExitReason,
    TierRunResult,
)

logger = logging.getLogger(__name__)

_EXIT_TO_OUTCOME: dict[TierExitReason, SessionOutcome] = {
    TierExitReason.SUCCESS: SessionOutcome.SUCCESS,
    TierExitReason.BUDGET_EXHAUSTED: SessionOutcome.BUDGET_EXHAUSTED,
    TierExitReason.CIRCUIT_BREAKER: SessionOutcome.ABORTED_BY_CIRCUIT_BREAKER,
}


def failure_signature(record: AttemptRecord) -> str:
    """Raw failure text of a failed attempt, as fed to the circuit breaker."""
    messages = [m.strip() for m in record.error_messages if m and m.strip()]
    if messages:
        return " | ".join(messages)
    if record.failing_tests:
        return "failing: " + ", ".join(sorted(record.failing_tests))
    return UNKNOWN_SIGNATURE


class TierEscalationEngine:
    """Runs a session across an ordered ladder of tiers.

    Parameters
    ----------
    orchestrator:
        Runs single attempts.
    audit:
        Best-effort audit trail; defaults to a log that discards everything.
    breaker_factory:
        Builds the session's circuit breaker.
    bundle_max_chars:
        Character budget of the escalation bundle.
    clock:
        Monotonic time source for the session's wall-clock age, injectable
        for tests.
    """

    def __init__(
        self,
        orchestrator: IterationOrchestrator,
        *,
        audit: AuditLog | None = None,
        breaker_factory: Callable[[], CircuitBreaker] = CircuitBreaker,
        bundle_max_chars: int = DEFAULT_MAX_CHARS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.orchestrator = orchestrator
        self.audit = audit or AuditLog()
        self.breaker_factory = breaker_factory
        self.bundle_max_chars = bundle_max_chars
        self.clock = clock

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(
        self,
        session: Session,
        tiers: Iterable[TierDefinition | Mapping[str, Any]],
        budget: Budget,
    ) -> SessionResult:
        """Execute the session and return its result. Never raises for
        collaborator, persistence or validation problems."""
        definitions, issues = validate_ladder(tiers)
        if issues:
            return self._validation_failed(session, issues, budget)

        logger.info(
            "Starting session %s: objective=%r, tiers=[%s], cost cap=$%.2f, duration cap=%.0fs",
            session.session_id,
            session.objective,
            ", ".join(t.name for t in definitions),
            budget.max_cost_usd,
            budget.max_duration_seconds,
        )
        started = self.clock()
        baseline = budget.elapsed_seconds

        def charge_wall_clock() -> None:
            budget.sync_elapsed(baseline + self.clock() - started)

        self.audit.upsert_session(SessionSummary.for_session(session))

        breaker = self.breaker_factory()
        base = AttemptContext.for_session(session)
        all_records: list[AttemptRecord] = []
        tier_results: list[TierRunResult] = []
        warned: set[str] = set()
        trip: BreakerVerdict | None = None
        exhausted_constraint: str | None = None

        for index, tier in enumerate(definitions):
            if index > 0:
                bundle = build_escalation_bundle(all_records, max_chars=self.bundle_max_chars)
                base = base.with_escalation_bundle(bundle.text)
                logger.info(
                    "Escalating from tier '%s' to '%s' after %d attempt(s) (bundle %d chars%s)",
                    definitions[index - 1].name,
                    tier.name,
                    tier_results[-1].attempts,
                    len(bundle.text),
                    ", truncated" if bundle.truncated else "",
                )

            logger.info(
                "──── Tier %d / %d: %s (mode=%s, max_attempts=%d) ────",
                index + 1,
                len(definitions),
                tier.name,
                tier.mode.value,
                tier.max_attempts,
            )
            records: list[AttemptRecord] = []
            exit_reason = TierExitReason.ATTEMPTS_EXHAUSTED
            prior = all_records[-1] if all_records else None

            while True:
                charge_wall_clock()
                constraint = budget.exhausted_constraint() or budget.would_overrun()
                if constraint is not None:
                    exhausted_constraint = constraint
                    exit_reason = TierExitReason.BUDGET_EXHAUSTED
                    logger.warning(
                        "Budget exhausted (%s) before attempt %d of tier '%s'",
                        constraint,
                        len(records) + 1,
                        tier.name,
                    )
                    break
                attempt_number = len(records) + 1
                if attempt_number > tier.max_attempts:
                    logger.info(
                        "Tier '%s' exhausted its %d attempt(s)", tier.name, tier.max_attempts
                    )
                    break

                context = base.next_attempt(tier, index, attempt_number, prior)
                outcome = self.orchestrator.run_attempt(context, tier, budget)
                record = outcome.record
                records.append(record)
                all_records.append(record)
                prior = record
                self.audit.append(record)
                charge_wall_clock()
                self._warn_budget(budget, warned)

                if record.passed:
                    exit_reason = TierExitReason.SUCCESS
                    logger.info(
                        "Tier '%s' succeeded on attempt %d", tier.name, record.attempt_number
                    )
                    break

                source = SOURCE_AGENT if record.verdict == TestVerdict.ERRORED else SOURCE_TEST
                verdict = breaker.record_failure(
                    failure_signature(record), budget.iterations, source=source
                )
                if verdict.tripped:
                    trip = verdict
                    exit_reason = TierExitReason.CIRCUIT_BREAKER
                    break

            tier_results.append(
                TierRunResult(
                    tier_index=index,
                    tier_name=tier.name,
                    mode=tier.mode,
                    exit_reason=exit_reason,
                    records=records,
                )
            )
            if exit_reason != TierExitReason.ATTEMPTS_EXHAUSTED:
                break

        charge_wall_clock()
        return self._finish(session, tier_results, budget, trip, exhausted_constraint)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finish(
        self,
        session: Session,
        tier_results: list[TierRunResult],
        budget: Budget,
        trip: BreakerVerdict | None,
        exhausted_constraint: str | None,
    ) -> SessionResult:
        last = tier_results[-1]
        outcome = _EXIT_TO_OUTCOME.get(last.exit_reason, SessionOutcome.ALL_TIERS_EXHAUSTED)
        resolved = last.records[-1] if outcome == SessionOutcome.SUCCESS else None

        if outcome == SessionOutcome.SUCCESS and resolved is not None:
            reason = f"Tests passed on tier '{last.tier_name}' attempt {resolved.attempt_number}"
        elif outcome == SessionOutcome.BUDGET_EXHAUSTED:
            reason = f"Budget exhausted ({exhausted_constraint or 'unknown'})"
        elif outcome == SessionOutcome.ABORTED_BY_CIRCUIT_BREAKER and trip is not None:
            reason = f"{trip.message}: {trip.signature[:200]}"
        else:
            reason = f"All {len(tier_results)} tier(s) exhausted without passing tests"

        session.outcome = outcome
        result = SessionResult(
            session=session,
            outcome=outcome,
            reason=reason,
            tier_results=tier_results,
            escalations=len(tier_results) - 1,
            resolved_tier_name=resolved.tier_name if resolved else None,
            resolved_attempt=resolved.attempt_number if resolved else None,
            breaker_trip=trip.to_trip() if trip is not None else None,
            budget_constraint=exhausted_constraint,
            budget=budget.snapshot(),
        )
        summary = SessionSummary.for_session(session).model_copy(
            update={
                "finished_at": result.finished_at,
                "outcome": outcome.value,
                "resolved_tier_name": result.resolved_tier_name,
                "resolved_attempt": result.resolved_attempt,
            }
        )
        self.audit.upsert_session(summary)

        logger.info(
            "Session %s finished: %s (%s); %d attempt(s), %d escalation(s), $%.4f spent",
            session.session_id,
            outcome.value,
            reason,
            len(result.records),
            result.escalations,
            budget.spent_usd,
        )
        return result

    def _validation_failed(
        self, session: Session, issues: list[str], budget: Budget
    ) -> SessionResult:
        for issue in issues:
            logger.error("Tier ladder invalid: %s", issue)
        session.outcome = SessionOutcome.VALIDATION_FAILED
        result = SessionResult(
            session=session,
            outcome=SessionOutcome.VALIDATION_FAILED,
            reason=f"Tier ladder failed validation ({len(issues)} issue(s))",
            validation_errors=issues,
            budget=budget.snapshot(),
        )
        marker = SessionSummary.for_session(session).model_copy(
            update={
                "finished_at": result.finished_at,
                "outcome": SessionOutcome.VALIDATION_FAILED.value,
            }
        )
        self.audit.upsert_session(marker)
        return result

    @staticmethod
    def _warn_budget(budget: Budget, warned: set[str]) -> None:
        for message in budget.warnings():
            key = message.split(":", 1)[0]
            if key in warned:
                continue
            warned.add(key)
            logger.warning("Budget warning: %s", message)


def run_session(
    *,
    objective: str,
    working_directory: str | Path,
    test_command: str,
    config: EscalationConfig,
    agent_factory: AgentFactory,
    test_runner: TestRunner,
    audit_sink: AuditSink | None = None,
) -> SessionResult:
    """Build a session, budget and engine from *config* and run it.

    When no sink is given and the config names ``audit_db_path``, a SQLite
    audit trail is opened there; failing to open it only costs the audit.
    """
    session = Session(
        objective=objective,
        working_directory=str(Path(working_directory).resolve()),
        test_command=test_command,
    )
    sink = audit_sink
    if sink is None and config.global_limits.audit_db_path:
        try:
            sink = SqliteAuditSink(config.global_limits.audit_db_path)
        except (OSError, sqlite3.Error) as exc:
            logger.warning(
                "[audit] could not open %s: %s - continuing without audit",
                config.global_limits.audit_db_path,
                exc,
            )
    audit = AuditLog(sink or NullAuditSink())
    engine = TierEscalationEngine(IterationOrchestrator(agent_factory, test_runner), audit=audit)
    try:
        return engine.run(session, config.tiers, config.build_budget())
    finally:
        audit.close()
