"""Single-attempt pipeline.

The :class:`IterationOrchestrator` runs one attempt through the tier's fixed
phase sequence:

    restricted:  GENERATE -> TEST
    full:        GATHER -> GENERATE -> REVIEW -> TEST [-> ADVERSARIAL]

Each phase calls exactly one collaborator and folds its output into a new
:class:`~repair_ladder.context.AttemptContext`. A collaborator failure ends
the attempt (not the tier) with an ``errored`` record. TEST alone decides
pass/fail; review approval and adversarial results are recorded for the
audit trail only.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from repair_ladder.agents import AgentError, AgentFactory
from repair_ladder.budget import Budget
from repair_ladder.context import AttemptContext
from repair_ladder.runners import TestRunner, TestRunnerError
from repair_ladder.schemas import (
    AgentOutput,
    AgentRole,
    AttemptRecord,
    Phase,
    TestRunResult,
    TestVerdict,
    TierDefinition,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

_PHASE_ROLES: dict[Phase, AgentRole] = {
    Phase.GATHER: AgentRole.GATHER,
    Phase.GENERATE: AgentRole.GENERATE,
    Phase.REVIEW: AgentRole.REVIEW,
    Phase.ADVERSARIAL: AgentRole.ADVERSARIAL,
}

_FOLDS: dict[Phase, Callable[[AttemptContext, AgentOutput], AttemptContext]] = {
    Phase.GATHER: AttemptContext.with_gathered,
    Phase.GENERATE: AttemptContext.with_generation,
    Phase.REVIEW: AttemptContext.with_review,
    Phase.ADVERSARIAL: AttemptContext.with_adversarial,
}


class PhaseFailure(Exception):
    """A collaborator failed inside a phase; ends the current attempt."""

    def __init__(self, phase: Phase, cause: BaseException, context: AttemptContext) -> None:
        super().__init__(f"{phase.value} phase failed: {cause}")
        self.phase = phase
        self.cause = cause
        self.context = context


@dataclass(frozen=True)
class AttemptOutcome:
    """What one attempt produced."""

    record: AttemptRecord
    context: AttemptContext

    @property
    def passed(self) -> bool:
        return self.record.verdict == TestVerdict.PASSED


class IterationOrchestrator:
    """Runs one attempt at a time for a given tier.

    Parameters
    ----------
    agent_factory:
        Builds the agent for a (role, model) pair named by the tier.
    test_runner:
        Runs the session's test command; the only source of pass/fail.
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        agent_factory: AgentFactory,
        test_runner: TestRunner,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.agent_factory = agent_factory
        self.test_runner = test_runner
        self.clock = clock

    def run_attempt(
        self,
        context: AttemptContext,
        tier: TierDefinition,
        budget: Budget,
    ) -> AttemptOutcome:
        """Run the tier's phases once and record the spend on *budget*.

        Never raises for collaborator failures; they become an ``errored``
        record naming the failed phase.
        """
        start = self.clock()
        logger.info(
            "Attempt %d of tier '%s' (%s): %s",
            context.attempt_number,
            tier.name,
            tier.mode.value,
            " -> ".join(p.value for p in tier.phases),
        )

        failure: PhaseFailure | None = None
        try:
            context = self._run_phases(context, tier)
        except PhaseFailure as exc:
            failure = exc
            context = exc.context
            logger.warning(
                "Attempt %d of tier '%s' errored in %s phase: %s",
                context.attempt_number,
                tier.name,
                exc.phase.value,
                exc.cause,
            )

        duration = max(0.0, self.clock() - start)
        budget.record_spend(context.cost_usd, duration)
        record = self._build_record(context, tier, duration, failure)
        logger.info(
            "Attempt %d of tier '%s' finished: verdict=%s cost=$%.4f duration=%.1fs",
            record.attempt_number,
            tier.name,
            record.verdict.value,
            record.cost_usd,
            record.duration_seconds,
        )
        return AttemptOutcome(record=record, context=context)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _run_phases(self, context: AttemptContext, tier: TierDefinition) -> AttemptContext:
        for phase in tier.phases:
            if phase == Phase.ADVERSARIAL and not _tests_passed(context):
                logger.debug("Skipping adversarial phase: tests did not pass")
                continue
            if phase == Phase.TEST:
                context = self._test(context)
            elif phase == Phase.ADVERSARIAL:
                context = self._adversarial(context, tier)
            else:
                context = self._agent_phase(context, tier, phase)
        return context

    def _agent_phase(
        self, context: AttemptContext, tier: TierDefinition, phase: Phase
    ) -> AttemptContext:
        role = _PHASE_ROLES[phase]
        model = tier.model_for(role) or ""
        context = context.entering(phase, model)
        try:
            agent = self.agent_factory(role, model)
            output = agent.run(context)
        except Exception as exc:
            raise _failure(phase, exc, context) from exc
        if not isinstance(output, AgentOutput):
            raise _failure(
                phase,
                AgentError(f"agent returned {type(output).__name__}, expected AgentOutput"),
                context,
            )
        logger.debug(
            "%s phase done (model=%s, tokens=%d, cost=$%.4f)",
            phase.value,
            model,
            output.tokens_used,
            output.cost_usd,
        )
        if phase == Phase.REVIEW and output.approved is False:
            logger.info("Review did not approve the change (advisory only)")
        return _FOLDS[phase](context, output)

    def _test(self, context: AttemptContext) -> AttemptContext:
        context = context.entering(Phase.TEST)
        try:
            result = self.test_runner.run(context.test_command, context.working_directory)
            if not isinstance(result, TestRunResult):
                raise TestRunnerError(
                    f"test runner returned {type(result).__name__}, expected TestRunResult"
                )
        except Exception as exc:
            raise _failure(Phase.TEST, exc, context) from exc
        logger.info(
            "Tests %s (%d failing)", result.verdict.value, len(result.failing_tests)
        )
        return context.with_test_result(result)

    def _adversarial(self, context: AttemptContext, tier: TierDefinition) -> AttemptContext:
        """Adversarial failures are informational: they never end the attempt."""
        model = tier.model_for(AgentRole.ADVERSARIAL) or ""
        context = context.entering(Phase.ADVERSARIAL, model)
        try:
            agent = self.agent_factory(AgentRole.ADVERSARIAL, model)
            output = agent.run(context)
            if not isinstance(output, AgentOutput):
                raise AgentError(f"agent returned {type(output).__name__}, expected AgentOutput")
        except Exception as exc:
            logger.warning("Adversarial phase failed (informational only): %s", exc)
            return context.model_copy(
                update={
                    "adversarial_passed": False,
                    "adversarial_notes": f"adversarial agent error: {exc}",
                }
            )
        if output.approved is False:
            logger.warning("Adversarial checks failed (informational only)")
        return context.with_adversarial(output)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _build_record(
        self,
        context: AttemptContext,
        tier: TierDefinition,
        duration: float,
        failure: PhaseFailure | None,
    ) -> AttemptRecord:
        common = {
            "session_id": context.session_id,
            "tier_index": context.tier_index,
            "tier_name": tier.name,
            "tier_mode": tier.mode,
            "models": tier.models,
            "attempt_number": context.attempt_number,
            "change_description": context.change_description,
            "cost_usd": context.cost_usd,
            "tokens_used": context.tokens_used,
            "duration_seconds": duration,
            "completed_at": utc_now_iso(),
            "review_approved": context.review_approved,
            "review_notes": context.review_notes,
            "adversarial_passed": context.adversarial_passed,
            "adversarial_notes": context.adversarial_notes,
        }
        if failure is not None:
            return AttemptRecord(
                **common,
                verdict=TestVerdict.ERRORED,
                error_messages=(str(failure),),
                failed_phase=failure.phase,
            )

        result = context.test_result
        if result is None:
            return AttemptRecord(
                **common,
                verdict=TestVerdict.ERRORED,
                error_messages=("test phase produced no result",),
                failed_phase=Phase.TEST,
            )
        return AttemptRecord(
            **common,
            verdict=result.verdict,
            failing_tests=result.failing_tests,
            error_messages=result.error_messages,
        )


def _failure(phase: Phase, cause: BaseException, context: AttemptContext) -> PhaseFailure:
    failure = PhaseFailure(phase, cause, context)
    if isinstance(cause, (AgentError, TestRunnerError)):
        logger.debug("%s collaborator error: %s", phase.value, cause)
    else:
        logger.debug("%s collaborator raised %s", phase.value, type(cause).__name__, exc_info=True)
    return failure


def _tests_passed(context: AttemptContext) -> bool:
    return context.test_result is not None and context.test_result.passed
