"""Tests for the single-attempt phase pipeline."""

from __future__ import annotations

import logging

import pytest

from repair_ladder.agents import AgentError
from repair_ladder.budget import Budget
from repair_ladder.context import AttemptContext
from repair_ladder.orchestrator import IterationOrchestrator
from repair_ladder.runners import TestRunnerError
from repair_ladder.schemas import (
    AgentOutput,
    AgentRole,
    Phase,
    TestVerdict,
    TierDefinition,
    TierModels,
)

from fakes import FakeAgentFactory, ScriptedTestRunner, StepClock, failing, passing


def _budget() -> Budget:
    return Budget(max_cost_usd=10.0, max_duration_seconds=3600.0)


def _context(session, tier: TierDefinition, attempt: int = 1) -> AttemptContext:
    return AttemptContext.for_session(session).next_attempt(tier, 0, attempt)


@pytest.fixture
def adversarial_tier() -> TierDefinition:
    return TierDefinition(
        name="hardened",
        mode="full",
        models=TierModels(gather="g", generate="m", review="r", adversarial="chaos"),
    )


class TestPhaseSequence:
    def test_restricted_runs_generate_then_test(self, session, restricted_tier):
        agents = FakeAgentFactory()
        runner = ScriptedTestRunner([passing()])
        outcome = IterationOrchestrator(agents, runner).run_attempt(
            _context(session, restricted_tier), restricted_tier, _budget()
        )

        assert agents.roles_called() == [AgentRole.GENERATE]
        assert runner.calls == [("pytest -q", session.working_directory)]
        assert outcome.passed
        assert outcome.record.verdict == TestVerdict.PASSED
        assert outcome.record.change_description == "generate output"

    def test_full_runs_every_phase_in_order(self, session, full_tier):
        agents = FakeAgentFactory()
        outcome = IterationOrchestrator(agents, ScriptedTestRunner([passing()])).run_attempt(
            _context(session, full_tier), full_tier, _budget()
        )

        assert agents.roles_called() == [AgentRole.GATHER, AgentRole.GENERATE, AgentRole.REVIEW]
        models = [model for _, model, _ in agents.calls]
        assert models == ["fast-model", "strong-model", "strong-model"]
        assert outcome.record.review_approved is True
        assert outcome.record.tier_mode.value == "full"

    def test_each_phase_sees_previous_outputs(self, session, full_tier):
        agents = FakeAgentFactory()
        IterationOrchestrator(agents, ScriptedTestRunner([passing()])).run_attempt(
            _context(session, full_tier), full_tier, _budget()
        )

        (generate_ctx,) = agents.contexts_for(AgentRole.GENERATE)
        (review_ctx,) = agents.contexts_for(AgentRole.REVIEW)
        assert generate_ctx.gathered_context == "gather output"
        assert generate_ctx.phase == Phase.GENERATE
        assert review_ctx.change_description == "generate output"
        assert review_ctx.phase == Phase.REVIEW


class TestVerdicts:
    def test_review_rejection_never_overrides_passing_tests(self, session, full_tier):
        agents = FakeAgentFactory(
            {AgentRole.REVIEW: [AgentOutput(output="looks wrong", approved=False)]}
        )
        outcome = IterationOrchestrator(agents, ScriptedTestRunner([passing()])).run_attempt(
            _context(session, full_tier), full_tier, _budget()
        )

        assert outcome.passed
        assert outcome.record.review_approved is False
        assert outcome.record.review_notes == "looks wrong"

    def test_failed_tests_are_recorded(self, session, restricted_tier):
        runner = ScriptedTestRunner([failing("KeyError: 'id'", tests=["t::a", "t::b"])])
        outcome = IterationOrchestrator(FakeAgentFactory(), runner).run_attempt(
            _context(session, restricted_tier, attempt=3), restricted_tier, _budget()
        )

        record = outcome.record
        assert not outcome.passed
        assert record.verdict == TestVerdict.FAILED
        assert record.attempt_number == 3
        assert record.failing_tests == ("t::a", "t::b")
        assert record.error_messages == ("KeyError: 'id'",)
        assert record.failed_phase is None


class TestCollaboratorFailures:
    def test_agent_error_becomes_errored_record(self, session, full_tier, caplog):
        agents = FakeAgentFactory({AgentRole.GENERATE: [AgentError("rate limited")]})
        runner = ScriptedTestRunner([passing()])

        with caplog.at_level(logging.WARNING):
            outcome = IterationOrchestrator(agents, runner).run_attempt(
                _context(session, full_tier), full_tier, _budget()
            )

        record = outcome.record
        assert record.verdict == TestVerdict.ERRORED
        assert record.failed_phase == Phase.GENERATE
        assert record.error_messages == ("generate phase failed: rate limited",)
        assert agents.roles_called() == [AgentRole.GATHER, AgentRole.GENERATE]
        assert runner.calls == []
        assert "errored in generate phase" in caplog.text

    def test_unexpected_exception_is_contained(self, session, restricted_tier):
        agents = FakeAgentFactory({AgentRole.GENERATE: [RuntimeError("segfault in sdk")]})
        outcome = IterationOrchestrator(agents, ScriptedTestRunner()).run_attempt(
            _context(session, restricted_tier), restricted_tier, _budget()
        )
        assert outcome.record.verdict == TestVerdict.ERRORED
        assert "segfault in sdk" in outcome.record.error_messages[0]

    def test_factory_failure_is_contained(self, session, restricted_tier):
        def factory(role, model):
            raise KeyError(f"no agent for {role.value}")

        outcome = IterationOrchestrator(factory, ScriptedTestRunner()).run_attempt(
            _context(session, restricted_tier), restricted_tier, _budget()
        )
        assert outcome.record.failed_phase == Phase.GENERATE

    def test_wrong_return_type_is_an_agent_failure(self, session, restricted_tier):
        agents = FakeAgentFactory({AgentRole.GENERATE: ["just a string"]})
        outcome = IterationOrchestrator(agents, ScriptedTestRunner()).run_attempt(
            _context(session, restricted_tier), restricted_tier, _budget()
        )
        assert outcome.record.verdict == TestVerdict.ERRORED
        assert "expected AgentOutput" in outcome.record.error_messages[0]

    def test_test_runner_error_becomes_errored_record(self, session, restricted_tier):
        runner = ScriptedTestRunner([TestRunnerError("Test command timed out after 300s")])
        outcome = IterationOrchestrator(FakeAgentFactory(), runner).run_attempt(
            _context(session, restricted_tier), restricted_tier, _budget()
        )
        record = outcome.record
        assert record.verdict == TestVerdict.ERRORED
        assert record.failed_phase == Phase.TEST
        assert record.error_messages == ("test phase failed: Test command timed out after 300s",)

    def test_runner_returning_no_result_is_errored(self, session, restricted_tier):
        runner = ScriptedTestRunner([None])
        outcome = IterationOrchestrator(FakeAgentFactory(), runner).run_attempt(
            _context(session, restricted_tier), restricted_tier, _budget()
        )
        record = outcome.record
        assert record.verdict == TestVerdict.ERRORED
        assert record.failed_phase == Phase.TEST
        assert "expected TestRunResult" in record.error_messages[0]

    def test_spend_before_the_failure_is_still_charged(self, session, full_tier):
        agents = FakeAgentFactory({AgentRole.REVIEW: [AgentError("boom")]}, cost_usd=0.2)
        budget = _budget()
        outcome = IterationOrchestrator(agents, ScriptedTestRunner()).run_attempt(
            _context(session, full_tier), full_tier, budget
        )
        assert outcome.record.cost_usd == pytest.approx(0.4)
        assert budget.spent_usd == pytest.approx(0.4)
        assert budget.iterations == 1


class TestAdversarialPhase:
    def test_runs_only_after_passing_tests(self, session, adversarial_tier):
        agents = FakeAgentFactory()
        IterationOrchestrator(agents, ScriptedTestRunner([failing("x")])).run_attempt(
            _context(session, adversarial_tier), adversarial_tier, _budget()
        )
        assert AgentRole.ADVERSARIAL not in agents.roles_called()

        agents = FakeAgentFactory()
        outcome = IterationOrchestrator(agents, ScriptedTestRunner([passing()])).run_attempt(
            _context(session, adversarial_tier), adversarial_tier, _budget()
        )
        assert agents.roles_called()[-1] == AgentRole.ADVERSARIAL
        assert outcome.record.adversarial_passed is True

    def test_adversarial_failure_is_informational(self, session, adversarial_tier):
        agents = FakeAgentFactory(
            {AgentRole.ADVERSARIAL: [AgentOutput(output="empty input crashes", approved=False)]}
        )
        outcome = IterationOrchestrator(agents, ScriptedTestRunner([passing()])).run_attempt(
            _context(session, adversarial_tier), adversarial_tier, _budget()
        )
        assert outcome.passed
        assert outcome.record.adversarial_passed is False
        assert outcome.record.adversarial_notes == "empty input crashes"

    def test_adversarial_agent_error_is_informational(self, session, adversarial_tier):
        agents = FakeAgentFactory({AgentRole.ADVERSARIAL: [AgentError("timeout")]})
        outcome = IterationOrchestrator(agents, ScriptedTestRunner([passing()])).run_attempt(
            _context(session, adversarial_tier), adversarial_tier, _budget()
        )
        assert outcome.passed
        assert outcome.record.failed_phase is None
        assert outcome.record.adversarial_passed is False
        assert "timeout" in outcome.record.adversarial_notes


def test_duration_is_measured_with_injected_clock(session, restricted_tier):
    budget = _budget()
    orchestrator = IterationOrchestrator(
        FakeAgentFactory(), ScriptedTestRunner([passing()]), clock=StepClock(step=2.5)
    )
    outcome = orchestrator.run_attempt(
        _context(session, restricted_tier), restricted_tier, budget
    )
    assert outcome.record.duration_seconds == pytest.approx(2.5)
    assert budget.elapsed_seconds == pytest.approx(2.5)
