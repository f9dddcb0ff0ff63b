"""Immutable per-attempt context handed to every collaborator.

Each phase of an attempt returns a new :class:`AttemptContext` built from the
previous one plus its own output; nothing is mutated in place. A fresh
context is derived for every attempt via :meth:`AttemptContext.next_attempt`,
which drops all phase outputs and keeps only the session facts, the current
escalation bundle and a short digest of the attempt that came before.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from repair_ladder.schemas import (
    AgentOutput,
    AttemptRecord,
    Phase,
    PipelineMode,
    Session,
    TestRunResult,
    TestVerdict,
    TierDefinition,
)


class PriorAttempt(BaseModel):
    """Digest of the attempt immediately preceding the current one."""

    model_config = ConfigDict(frozen=True)

    tier_name: str
    attempt_number: int
    verdict: TestVerdict
    change_description: str = ""
    failing_tests: tuple[str, ...] = ()
    error_messages: tuple[str, ...] = ()

    @classmethod
    def from_record(cls, record: AttemptRecord) -> PriorAttempt:
        return cls(
            tier_name=record.tier_name,
            attempt_number=record.attempt_number,
            verdict=record.verdict,
            change_description=record.change_description,
            failing_tests=record.failing_tests,
            error_messages=record.error_messages,
        )


class AttemptContext(BaseModel):
    """Everything a collaborator may read during one attempt."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    objective: str
    working_directory: str
    test_command: str

    tier_index: int = 0
    tier_name: str = ""
    mode: PipelineMode = PipelineMode.RESTRICTED
    model: str | None = None
    attempt_number: int = 0

    escalation_bundle: str = ""
    prior_attempt: PriorAttempt | None = None

    phase: Phase | None = None
    gathered_context: str = ""
    change_description: str = ""
    review_approved: bool | None = None
    review_notes: str = ""
    test_result: TestRunResult | None = None
    adversarial_passed: bool | None = None
    adversarial_notes: str = ""

    cost_usd: float = 0.0
    tokens_used: int = 0

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def for_session(cls, session: Session) -> AttemptContext:
        return cls(
            session_id=session.session_id,
            objective=session.objective,
            working_directory=session.working_directory,
            test_command=session.test_command,
        )

    def next_attempt(
        self,
        tier: TierDefinition,
        tier_index: int,
        attempt_number: int,
        prior: AttemptRecord | None = None,
    ) -> AttemptContext:
        """Return a fresh context for the next attempt.

        Phase outputs and attempt-level spend are cleared; the escalation
        bundle is carried unchanged.
        """
        return AttemptContext(
            session_id=self.session_id,
            objective=self.objective,
            working_directory=self.working_directory,
            test_command=self.test_command,
            tier_index=tier_index,
            tier_name=tier.name,
            mode=tier.mode,
            attempt_number=attempt_number,
            escalation_bundle=self.escalation_bundle,
            prior_attempt=PriorAttempt.from_record(prior) if prior is not None else self.prior_attempt,
        )

    # ------------------------------------------------------------------
    # Phase folds
    # ------------------------------------------------------------------

    def with_escalation_bundle(self, bundle_text: str) -> AttemptContext:
        """Replace (never append to) the escalation bundle."""
        return self.model_copy(update={"escalation_bundle": bundle_text})

    def entering(self, phase: Phase, model: str | None = None) -> AttemptContext:
        return self.model_copy(update={"phase": phase, "model": model})

    def _with_spend(self, output: AgentOutput, **updates: object) -> AttemptContext:
        updates["cost_usd"] = self.cost_usd + max(0.0, float(output.cost_usd or 0.0))
        updates["tokens_used"] = self.tokens_used + max(0, int(output.tokens_used or 0))
        return self.model_copy(update=updates)

    def with_gathered(self, output: AgentOutput) -> AttemptContext:
        return self._with_spend(output, gathered_context=output.output)

    def with_generation(self, output: AgentOutput) -> AttemptContext:
        return self._with_spend(output, change_description=output.output)

    def with_review(self, output: AgentOutput) -> AttemptContext:
        return self._with_spend(
            output,
            review_approved=output.approved,
            review_notes=output.output,
        )

    def with_test_result(self, result: TestRunResult) -> AttemptContext:
        return self.model_copy(update={"test_result": result})

    def with_adversarial(self, output: AgentOutput) -> AttemptContext:
        return self._with_spend(
            output,
            adversarial_passed=output.approved,
            adversarial_notes=output.output,
        )

    # ------------------------------------------------------------------
    # Prompt rendering
    # ------------------------------------------------------------------

    def build_prompt(self) -> str:
        """Render a markdown prompt describing the attempt.

        Agents are free to ignore this and build their own prompt from the
        structured fields; it exists so simple agents can forward one string.
        """
        parts: list[str] = [
            f"## Objective\n{self.objective}\n",
            f"## Tier {self.tier_index + 1}: {self.tier_name} (attempt {self.attempt_number})",
            f"Test command: `{self.test_command}`",
            "",
        ]

        if self.escalation_bundle:
            parts.append("### Earlier tiers did not succeed")
            parts.append(self.escalation_bundle)
            parts.append("")

        prior = self.prior_attempt
        if prior is not None:
            parts.append("### Previous attempt")
            parts.append(f"Outcome: {prior.verdict.value}")
            if prior.change_description:
                parts.append(f"Change: {prior.change_description[:500]}")
            if prior.failing_tests:
                parts.append("Failing tests:\n" + "\n".join(f"- {t}" for t in prior.failing_tests[:10]))
            if prior.error_messages:
                parts.append(
                    "Errors:\n" + "\n".join(f"- {e[:200]}" for e in prior.error_messages[:5])
                )
            parts.append("")

        if self.gathered_context:
            parts.append("### Relevant context")
            parts.append(self.gathered_context[:4000])
            parts.append("")

        if self.phase == Phase.REVIEW and self.change_description:
            parts.append("### Proposed change")
            parts.append(self.change_description[:4000])
            parts.append("")

        parts.append(
            "Make the smallest change that moves the test suite toward passing. "
            "Do not repeat an approach that already failed."
        )
        return "\n".join(parts)
