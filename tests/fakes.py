"""In-memory collaborator fakes shared by the test modules."""

from __future__ import annotations

from collections.abc import Iterable

from repair_ladder.agents import Agent
from repair_ladder.context import AttemptContext
from repair_ladder.runners import TestRunner
from repair_ladder.schemas import AgentOutput, AgentRole, TestRunResult, TestVerdict


def passing() -> TestRunResult:
    return TestRunResult(verdict=TestVerdict.PASSED, exit_code=0, summary="all passed")


def failing(*messages: str, tests: Iterable[str] = ()) -> TestRunResult:
    return TestRunResult(
        verdict=TestVerdict.FAILED,
        failing_tests=tuple(tests),
        error_messages=tuple(messages),
        exit_code=1,
    )


class FakeAgent(Agent):
    name = "fake"

    def __init__(self, model: str = "", *, role: AgentRole, owner: FakeAgentFactory) -> None:
        super().__init__(model=model)
        self.role = role
        self.owner = owner

    def run(self, context: AttemptContext) -> AgentOutput:
        self.owner.calls.append((self.role, self.model, context))
        result = self.owner.next_result(self.role)
        if isinstance(result, BaseException):
            raise result
        return result  # type: ignore[return-value]


class FakeAgentFactory:
    """Agent factory with per-role scripted results.

    Unscripted calls return a default output costing ``cost_usd``; judging
    roles approve.
    """

    def __init__(
        self,
        scripts: dict[AgentRole, list[object]] | None = None,
        *,
        cost_usd: float = 0.01,
    ) -> None:
        self.scripts = {role: list(items) for role, items in (scripts or {}).items()}
        self.cost_usd = cost_usd
        self.calls: list[tuple[AgentRole, str, AttemptContext]] = []

    def next_result(self, role: AgentRole) -> object:
        queue = self.scripts.get(role)
        if queue:
            return queue.pop(0)
        approved = True if role in (AgentRole.REVIEW, AgentRole.ADVERSARIAL) else None
        return AgentOutput(
            output=f"{role.value} output",
            tokens_used=100,
            cost_usd=self.cost_usd,
            approved=approved,
        )

    def roles_called(self) -> list[AgentRole]:
        return [role for role, _, _ in self.calls]

    def contexts_for(self, role: AgentRole) -> list[AttemptContext]:
        return [ctx for r, _, ctx in self.calls if r == role]

    def __call__(self, role: AgentRole, model: str) -> Agent:
        return FakeAgent(model, role=role, owner=self)


class ScriptedTestRunner(TestRunner):
    """Returns queued results in order; keeps failing once the queue is empty."""

    def __init__(self, results: Iterable[object] = ()) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, str]] = []

    def run(self, command, working_dir):
        self.calls.append((command, str(working_dir)))
        result = self.results.pop(0) if self.results else failing("AssertionError: still red")
        if isinstance(result, BaseException):
            raise result
        return result


class StepClock:
    """Monotonic clock advancing by ``step`` seconds per call."""

    def __init__(self, step: float = 1.0) -> None:
        self.step = step
        self.now = 0.0

    def __call__(self) -> float:
        self.now += self.step
        return self.now


class ManualClock:
    """Clock that only moves when :meth:`advance` is called."""

    def __init__(self) -> None:
        self.now = 0.0

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now
