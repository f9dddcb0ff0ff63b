"""Abstract base class and registry for agent collaborators.

Every role in the iteration pipeline (gather, generate, review, adversarial)
is served by an :class:`Agent`. The engine never constructs agents itself: it
asks an :data:`AgentFactory` for one per (role, model) pair named by the
current tier, so the same ladder can drive any backend.
"""

from __future__ import annotations

import abc
from collections.abc import Callable

from repair_ladder.context import AttemptContext
from repair_ladder.schemas import AgentOutput, AgentRole


class AgentError(RuntimeError):
    """Raised by an agent when an invocation cannot produce a result."""

    def __init__(self, message: str, *, role: AgentRole | None = None, model: str | None = None):
        super().__init__(message)
        self.role = role
        self.model = model


class Agent(abc.ABC):
    """Common interface for role agents.

    Subclasses must implement :meth:`run`, which receives the immutable
    attempt context and returns an :class:`AgentOutput` or raises
    :class:`AgentError`. Timeouts are the agent's own responsibility.
    """

    #: Human-readable name used in logs.
    name: str = "base"

    def __init__(self, model: str = "") -> None:
        self.model = model

    @abc.abstractmethod
    def run(self, context: AttemptContext) -> AgentOutput:
        """Execute a single agent invocation and return structured results."""


AgentFactory = Callable[[AgentRole, str], Agent]
"""Builds the agent serving *role* with the given model identifier."""


# ── Registry ──────────────────────────────────────────────────────


class AgentRegistry:
    """Maps each role to an :class:`Agent` subclass; usable as an AgentFactory.

    Registered classes are instantiated as ``cls(model=model)``.
    """

    def __init__(self) -> None:
        self._classes: dict[AgentRole, type[Agent]] = {}

    def register(self, role: AgentRole | str, cls: type[Agent]) -> None:
        """Register an agent class for a role."""
        key = _coerce_role(role)
        if not isinstance(cls, type) or not issubclass(cls, Agent):
            raise TypeError("Registered agent must be an Agent subclass")

        existing = self._classes.get(key)
        if existing is not None and existing is not cls:
            raise ValueError(f"Role '{key.value}' is already registered with {existing.__name__}")

        self._classes[key] = cls

    def get(self, role: AgentRole | str) -> type[Agent]:
        """Look up the agent class registered for *role*."""
        key = _coerce_role(role)
        if key not in self._classes:
            available = ", ".join(r.value for r in self.roles()) or "(none)"
            raise KeyError(f"No agent registered for role '{key.value}'. Available: {available}")
        return self._classes[key]

    def roles(self) -> list[AgentRole]:
        return sorted(self._classes, key=lambda r: r.value)

    def __call__(self, role: AgentRole, model: str) -> Agent:
        return self.get(role)(model=model)


def _coerce_role(role: AgentRole | str) -> AgentRole:
    if isinstance(role, AgentRole):
        return role
    normalized = (role or "").strip().lower()
    try:
        return AgentRole(normalized)
    except ValueError as exc:
        valid = ", ".join(r.value for r in AgentRole)
        raise ValueError(f"Unknown agent role '{role}'. Expected one of: {valid}") from exc
