"""Tests for the agent base class and role registry."""

from __future__ import annotations

import pytest

from repair_ladder.agents import Agent, AgentError, AgentRegistry
from repair_ladder.context import AttemptContext
from repair_ladder.schemas import AgentOutput, AgentRole


class EchoAgent(Agent):
    name = "echo"

    def run(self, context):
        return AgentOutput(output=f"{self.model}: {context.objective}")


class OtherAgent(Agent):
    name = "other"

    def run(self, context):
        return AgentOutput()


def test_agent_is_abstract():
    with pytest.raises(TypeError):
        Agent()  # type: ignore[abstract]


def test_registry_builds_agents_with_model(session):
    registry = AgentRegistry()
    registry.register("generate", EchoAgent)

    agent = registry(AgentRole.GENERATE, "cheap-model")
    assert isinstance(agent, EchoAgent)
    assert agent.model == "cheap-model"
    out = agent.run(AttemptContext.for_session(session))
    assert out.output == "cheap-model: make the test suite pass"


def test_registry_roles_and_lookup_errors():
    registry = AgentRegistry()
    registry.register(AgentRole.REVIEW, EchoAgent)
    registry.register(" Gather ", OtherAgent)

    assert registry.roles() == [AgentRole.GATHER, AgentRole.REVIEW]
    assert registry.get("review") is EchoAgent
    with pytest.raises(KeyError, match="No agent registered for role 'generate'"):
        registry.get(AgentRole.GENERATE)
    with pytest.raises(ValueError, match="Unknown agent role 'coder'"):
        registry.get("coder")


def test_registry_rejects_conflicts_and_non_agents():
    registry = AgentRegistry()
    registry.register("generate", EchoAgent)
    registry.register("generate", EchoAgent)  # same class is fine

    with pytest.raises(ValueError, match="already registered"):
        registry.register("generate", OtherAgent)
    with pytest.raises(TypeError):
        registry.register("review", object)  # type: ignore[arg-type]


def test_agent_error_carries_role_and_model():
    err = AgentError("quota exceeded", role=AgentRole.REVIEW, model="critic")
    assert str(err) == "quota exceeded"
    assert err.role == AgentRole.REVIEW
    assert err.model == "critic"
