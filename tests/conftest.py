"""Shared pytest configuration for markers, ordering and common fixtures."""

from __future__ import annotations

import pytest

from repair_ladder.schemas import PipelineMode, Session, TierDefinition, TierModels


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: sqlite/filesystem/subprocess tests")
    config.addinivalue_line("markers", "slow: tests that spawn real test commands")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture
def session(tmp_path) -> Session:
    return Session(
        objective="make the test suite pass",
        working_directory=str(tmp_path),
        test_command="pytest -q",
    )


@pytest.fixture
def restricted_tier() -> TierDefinition:
    return TierDefinition(
        name="cheap",
        mode=PipelineMode.RESTRICTED,
        max_attempts=3,
        models=TierModels(generate="cheap-model"),
    )


@pytest.fixture
def full_tier() -> TierDefinition:
    return TierDefinition(
        name="strong",
        mode=PipelineMode.FULL,
        max_attempts=2,
        models=TierModels(gather="fast-model", generate="strong-model", review="strong-model"),
    )
