"""Repair Ladder - budgeted, tiered escalation loop for autonomous code repair."""

import logging
from importlib.metadata import PackageNotFoundError, version

from repair_ladder.budget import Budget
from repair_ladder.config import EscalationConfig, LadderValidationError, load_tier_config
from repair_ladder.engine import TierEscalationEngine, run_session
from repair_ladder.orchestrator import IterationOrchestrator
from repair_ladder.schemas import (
    AttemptRecord,
    PipelineMode,
    Session,
    SessionOutcome,
    SessionResult,
    TierDefinition,
)

__all__ = [
    "AttemptRecord",
    "Budget",
    "EscalationConfig",
    "IterationOrchestrator",
    "LadderValidationError",
    "PipelineMode",
    "Session",
    "SessionOutcome",
    "SessionResult",
    "TierDefinition",
    "TierEscalationEngine",
    "configure_logging",
    "load_tier_config",
    "run_session",
]

try:
    __version__ = version("repair-ladder")
except PackageNotFoundError:
    __version__ = "0.0.0"


def configure_logging(verbose: bool = False) -> None:
    """Install the application-level log format on the root logger."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
