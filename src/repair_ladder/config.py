"""Escalation ladder configuration: loading and validation.

The engine consumes an already-validated, ordered list of
:class:`~repair_ladder.schemas.TierDefinition` plus global caps. This module
turns raw YAML/JSON (or plain mappings) into those objects and reports every
structural problem at once, before anything external is touched.

Example file::

    tiers:
      - name: haiku-fast
        mode: restricted
        max_attempts: 5
        models: {generate: claude-haiku}
      - name: sonnet-full
        mode: full
        max_attempts: 3
        models: {gather: claude-haiku, generate: claude-sonnet, review: claude-sonnet}
    global_limits:
      max_total_cost_usd: 5.0
      max_total_duration_minutes: 30
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from repair_ladder.budget import Budget
from repair_ladder.schemas import TierDefinition

logger = logging.getLogger(__name__)

DEFAULT_MAX_COST_USD = 2.0
DEFAULT_MAX_DURATION_MINUTES = 15.0


class LadderValidationError(ValueError):
    """Raised when a tier ladder or escalation config is structurally invalid."""

    def __init__(self, issues: list[str], source: str = "") -> None:
        self.issues = list(issues)
        self.source = source
        where = f" in {source}" if source else ""
        numbered = "\n".join(f"  Error {i}: {issue}" for i, issue in enumerate(self.issues, 1))
        super().__init__(f"Tier config invalid{where}:\n{numbered}")


class GlobalLimits(BaseModel):
    """Session-wide caps shared by every tier."""

    model_config = ConfigDict(frozen=True)

    audit_db_path: str | None = None
    max_total_cost_usd: float = Field(default=DEFAULT_MAX_COST_USD, gt=0)
    max_total_duration_minutes: float = Field(default=DEFAULT_MAX_DURATION_MINUTES, gt=0)
    max_total_iterations: int | None = Field(default=None, ge=1)


class EscalationConfig(BaseModel):
    """Complete escalation configuration: ordered tiers plus global limits."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tiers: list[TierDefinition] = Field(min_length=1)
    global_limits: GlobalLimits = Field(default_factory=GlobalLimits, alias="global")

    @model_validator(mode="after")
    def _unique_tier_names(self) -> EscalationConfig:
        issues = _duplicate_name_issues(t.name for t in self.tiers)
        if issues:
            raise ValueError("; ".join(issues))
        return self

    def build_budget(self) -> Budget:
        """Create the session budget from the global limits."""
        limits = self.global_limits
        return Budget.from_minutes(
            limits.max_total_cost_usd,
            limits.max_total_duration_minutes,
            max_iterations=limits.max_total_iterations,
        )


def _duplicate_name_issues(names: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    issues: list[str] = []
    for name in names:
        key = name.strip().lower()
        if key in seen:
            issues.append(f"duplicate tier name '{name}'")
        seen.add(key)
    return issues


def _format_validation_error(exc: ValidationError, prefix: str = "") -> list[str]:
    issues: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        path = ".".join(part for part in (prefix, loc) if part)
        message = str(err.get("msg", "invalid value"))
        message = message.removeprefix("Value error, ")
        issues.append(f"{path}: {message}" if path else message)
    return issues


def validate_ladder(
    tiers: Iterable[TierDefinition | Mapping[str, Any]] | None,
) -> tuple[list[TierDefinition], list[str]]:
    """Validate a ladder and return ``(definitions, issues)``.

    Accepts built definitions or raw mappings. Every tier is re-validated so
    definitions created without validation are checked too. ``issues`` is
    empty only when the whole ladder is usable.
    """
    definitions: list[TierDefinition] = []
    issues: list[str] = []
    items = list(tiers or [])
    if not items:
        return [], ["tiers: at least 1 tier required"]

    for index, item in enumerate(items):
        raw = item.model_dump() if isinstance(item, TierDefinition) else item
        if not isinstance(raw, Mapping):
            issues.append(f"tiers.{index}: expected a mapping, got {type(raw).__name__}")
            continue
        try:
            definitions.append(TierDefinition.model_validate(dict(raw)))
        except ValidationError as exc:
            issues.extend(_format_validation_error(exc, prefix=f"tiers.{index}"))

    issues.extend(f"tiers: {issue}" for issue in _duplicate_name_issues(d.name for d in definitions))
    return definitions, issues


def validate_tier_config(raw: Any) -> list[str]:
    """Return the list of problems with a raw config mapping (empty when valid)."""
    try:
        EscalationConfig.model_validate(raw)
    except ValidationError as exc:
        return _format_validation_error(exc)
    return []


def parse_tier_config(raw: Any, source: str = "") -> EscalationConfig:
    """Validate a raw mapping into an :class:`EscalationConfig` or raise."""
    try:
        return EscalationConfig.model_validate(raw)
    except ValidationError as exc:
        raise LadderValidationError(_format_validation_error(exc), source=source) from exc


def load_tier_config(path: str | Path) -> EscalationConfig:
    """Load and validate a YAML or JSON escalation config file."""
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise LadderValidationError([f"cannot read file: {exc}"], source=str(file_path)) from exc

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise LadderValidationError([f"parse error: {exc}"], source=str(file_path)) from exc

    if raw is None:
        raise LadderValidationError(["file is empty"], source=str(file_path))

    config = parse_tier_config(raw, source=str(file_path))
    logger.info(
        "Loaded tier config %s: %d tier(s) [%s]",
        file_path,
        len(config.tiers),
        ", ".join(t.name for t in config.tiers),
    )
    return config
