"""Session budget ledger.

A single :class:`Budget` is created per session and passed by reference to
every layer of the escalation loop. Tiers never own a budget of their own;
their attempt caps are tier-local and checked by the engine.

All calls are strictly serial, so the ledger carries no lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from repair_ladder.schemas import BudgetSnapshot

logger = logging.getLogger(__name__)

WARNING_RATIO = 0.8
"""Utilization ratio at which :meth:`Budget.warnings` starts reporting a cap."""

CONSTRAINT_COST = "cost"
CONSTRAINT_DURATION = "duration"
CONSTRAINT_ITERATIONS = "iterations"


@dataclass
class Budget:
    """Mutable cost / duration / iteration ledger for one session.

    Parameters
    ----------
    max_cost_usd:
        Hard cap on cumulative collaborator cost.
    max_duration_seconds:
        Hard cap on session wall-clock time.
    max_iterations:
        Optional session-wide attempt cap. ``None`` leaves attempt counting to
        the tier-local caps.
    """

    max_cost_usd: float
    max_duration_seconds: float
    max_iterations: int | None = None
    spent_usd: float = 0.0
    elapsed_seconds: float = 0.0
    iterations: int = 0

    @classmethod
    def from_minutes(
        cls,
        max_cost_usd: float,
        max_duration_minutes: float,
        *,
        max_iterations: int | None = None,
    ) -> Budget:
        return cls(
            max_cost_usd=float(max_cost_usd),
            max_duration_seconds=float(max_duration_minutes) * 60.0,
            max_iterations=max_iterations,
        )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def record_spend(self, cost_usd: float, duration_delta: float) -> None:
        """Add one attempt's cost and duration to the ledger.

        Negative or non-numeric inputs count as zero so spend and elapsed
        time never decrease.
        """
        self.spent_usd += _non_negative(cost_usd)
        self.elapsed_seconds += _non_negative(duration_delta)
        self.iterations += 1
        logger.debug(
            "Budget: spent=$%.4f/$%.2f elapsed=%.1fs/%.0fs iterations=%d",
            self.spent_usd,
            self.max_cost_usd,
            self.elapsed_seconds,
            self.max_duration_seconds,
            self.iterations,
        )

    def sync_elapsed(self, session_seconds: float) -> None:
        """Raise elapsed time to the session's wall-clock age.

        Covers time spent between attempts (audit writes, escalation
        bundles). Never lowers the ledger.
        """
        seconds = _non_negative(session_seconds)
        if seconds > self.elapsed_seconds:
            self.elapsed_seconds = seconds

    # ------------------------------------------------------------------
    # Pure reads
    # ------------------------------------------------------------------

    def is_exhausted(self) -> bool:
        """Return True when any cap has been reached."""
        return self.exhausted_constraint() is not None

    def exhausted_constraint(self) -> str | None:
        """Name the first cap that has been reached, or ``None``."""
        if self.spent_usd >= self.max_cost_usd:
            return CONSTRAINT_COST
        if self.elapsed_seconds >= self.max_duration_seconds:
            return CONSTRAINT_DURATION
        if self.max_iterations is not None and self.iterations >= self.max_iterations:
            return CONSTRAINT_ITERATIONS
        return None

    @property
    def average_attempt_cost(self) -> float:
        if self.iterations == 0:
            return 0.0
        return self.spent_usd / self.iterations

    @property
    def average_attempt_duration(self) -> float:
        if self.iterations == 0:
            return 0.0
        return self.elapsed_seconds / self.iterations

    def would_overrun(
        self,
        projected_cost: float | None = None,
        projected_duration: float | None = None,
    ) -> str | None:
        """Return the cap the next attempt is projected to exceed, or ``None``.

        Projections default to the running per-attempt averages, so before the
        first attempt nothing is ever projected to overrun.
        """
        cost = self.average_attempt_cost if projected_cost is None else projected_cost
        duration = (
            self.average_attempt_duration if projected_duration is None else projected_duration
        )
        if self.spent_usd + _non_negative(cost) > self.max_cost_usd:
            return CONSTRAINT_COST
        if self.elapsed_seconds + _non_negative(duration) > self.max_duration_seconds:
            return CONSTRAINT_DURATION
        if self.max_iterations is not None and self.iterations + 1 > self.max_iterations:
            return CONSTRAINT_ITERATIONS
        return None

    def utilization(self) -> dict[str, float]:
        """Return percentage used per cap plus the overall (max) figure."""
        cost = _percent(self.spent_usd, self.max_cost_usd)
        duration = _percent(self.elapsed_seconds, self.max_duration_seconds)
        usage = {CONSTRAINT_COST: cost, CONSTRAINT_DURATION: duration}
        if self.max_iterations is not None:
            usage[CONSTRAINT_ITERATIONS] = _percent(self.iterations, self.max_iterations)
        usage["overall"] = max(usage.values())
        return usage

    def remaining(self) -> dict[str, float]:
        """Return headroom per cap, floored at zero."""
        remaining: dict[str, float] = {
            CONSTRAINT_COST: max(0.0, self.max_cost_usd - self.spent_usd),
            CONSTRAINT_DURATION: max(0.0, self.max_duration_seconds - self.elapsed_seconds),
        }
        if self.max_iterations is not None:
            remaining[CONSTRAINT_ITERATIONS] = float(max(0, self.max_iterations - self.iterations))
        return remaining

    def warnings(self, ratio: float = WARNING_RATIO) -> list[str]:
        """Return one message per cap at or above *ratio* utilization."""
        threshold = ratio * 100.0
        usage = self.utilization()
        messages: list[str] = []
        if usage[CONSTRAINT_COST] >= threshold:
            messages.append(
                f"Cost: {usage[CONSTRAINT_COST]:.0f}% used "
                f"(${self.spent_usd:.2f}/${self.max_cost_usd:.2f})"
            )
        if usage[CONSTRAINT_DURATION] >= threshold:
            messages.append(
                f"Duration: {usage[CONSTRAINT_DURATION]:.0f}% used "
                f"({self.elapsed_seconds / 60:.1f}/{self.max_duration_seconds / 60:.1f} min)"
            )
        if CONSTRAINT_ITERATIONS in usage and usage[CONSTRAINT_ITERATIONS] >= threshold:
            messages.append(
                f"Iterations: {usage[CONSTRAINT_ITERATIONS]:.0f}% used "
                f"({self.iterations}/{self.max_iterations})"
            )
        return messages

    def snapshot(self) -> BudgetSnapshot:
        return BudgetSnapshot(
            max_cost_usd=self.max_cost_usd,
            spent_usd=self.spent_usd,
            max_duration_seconds=self.max_duration_seconds,
            elapsed_seconds=self.elapsed_seconds,
            max_iterations=self.max_iterations,
            iterations=self.iterations,
        )

    def format_status(self) -> str:
        """Human-readable multi-line budget status."""
        usage = self.utilization()
        left = self.remaining()
        lines = [
            "Budget Status:",
            f"  Cost: ${self.spent_usd:.2f}/${self.max_cost_usd:.2f} "
            f"({usage[CONSTRAINT_COST]:.0f}%), remaining ${left[CONSTRAINT_COST]:.2f}",
            f"  Duration: {self.elapsed_seconds / 60:.1f}/{self.max_duration_seconds / 60:.1f} min "
            f"({usage[CONSTRAINT_DURATION]:.0f}%), remaining {left[CONSTRAINT_DURATION] / 60:.1f} min",
        ]
        if self.max_iterations is not None:
            lines.append(
                f"  Iterations: {self.iterations}/{self.max_iterations} "
                f"({usage[CONSTRAINT_ITERATIONS]:.0f}%)"
            )
        else:
            lines.append(f"  Iterations: {self.iterations}")
        constraint = self.exhausted_constraint()
        if constraint is not None:
            lines.append(f"  Exhausted: {constraint}")
        return "\n".join(lines)


def _non_negative(value: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number or number < 0:  # NaN or negative
        return 0.0
    return number


def _percent(used: float, cap: float) -> float:
    if cap <= 0:
        return 100.0
    return used / cap * 100.0
