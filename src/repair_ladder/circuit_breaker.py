"""Repeated-failure circuit breaker.

Watches the stream of failure signatures produced by failed attempts and
trips when the same normalized signature shows up too often inside a rolling
window. Adversarial failures are informational and never counted.
"""

from __future__ import annotations

import logging
import re
import time
from collections import Counter, deque
from dataclasses import dataclass, field

from repair_ladder.schemas import BreakerTrip

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 10
DEFAULT_THRESHOLD = 3

SOURCE_TEST = "test"
SOURCE_AGENT = "agent"
SOURCE_ADVERSARIAL = "adversarial"

UNKNOWN_SIGNATURE = "unknown-error"

# Order matters: specific patterns first, then the catch-all digit rule.
_NORMALIZERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r":\d+:\d+"), ":X:X"),
    (re.compile(r"line \d+", re.IGNORECASE), "line X"),
    (re.compile(r"\d+(?:\.\d+)?\s?ms\b"), "Xms"),
    (re.compile(r"\d{4}-\d{2}-\d{2}"), "YYYY-MM-DD"),
    (re.compile(r"\d{2}:\d{2}:\d{2}(?:\.\d+)?"), "HH:MM:SS"),
    (re.compile(r"0x[0-9a-fA-F]+"), "0xADDR"),
    (re.compile(r"\d+"), "N"),
    (re.compile(r"(?:[A-Za-z]:)?[\\/][^\s:'\"]+[\\/]"), "/PATH/"),
    (re.compile(r"\s+"), " "),
)


def normalize_signature(message: str) -> str:
    """Canonicalize an error message so incidental details do not split counts.

    Line/column numbers, timings, dates, times, addresses, other digits and
    directory prefixes are replaced with placeholders; whitespace is collapsed
    and the result lower-cased.
    """
    text = (message or "").strip()
    if not text:
        return UNKNOWN_SIGNATURE
    for pattern, replacement in _NORMALIZERS:
        text = pattern.sub(replacement, text)
    return text.strip().lower() or UNKNOWN_SIGNATURE


@dataclass(frozen=True)
class FailureEntry:
    """One failure observed by the breaker."""

    signature: str
    original: str
    attempt: int
    source: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class BreakerVerdict:
    """Result of recording one failure."""

    tripped: bool
    signature: str
    count: int
    threshold: int
    message: str
    occurrences: tuple[FailureEntry, ...] = ()

    def to_trip(self) -> BreakerTrip:
        return BreakerTrip(
            signature=self.signature,
            count=self.count,
            threshold=self.threshold,
            attempts=[entry.attempt for entry in self.occurrences],
        )


class CircuitBreaker:
    """Rolling-window detector for a repeating identical failure.

    Parameters
    ----------
    window_size:
        Number of most recent counted signatures retained.
    threshold:
        Occurrences of one signature inside the window that trip the breaker.
    """

    def __init__(
        self,
        *,
        window_size: int = DEFAULT_WINDOW_SIZE,
        threshold: int = DEFAULT_THRESHOLD,
    ) -> None:
        if int(window_size) < 1:
            raise ValueError("window_size must be >= 1")
        if int(threshold) < 1:
            raise ValueError("threshold must be >= 1")
        self.window_size = int(window_size)
        self.threshold = int(threshold)
        self._window: deque[FailureEntry] = deque(maxlen=self.window_size)
        self._tripped: BreakerVerdict | None = None
        logger.debug(
            "Circuit breaker initialised (window=%d, threshold=%d)",
            self.window_size,
            self.threshold,
        )

    @property
    def tripped(self) -> bool:
        return self._tripped is not None

    @property
    def last_trip(self) -> BreakerVerdict | None:
        return self._tripped

    def record_failure(
        self,
        message: str,
        attempt: int,
        source: str = SOURCE_TEST,
    ) -> BreakerVerdict:
        """Track one failure and report whether the breaker has tripped."""
        if source == SOURCE_ADVERSARIAL:
            logger.debug("Adversarial failure ignored by circuit breaker (attempt %d)", attempt)
            return BreakerVerdict(
                tripped=False,
                signature="",
                count=0,
                threshold=self.threshold,
                message="Adversarial failures do not count toward the breaker",
            )

        signature = normalize_signature(message)
        self._window.append(
            FailureEntry(signature=signature, original=message or "", attempt=attempt, source=source)
        )
        occurrences = tuple(e for e in self._window if e.signature == signature)
        count = len(occurrences)

        if count >= self.threshold:
            verdict = BreakerVerdict(
                tripped=True,
                signature=signature,
                count=count,
                threshold=self.threshold,
                message=f"Circuit breaker triggered: {count} identical failures detected",
                occurrences=occurrences,
            )
            self._tripped = verdict
            logger.error(
                "Circuit breaker tripped: %r seen %d times (attempts %s)",
                signature,
                count,
                [e.attempt for e in occurrences],
            )
            return verdict

        if count > 1:
            logger.warning(
                "Repeated failure signature (%d/%d): %s", count, self.threshold, signature[:120]
            )
        return BreakerVerdict(
            tripped=False,
            signature=signature,
            count=count,
            threshold=self.threshold,
            message=f"Failure tracked: {count}/{self.threshold}",
            occurrences=occurrences,
        )

    def history(self) -> list[FailureEntry]:
        return list(self._window)

    def counts(self) -> dict[str, int]:
        """Occurrences per signature currently inside the window."""
        return dict(Counter(e.signature for e in self._window))

    def stats(self) -> dict[str, object]:
        """Summary of the window: totals, most common signature, entropy ratio.

        The entropy ratio is unique signatures over total failures; values
        near zero mean one failure keeps repeating.
        """
        counts = Counter(e.signature for e in self._window)
        total = sum(counts.values())
        most_common = counts.most_common(1)
        return {
            "total_failures": total,
            "unique_failures": len(counts),
            "most_common": (
                {"signature": most_common[0][0], "count": most_common[0][1]}
                if most_common
                else None
            ),
            "entropy_ratio": (len(counts) / total) if total else 0.0,
        }

    def is_stuck(self) -> bool:
        """Return True when the window looks close to tripping."""
        stats = self.stats()
        total = int(stats["total_failures"])  # type: ignore[arg-type]
        low_entropy = float(stats["entropy_ratio"]) < 0.3 and total >= 3  # type: ignore[arg-type]
        most_common = stats["most_common"]
        near_threshold = bool(
            most_common and most_common["count"] >= max(1, self.threshold - 1)  # type: ignore[index]
        )
        return low_entropy or near_threshold

    def reset(self) -> None:
        self._window.clear()
        self._tripped = None
        logger.info("Circuit breaker reset")


def format_trip(verdict: BreakerVerdict) -> str:
    """Render a breaker verdict for humans."""
    if not verdict.tripped:
        return f"Failure tracked: {verdict.count}/{verdict.threshold} ({verdict.message})"
    lines = [
        "CIRCUIT BREAKER TRIGGERED",
        "",
        f"Identical failure detected {verdict.count} times (threshold: {verdict.threshold})",
        "",
        "Failure signature:",
        f"  {verdict.signature}",
        "",
        "Occurrences:",
    ]
    for entry in verdict.occurrences:
        original = entry.original if len(entry.original) <= 80 else entry.original[:77] + "..."
        lines.append(f"  Attempt {entry.attempt}: {original}")
    lines.extend(
        [
            "",
            "Manual intervention required:",
            "  - Review test expectations",
            "  - Check environment configuration",
            "  - Verify dependencies",
        ]
    )
    return "\n".join(lines)
