"""Escalation bundle builder.

Turns the attempt records of finished tiers into a bounded plain-text digest
handed to the next tier. The function is pure: the same records always give
byte-identical text.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from itertools import groupby

from repair_ladder.circuit_breaker import normalize_signature
from repair_ladder.schemas import AttemptRecord

DEFAULT_MAX_CHARS = 4000
TRUNCATION_MARKER = "[truncated]"

_MAX_CHANGE_CHARS = 200
_MAX_ERROR_CHARS = 300
_MAX_UNIQUE_ERRORS = 5
_MAX_NAME_CHARS = 80


@dataclass(frozen=True)
class EscalationBundle:
    """Failure digest for the next tier (derived, never persisted)."""

    text: str = ""
    tiers_covered: tuple[str, ...] = ()
    total_attempts: int = 0
    total_cost_usd: float = 0.0
    unique_errors: tuple[str, ...] = ()
    last_failing_tests: tuple[str, ...] = ()
    truncated: bool = False
    sections: tuple[str, ...] = field(default=(), repr=False)

    @property
    def empty(self) -> bool:
        return not self.text


def build_escalation_bundle(
    records: Sequence[AttemptRecord],
    *,
    max_chars: int = DEFAULT_MAX_CHARS,
) -> EscalationBundle:
    """Build the escalation bundle from *records*.

    Records are grouped by tier index (ascending). Each tier contributes one
    section; sections are joined oldest first. When the text exceeds
    *max_chars*, whole sections are dropped from the oldest end and a
    ``[truncated]`` marker line leads the result.
    """
    if not records:
        return EscalationBundle()

    ordered = sorted(records, key=lambda r: (r.tier_index, r.attempt_number))
    groups = [list(g) for _, g in groupby(ordered, key=lambda r: r.tier_index)]
    sections = tuple(_tier_section(group) for group in groups)

    text, truncated = _fit(sections, max_chars)
    last = ordered[-1]
    return EscalationBundle(
        text=text,
        tiers_covered=tuple(group[0].tier_name for group in groups),
        total_attempts=len(ordered),
        total_cost_usd=sum(r.cost_usd for r in ordered),
        unique_errors=tuple(distinct_errors(m for r in ordered for m in r.error_messages)),
        last_failing_tests=tuple(last.failing_tests),
        truncated=truncated,
        sections=sections,
    )


def _tier_section(records: list[AttemptRecord]) -> str:
    first = records[0]
    count = len(records)
    header = (
        f"=== TIER {first.tier_index + 1}: {_one_line(first.tier_name, _MAX_NAME_CHARS)} "
        f"({count} attempt{'s' if count != 1 else ''}) ==="
    )
    lines = [header]
    for rec in records:
        change = _one_line(rec.change_description, _MAX_CHANGE_CHARS) or "code modified"
        top = [_one_line(m, _MAX_ERROR_CHARS) for m in rec.error_messages[:2]]
        outcome = "; ".join(m for m in top if m) or f"{rec.verdict.value}, no error captured"
        lines.append(f"attempt {rec.attempt_number}: {change.rstrip('.')}. outcome: {outcome}")
    unique = distinct_errors(m for r in records for m in r.error_messages)
    shown = [_one_line(u, _MAX_ERROR_CHARS) for u in unique[:_MAX_UNIQUE_ERRORS]]
    lines.append(f"unique errors: {' | '.join(shown) if shown else 'none'}")
    return "\n".join(lines)


def _fit(sections: tuple[str, ...], max_chars: int) -> tuple[str, bool]:
    full = "\n\n".join(sections)
    if len(full) <= max_chars:
        return full, False

    for start in range(1, len(sections)):
        candidate = TRUNCATION_MARKER + "\n" + "\n\n".join(sections[start:])
        if len(candidate) <= max_chars:
            return candidate, True

    # The newest section alone is over budget: keep its header plus the most
    # recent whole lines that fit.
    lines = sections[-1].split("\n")
    header, body = lines[0], lines[1:]
    kept: list[str] = []
    used = len(TRUNCATION_MARKER) + 1 + len(header) + 1
    for line in reversed(body):
        if used + len(line) + 1 > max_chars:
            break
        kept.append(line)
        used += len(line) + 1
    kept.reverse()
    if used - 1 > max_chars:
        return TRUNCATION_MARKER, True
    return "\n".join([TRUNCATION_MARKER, header, *kept]), True


def distinct_errors(messages: Iterable[str]) -> list[str]:
    """First occurrence of each distinct normalized error, in order."""
    seen: set[str] = set()
    out: list[str] = []
    for message in messages:
        if not message or not message.strip():
            continue
        key = normalize_signature(message)
        if key in seen:
            continue
        seen.add(key)
        out.append(message.strip())
    return out


def _one_line(text: str, limit: int) -> str:
    flat = " ".join((text or "").split())
    if len(flat) <= limit:
        return flat
    return flat[: limit - 3] + "..."
