"""Append-only audit trail of attempts and sessions.

Two relations, both keyed by session id:

- one row per attempt (``tier_attempts``)
- one row per session (``run_metadata``), upserted at start and finish

Persistence is best-effort. Sinks may raise; :class:`AuditLog` wraps every
call, logs failures as warnings and hands back a :class:`WriteOutcome` so the
loop can carry on regardless.
"""

from __future__ import annotations

import abc
import json
import logging
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from repair_ladder.schemas import AttemptRecord, SessionSummary

logger = logging.getLogger(__name__)

ATTEMPTS_FILE = "attempts.jsonl"
SESSIONS_FILE = "sessions.jsonl"
DEFAULT_LOCK_TIMEOUT = 0.5

_DDL = """
CREATE TABLE IF NOT EXISTS tier_attempts (
  id                  INTEGER PRIMARY KEY AUTOINCREMENT,
  session_id          TEXT    NOT NULL,
  tier_index          INTEGER NOT NULL,
  tier_name           TEXT    NOT NULL,
  tier_mode           TEXT    NOT NULL CHECK (tier_mode IN ('restricted', 'full')),
  models              TEXT    NOT NULL DEFAULT '{}',
  attempt_number      INTEGER NOT NULL,
  change_description  TEXT    NOT NULL DEFAULT '',
  verdict             TEXT    NOT NULL CHECK (verdict IN ('passed', 'failed', 'errored')),
  failing_tests       TEXT    NOT NULL DEFAULT '[]',
  error_messages      TEXT    NOT NULL DEFAULT '[]',
  cost_usd            REAL    NOT NULL DEFAULT 0.0,
  tokens_used         INTEGER NOT NULL DEFAULT 0,
  duration_seconds    REAL    NOT NULL DEFAULT 0.0,
  failed_phase        TEXT,
  review_approved     INTEGER,
  adversarial_passed  INTEGER,
  completed_at        TEXT    NOT NULL,
  UNIQUE (session_id, tier_index, attempt_number)
);

CREATE TABLE IF NOT EXISTS run_metadata (
  session_id          TEXT    PRIMARY KEY,
  objective           TEXT    NOT NULL,
  working_directory   TEXT    NOT NULL,
  test_command        TEXT    NOT NULL,
  started_at          TEXT    NOT NULL,
  finished_at         TEXT,
  outcome             TEXT    NOT NULL,
  resolved_tier_name  TEXT,
  resolved_attempt    INTEGER
);

CREATE INDEX IF NOT EXISTS idx_tier_attempts_session ON tier_attempts(session_id);
CREATE INDEX IF NOT EXISTS idx_tier_attempts_session_tier ON tier_attempts(session_id, tier_index);
"""


@dataclass(frozen=True)
class WriteOutcome:
    """Acknowledgement of one audit write. Callers may ignore ``ok``."""

    ok: bool
    operation: str
    error: str = ""


class AuditSink(abc.ABC):
    """Persistence backend for the audit trail."""

    @abc.abstractmethod
    def append(self, record: AttemptRecord) -> None:
        """Persist one attempt record."""

    @abc.abstractmethod
    def upsert_session(self, summary: SessionSummary) -> None:
        """Insert or replace the session row."""

    def close(self) -> None:
        """Release any held resources."""
        return None


class NullAuditSink(AuditSink):
    """Sink that discards everything."""

    def append(self, record: AttemptRecord) -> None:
        return None

    def upsert_session(self, summary: SessionSummary) -> None:
        return None


class SqliteAuditSink(AuditSink):
    """SQLite-backed audit trail.

    Parameters
    ----------
    db_path:
        Database file; parent directories are created.
    timeout:
        Seconds to wait on a locked database before a write fails.
    """

    def __init__(self, db_path: str | Path, *, timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self.db_path), timeout=timeout, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self._conn.executescript(_DDL)
            self._conn.commit()

    def append(self, record: AttemptRecord) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO tier_attempts (
                  session_id, tier_index, tier_name, tier_mode, models, attempt_number,
                  change_description, verdict, failing_tests, error_messages,
                  cost_usd, tokens_used, duration_seconds, failed_phase,
                  review_approved, adversarial_passed, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.session_id,
                    record.tier_index,
                    record.tier_name,
                    record.tier_mode.value,
                    json.dumps(record.models.model_dump(exclude_none=True)),
                    record.attempt_number,
                    record.change_description,
                    record.verdict.value,
                    json.dumps(list(record.failing_tests)),
                    json.dumps(list(record.error_messages)),
                    record.cost_usd,
                    record.tokens_used,
                    record.duration_seconds,
                    record.failed_phase.value if record.failed_phase else None,
                    _bool_to_int(record.review_approved),
                    _bool_to_int(record.adversarial_passed),
                    record.completed_at,
                ),
            )
            self._conn.commit()

    def upsert_session(self, summary: SessionSummary) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO run_metadata (
                  session_id, objective, working_directory, test_command,
                  started_at, finished_at, outcome, resolved_tier_name, resolved_attempt
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                  finished_at = excluded.finished_at,
                  outcome = excluded.outcome,
                  resolved_tier_name = excluded.resolved_tier_name,
                  resolved_attempt = excluded.resolved_attempt
                """,
                (
                    summary.session_id,
                    summary.objective,
                    summary.working_directory,
                    summary.test_command,
                    summary.started_at,
                    summary.finished_at,
                    summary.outcome,
                    summary.resolved_tier_name,
                    summary.resolved_attempt,
                ),
            )
            self._conn.commit()

    def attempts(self, session_id: str) -> list[dict[str, Any]]:
        """Return the session's attempt rows ordered by tier then attempt."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM tier_attempts WHERE session_id = ? "
                "ORDER BY tier_index, attempt_number",
                (session_id,),
            ).fetchall()
        out: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["models"] = json.loads(item["models"] or "{}")
            item["failing_tests"] = json.loads(item["failing_tests"] or "[]")
            item["error_messages"] = json.loads(item["error_messages"] or "[]")
            out.append(item)
        return out

    def session(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM run_metadata WHERE session_id = ?", (session_id,)
            ).fetchone()
        return dict(row) if row is not None else None

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class JsonlAuditSink(AuditSink):
    """Append-only JSONL audit trail under ``<root>/``.

    Session upserts append a new line; the last line per session id wins
    when read back.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.attempts_path = self.root / ATTEMPTS_FILE
        self.sessions_path = self.root / SESSIONS_FILE
        self._lock = threading.Lock()

    def _append_line(self, path: Path, payload: dict[str, Any]) -> None:
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False) + "\n")

    def append(self, record: AttemptRecord) -> None:
        self._append_line(self.attempts_path, record.model_dump(mode="json"))

    def upsert_session(self, summary: SessionSummary) -> None:
        self._append_line(self.sessions_path, summary.model_dump(mode="json"))

    def attempts(self, session_id: str) -> list[AttemptRecord]:
        return [
            AttemptRecord.model_validate(item)
            for item in _read_jsonl(self.attempts_path)
            if item.get("session_id") == session_id
        ]

    def session(self, session_id: str) -> SessionSummary | None:
        latest: dict[str, Any] | None = None
        for item in _read_jsonl(self.sessions_path):
            if item.get("session_id") == session_id:
                latest = item
        return SessionSummary.model_validate(latest) if latest is not None else None


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    items: list[dict[str, Any]] = []
    with path.open(encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError as ex:
                logger.warning("Skip invalid audit line in %s: %s", path.name, ex)
    return items


def _bool_to_int(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


class AuditLog:
    """Best-effort front for an :class:`AuditSink`.

    No method raises. Failures are logged and counted, never propagated.
    """

    def __init__(self, sink: AuditSink | None = None) -> None:
        self.sink = sink or NullAuditSink()
        self.failures = 0

    def append(self, record: AttemptRecord) -> WriteOutcome:
        return self._guard(
            "append",
            lambda: self.sink.append(record),
            f"tier={record.tier_name} attempt={record.attempt_number}",
        )

    def upsert_session(self, summary: SessionSummary) -> WriteOutcome:
        return self._guard(
            "upsert_session",
            lambda: self.sink.upsert_session(summary),
            f"session={summary.session_id} outcome={summary.outcome}",
        )

    def close(self) -> WriteOutcome:
        return self._guard("close", self.sink.close, type(self.sink).__name__)

    def _guard(self, operation: str, call: Callable[[], None], detail: str) -> WriteOutcome:
        try:
            call()
        except Exception as exc:
            self.failures += 1
            logger.warning(
                "[audit] %s failed (%s): %s - continuing", operation, detail, exc
            )
            return WriteOutcome(ok=False, operation=operation, error=str(exc))
        return WriteOutcome(ok=True, operation=operation)
