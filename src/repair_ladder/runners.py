"""Test-runner collaborators: run the objective's test command."""

from __future__ import annotations

import abc
import logging
import re
import shlex
import subprocess
import time
from pathlib import Path

from repair_ladder.schemas import TestRunResult, TestVerdict

logger = logging.getLogger(__name__)

_MAX_ERROR_MESSAGES = 20

# ``FAILED tests/test_x.py::test_name - AssertionError: boom`` (pytest short summary)
_PYTEST_FAILED_RE = re.compile(r"^(?:FAILED|ERROR)\s+(\S+?)(?:\s+-\s+(.*))?$")


class TestRunnerError(RuntimeError):
    """Raised when the test command cannot be executed at all."""
    __test__ = False


class TestRunner(abc.ABC):
    """Common interface for test runners."""
    __test__ = False

    @abc.abstractmethod
    def run(self, command: str, working_dir: str | Path) -> TestRunResult:
        """Run *command* in *working_dir* and return a verdict.

        Raise :class:`TestRunnerError` when the command cannot be run.
        """


def parse_test_command(command: str) -> list[str]:
    """Split the session's test command into argv tokens.

    Unbalanced quotes fall back to a plain whitespace split.
    """
    try:
        return shlex.split(command)
    except ValueError:
        logger.warning("Unbalanced quotes in test command %r; splitting on whitespace", command)
        return command.split()


def extract_failures(output: str) -> tuple[list[str], list[str]]:
    """Pull failing test names and messages from pytest-style summary lines.

    Output from other frameworks yields no names; callers fall back to the
    tail of the output as the error message.
    """
    names: list[str] = []
    messages: list[str] = []
    for line in output.splitlines():
        match = _PYTEST_FAILED_RE.match(line.strip())
        if not match:
            continue
        names.append(match.group(1))
        if match.group(2):
            messages.append(match.group(2).strip())
    return names, messages


class SubprocessTestRunner(TestRunner):
    """Run the test command as a subprocess; exit code 0 means passed.

    Parameters
    ----------
    timeout:
        Maximum seconds to wait for the test command.
    """

    def __init__(self, timeout: int = 300) -> None:
        self.timeout = timeout

    def run(self, command: str, working_dir: str | Path) -> TestRunResult:
        argv = parse_test_command(command)
        if not argv:
            raise TestRunnerError("Empty test command")
        cwd = Path(working_dir).resolve()

        logger.info("Running tests: %s (cwd=%s)", " ".join(argv), cwd)
        start = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise TestRunnerError(f"Test command not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise TestRunnerError(f"Test command timed out after {self.timeout}s") from exc
        except (OSError, ValueError) as exc:
            raise TestRunnerError(f"Invalid test command configuration: {exc}") from exc
        duration = time.monotonic() - start

        combined = ((proc.stdout or "") + "\n" + (proc.stderr or "")).strip()
        summary = _summarise_output(combined)

        if proc.returncode == 0:
            return TestRunResult(
                verdict=TestVerdict.PASSED,
                summary=summary,
                exit_code=0,
                duration_seconds=duration,
            )

        names, messages = extract_failures(combined)
        if not messages:
            tail = [ln.strip() for ln in combined.splitlines() if ln.strip()][-3:]
            messages = tail or [f"Test command exited with code {proc.returncode}"]
        return TestRunResult(
            verdict=TestVerdict.FAILED,
            failing_tests=tuple(names),
            error_messages=tuple(messages[:_MAX_ERROR_MESSAGES]),
            summary=summary,
            exit_code=proc.returncode,
            duration_seconds=duration,
        )


def _summarise_output(text: str, keep: int = 30) -> str:
    """Keep the last *keep* lines of test output, where the verdict lives."""
    lines = text.splitlines()
    if len(lines) <= keep:
        return text
    dropped = len(lines) - keep
    return "\n".join([f"[{dropped} earlier line(s) dropped]", *lines[-keep:]])
