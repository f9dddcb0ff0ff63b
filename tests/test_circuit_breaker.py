"""Tests for failure-signature normalization and the circuit breaker."""

from __future__ import annotations

import logging

import pytest

from repair_ladder.circuit_breaker import (
    SOURCE_ADVERSARIAL,
    SOURCE_AGENT,
    CircuitBreaker,
    format_trip,
    normalize_signature,
)


class TestNormalizeSignature:
    def test_line_and_column_numbers_collapse(self):
        a = normalize_signature("TypeError at src/app.py:12:5: undefined is not a function")
        b = normalize_signature("TypeError at src/app.py:98:17: undefined is not a function")
        assert a == b

    def test_timings_dates_and_addresses_collapse(self):
        a = normalize_signature("Timeout after 1500ms at 2024-01-02 10:11:12 (0xdeadbeef)")
        b = normalize_signature("Timeout after 20 ms at 2025-12-31 23:59:59 (0x1f)")
        assert a == b

    def test_directory_prefixes_collapse(self):
        a = normalize_signature("ImportError: /home/alice/proj/pkg/mod.py missing")
        b = normalize_signature("ImportError: /tmp/build/pkg/mod.py missing")
        assert a == b

    def test_case_and_whitespace(self):
        assert normalize_signature("  Assertion   FAILED\n") == "assertion failed"

    def test_empty_message(self):
        assert normalize_signature("") == "unknown-error"
        assert normalize_signature("   ") == "unknown-error"

    def test_distinct_errors_stay_distinct(self):
        assert normalize_signature("KeyError: 'a'") != normalize_signature("ValueError: bad")


class TestCircuitBreaker:
    def test_trips_on_third_identical_failure(self, caplog):
        breaker = CircuitBreaker()
        with caplog.at_level(logging.ERROR):
            assert not breaker.record_failure("assert 1 == 2 at line 10", 1).tripped
            assert not breaker.record_failure("assert 1 == 2 at line 11", 2).tripped
            verdict = breaker.record_failure("assert 1 == 2 at line 12", 3)

        assert verdict.tripped
        assert verdict.count == 3
        assert [e.attempt for e in verdict.occurrences] == [1, 2, 3]
        assert breaker.tripped
        assert breaker.last_trip is verdict
        assert "Circuit breaker tripped" in caplog.text

        trip = verdict.to_trip()
        assert trip.attempts == [1, 2, 3]
        assert trip.threshold == 3

    def test_different_error_does_not_reset_other_counts(self):
        breaker = CircuitBreaker()
        breaker.record_failure("KeyError: 'x'", 1)
        breaker.record_failure("ValueError: nope", 2)
        breaker.record_failure("KeyError: 'x'", 3)
        breaker.record_failure("ValueError: nope", 4)
        assert breaker.counts() == {"keyerror: 'x'": 2, "valueerror: nope": 2}
        assert breaker.record_failure("KeyError: 'x'", 5).tripped

    def test_adversarial_failures_are_ignored(self):
        breaker = CircuitBreaker(threshold=2)
        for attempt in range(5):
            verdict = breaker.record_failure("edge case broke", attempt, source=SOURCE_ADVERSARIAL)
            assert not verdict.tripped
        assert breaker.history() == []

    def test_agent_failures_count(self):
        breaker = CircuitBreaker(threshold=2)
        breaker.record_failure("generate phase failed: timeout", 1, source=SOURCE_AGENT)
        assert breaker.record_failure("generate phase failed: timeout", 2, source=SOURCE_AGENT).tripped

    def test_old_signatures_fall_out_of_window(self):
        breaker = CircuitBreaker(window_size=3, threshold=2)
        breaker.record_failure("same", 1)
        breaker.record_failure("other a", 2)
        breaker.record_failure("other b", 3)
        breaker.record_failure("other c", 4)
        assert not breaker.record_failure("same", 5).tripped

    def test_stats_and_is_stuck(self):
        breaker = CircuitBreaker()
        assert breaker.stats()["total_failures"] == 0
        assert not breaker.is_stuck()

        breaker.record_failure("boom", 1)
        breaker.record_failure("boom", 2)
        stats = breaker.stats()
        assert stats["total_failures"] == 2
        assert stats["unique_failures"] == 1
        assert stats["most_common"] == {"signature": "boom", "count": 2}
        assert breaker.is_stuck()

    def test_reset_clears_window_and_trip(self):
        breaker = CircuitBreaker(threshold=1)
        assert breaker.record_failure("x", 1).tripped
        breaker.reset()
        assert not breaker.tripped
        assert breaker.history() == []

    @pytest.mark.parametrize("kwargs", [{"window_size": 0}, {"threshold": 0}])
    def test_rejects_non_positive_settings(self, kwargs):
        with pytest.raises(ValueError):
            CircuitBreaker(**kwargs)


def test_format_trip_lists_occurrences():
    breaker = CircuitBreaker(threshold=2)
    breaker.record_failure("fail at line 3", 4)
    verdict = breaker.record_failure("fail at line 9", 7)

    text = format_trip(verdict)
    assert "CIRCUIT BREAKER TRIGGERED" in text
    assert "fail at line x" in text
    assert "Attempt 4: fail at line 3" in text
    assert "Attempt 7: fail at line 9" in text


def test_format_untripped_verdict():
    verdict = CircuitBreaker().record_failure("x", 1)
    assert format_trip(verdict).startswith("Failure tracked: 1/3")
