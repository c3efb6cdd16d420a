"""
Tests for pkgtrace.retry module.
"""

from __future__ import annotations

import pytest

from pkgtrace.logging import RecordingLogger
from pkgtrace.retry import RetryPolicy, retry_until

pytestmark = pytest.mark.unit


class TestRetryPolicy:
    """Tests for RetryPolicy validation."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.attempts == 3
        assert policy.delay == 10.0

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(attempts=0)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(delay=-1)


class TestRetryUntil:
    """Tests for retry_until function."""

    def test_first_attempt_satisfied(self):
        sleeps: list[float] = []

        outcome = retry_until(lambda n: n, lambda v: True, RetryPolicy(), sleep=sleeps.append)

        assert outcome.value == 1
        assert outcome.attempts == 1
        assert outcome.retries == 0
        assert outcome.satisfied
        assert sleeps == []

    def test_retries_until_predicate_holds(self):
        sleeps: list[float] = []

        outcome = retry_until(
            lambda n: n,
            lambda v: v >= 2,
            RetryPolicy(attempts=5, delay=1.5),
            sleep=sleeps.append,
        )

        assert outcome.value == 2
        assert outcome.retries == 1
        assert sleeps == [1.5]

    def test_exhausted_returns_last_value(self):
        logger = RecordingLogger()

        outcome = retry_until(
            lambda n: n,
            lambda v: False,
            RetryPolicy(attempts=3, delay=0),
            sleep=lambda s: None,
            logger=logger,
            label="probe",
        )

        assert outcome.value == 3
        assert outcome.attempts == 3
        assert not outcome.satisfied
        assert logger.messages("warning") == ["probe: still unsatisfied after 3 attempt(s)"]
