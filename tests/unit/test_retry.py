"""Tests for storesync.retry: attempt counting, observer calls, delay schedule."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from storesync.exceptions import PermanentApplyError, TransientInfrastructureError
from storesync.retry import compute_delay, retry


class Flaky:
    """Fails *failures* times, then returns "ok"."""

    def __init__(self, failures: int, exc: type[Exception] = TransientInfrastructureError) -> None:
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return "ok"


class TestRetry:
    def test_first_success_needs_no_retry(self):
        observed = []
        sleeps = []
        assert retry(Flaky(0), on_retry=lambda n, e: observed.append(n), sleep=sleeps.append) == "ok"
        assert observed == []
        assert sleeps == []

    @pytest.mark.parametrize("failures", [1, 2])
    def test_k_failures_then_success_calls_observer_k_times(self, failures):
        op = Flaky(failures)
        observed = []
        result = retry(op, max_attempts=3, on_retry=lambda n, e: observed.append(n), sleep=lambda _: None)
        assert result == "ok"
        assert op.calls == failures + 1
        assert observed == list(range(1, failures + 1))

    def test_exhaustion_reraises_last_error(self):
        op = Flaky(10)
        observed = []
        with pytest.raises(TransientInfrastructureError, match="failure 3"):
            retry(op, max_attempts=3, on_retry=lambda n, e: observed.append(n), sleep=lambda _: None)
        assert op.calls == 3
        # observer never fires after the final attempt
        assert observed == [1, 2]

    def test_single_attempt_never_sleeps(self):
        sleeps = []
        with pytest.raises(TransientInfrastructureError):
            retry(Flaky(1), max_attempts=1, sleep=sleeps.append)
        assert sleeps == []

    def test_non_retryable_error_propagates_immediately(self):
        op = Flaky(1, exc=PermanentApplyError)
        with pytest.raises(PermanentApplyError):
            retry(op, retry_on=(TransientInfrastructureError,), sleep=lambda _: None)
        assert op.calls == 1

    def test_exponential_schedule(self):
        sleeps = []
        with pytest.raises(TransientInfrastructureError):
            retry(Flaky(10), max_attempts=5, base_delay=1.0, max_delay=30.0, sleep=sleeps.append)
        assert sleeps == [1.0, 2.0, 4.0, 8.0]

    def test_max_delay_caps_schedule(self):
        sleeps = []
        with pytest.raises(TransientInfrastructureError):
            retry(Flaky(10), max_attempts=5, base_delay=5.0, max_delay=12.0, sleep=sleeps.append)
        assert sleeps == [5.0, 10.0, 12.0, 12.0]

    def test_observer_receives_error(self):
        errors = []
        retry(Flaky(1), on_retry=lambda n, e: errors.append(e), sleep=lambda _: None)
        assert isinstance(errors[0], TransientInfrastructureError)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            retry(Flaky(0), max_attempts=0)


class TestComputeDelay:
    def test_first_attempt_is_base(self):
        assert compute_delay(1, 1.5, 30.0) == 1.5

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            compute_delay(0, 1.0, 30.0)

    @given(
        attempt=st.integers(min_value=1, max_value=40),
        base=st.floats(min_value=0.0, max_value=10.0),
        cap=st.floats(min_value=0.0, max_value=120.0),
    )
    def test_bounded_and_non_decreasing(self, attempt, base, cap):
        delay = compute_delay(attempt, base, cap)
        assert 0.0 <= delay <= cap
        assert compute_delay(attempt + 1, base, cap) >= delay
