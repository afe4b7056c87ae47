"""
run_with_retry: which failures are retried, how long it waits, and when it
gives up.

No database here; the wrapped callable returns canned CoreResults.
"""

import random

import pytest

from inventory_kernel.domain.results import CoreError, CoreResult
from inventory_kernel.exceptions import ErrorKind
from inventory_kernel.services.retry import RetryPolicy, run_with_retry


def _conflict() -> CoreResult:
    return CoreResult.failure(
        CoreError(ErrorKind.CONCURRENT_MODIFICATION, "CONCURRENT_MODIFICATION", "lost race")
    )


def _terminal() -> CoreResult:
    return CoreResult.failure(
        CoreError(ErrorKind.INSUFFICIENT_STOCK, "INSUFFICIENT_STOCK", "only 4 on hand")
    )


class _Script:
    """Returns the queued results in order and counts the calls."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.results.pop(0)


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert (policy.max_attempts, policy.base_delay_ms, policy.max_delay_ms) == (5, 50, 2000)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"base_delay_ms": -1},
            {"base_delay_ms": 500, "max_delay_ms": 100},
        ],
    )
    def test_rejects_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay_ms=100, max_delay_ms=300)
        rng = random.Random(7)
        for attempt in range(1, 10):
            assert 0 <= policy.delay_seconds(attempt, rng) <= 0.3

    def test_delay_ceiling_doubles(self):
        class _Top(random.Random):
            def uniform(self, a, b):
                return b

        policy = RetryPolicy(base_delay_ms=10, max_delay_ms=1000)
        delays = [policy.delay_seconds(n, _Top()) for n in (1, 2, 3, 4)]
        assert delays == [0.01, 0.02, 0.04, 0.08]


class TestRunWithRetry:
    def test_success_is_returned_without_sleeping(self):
        slept = []
        fn = _Script(CoreResult.success("done"))

        result = run_with_retry(fn, RetryPolicy(), sleep=slept.append)

        assert result.value == "done"
        assert fn.calls == 1
        assert slept == []

    def test_conflict_then_success(self):
        slept = []
        fn = _Script(_conflict(), _conflict(), CoreResult.success(42))

        result = run_with_retry(fn, RetryPolicy(), sleep=slept.append, rng=random.Random(1))

        assert result.ok
        assert result.value == 42
        assert fn.calls == 3
        assert len(slept) == 2

    def test_terminal_error_is_not_retried(self):
        fn = _Script(_terminal())

        result = run_with_retry(fn, RetryPolicy(), sleep=lambda _: None)

        assert result.error.kind is ErrorKind.INSUFFICIENT_STOCK
        assert fn.calls == 1

    def test_gives_up_after_max_attempts(self, captured_logs):
        fn = _Script(*[_conflict() for _ in range(3)])

        result = run_with_retry(fn, RetryPolicy(max_attempts=3), sleep=lambda _: None)

        assert result.error.kind is ErrorKind.CONCURRENT_MODIFICATION
        assert fn.calls == 3

        messages = [r["message"] for r in captured_logs()]
        assert messages.count("coordinator_call_retrying") == 2
        exhausted = [r for r in captured_logs() if r["message"] == "coordinator_call_retries_exhausted"]
        assert exhausted[0]["attempts"] == 3
        assert exhausted[0]["error_code"] == "CONCURRENT_MODIFICATION"

    def test_terminal_error_after_retry_stops(self):
        fn = _Script(_conflict(), _terminal(), CoreResult.success(1))

        result = run_with_retry(fn, RetryPolicy(), sleep=lambda _: None)

        assert result.error.kind is ErrorKind.INSUFFICIENT_STOCK
        assert fn.calls == 2
