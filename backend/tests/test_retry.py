"""
Retry Policy 测试
"""

import pytest

from conductor.core.retry import RetryPolicy
from conductor.errors import FailureKind


class TestBackoff:
    """退避时间测试"""

    def test_doubles_from_one_second(self):
        policy = RetryPolicy(jitter_ratio=0.0)
        assert [policy.base_delay(a) for a in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_thirty_seconds(self):
        policy = RetryPolicy(max_attempts=20, jitter_ratio=0.0)
        assert policy.base_delay(6) == 30.0
        assert policy.base_delay(12) == 30.0

    def test_jitter_is_additive_and_bounded(self):
        policy = RetryPolicy(jitter_ratio=0.1, rng=lambda a, b: b)
        assert policy.compute_delay(1) == pytest.approx(1.1)
        assert policy.compute_delay(3) == pytest.approx(4.4)

    def test_jitter_never_negative(self):
        policy = RetryPolicy(jitter_ratio=0.5, rng=lambda a, b: a)
        for attempt in range(1, 6):
            assert policy.compute_delay(attempt) >= policy.base_delay(attempt)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(jitter_ratio=-0.1)


class TestShouldRetry:
    """重试判定测试"""

    @pytest.mark.parametrize("kind", [
        FailureKind.RATE_LIMITED,
        FailureKind.OVERLOADED,
        FailureKind.NETWORK_FAILURE,
    ])
    def test_transient_kinds_retry(self, kind):
        assert RetryPolicy().should_retry(1, kind)

    @pytest.mark.parametrize("kind", [
        FailureKind.INVALID_REQUEST,
        FailureKind.AUTH_FAILURE,
        FailureKind.TOOL_LOOP_EXCEEDED,
        FailureKind.INTERNAL,
    ])
    def test_request_and_limit_kinds_do_not_retry(self, kind):
        assert not RetryPolicy().should_retry(1, kind)

    def test_five_attempts_total(self):
        policy = RetryPolicy()
        assert policy.should_retry(4, FailureKind.OVERLOADED)
        assert not policy.should_retry(5, FailureKind.OVERLOADED)
