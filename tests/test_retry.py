from unittest.mock import MagicMock

import pytest

from quick_ocp.errors import ReadinessTimeoutError
from quick_ocp.retry import RetryPolicy, attempt, poll_until


def test_for_duration_counts_whole_intervals():
    policy = RetryPolicy.for_duration(600, 10)
    assert policy.max_attempts == 60
    assert policy.timeout == 600
    assert RetryPolicy.for_duration(5, 10).max_attempts == 1


def test_unbounded_policy_has_no_timeout():
    assert RetryPolicy(max_attempts=None, interval=10).timeout is None


def test_poll_until_returns_once_done(fast_policy, no_sleep):
    check = MagicMock(side_effect=[(False, "a"), (False, "b"), (True, "ok")])
    assert poll_until(check, fast_policy, "thing") == "ok"
    assert check.call_count == 3
    assert no_sleep.call_count == 2
    no_sleep.assert_called_with(10)


def test_poll_until_times_out_with_last_detail(fast_policy):
    check = MagicMock(side_effect=[(False, ["x"]), (False, ["y"]), (False, ["pod-a", "pod-b"])])
    with pytest.raises(ReadinessTimeoutError) as err:
        poll_until(check, fast_policy, "pods")
    assert err.value.blockers == ["pod-a", "pod-b"]
    assert "30" in str(err.value)
    assert check.call_count == 3


def test_poll_until_wraps_scalar_detail(no_sleep):
    policy = RetryPolicy(max_attempts=1, interval=1, sleep=no_sleep)
    with pytest.raises(ReadinessTimeoutError) as err:
        poll_until(lambda: (False, "node not ready"), policy, "node")
    assert err.value.blockers == ["node not ready"]
    no_sleep.assert_not_called()


def test_poll_until_propagates_check_errors(fast_policy):
    check = MagicMock(side_effect=RuntimeError("boom"))
    with pytest.raises(RuntimeError):
        poll_until(check, fast_policy, "thing")
    assert check.call_count == 1


def test_poll_until_unbounded_keeps_going(no_sleep):
    policy = RetryPolicy(max_attempts=None, interval=10, sleep=no_sleep)
    results = [(False, "no")] * 25 + [(True, "yes")]
    check = MagicMock(side_effect=results)
    assert poll_until(check, policy, "node") == "yes"
    assert check.call_count == 26


def test_attempt_retries_listed_errors(fast_policy, no_sleep):
    func = MagicMock(side_effect=[ValueError("empty"), ValueError("empty"), "done"])
    assert attempt(func, fast_policy, retry_on=(ValueError,)) == "done"
    assert no_sleep.call_count == 2


def test_attempt_reraises_last_error(fast_policy):
    func = MagicMock(side_effect=[ValueError("1"), ValueError("2"), ValueError("3")])
    with pytest.raises(ValueError, match="3"):
        attempt(func, fast_policy, retry_on=(ValueError,))
    assert func.call_count == 3


def test_attempt_does_not_retry_other_errors(fast_policy):
    func = MagicMock(side_effect=KeyError("nope"))
    with pytest.raises(KeyError):
        attempt(func, fast_policy, retry_on=(ValueError,))
    assert func.call_count == 1
