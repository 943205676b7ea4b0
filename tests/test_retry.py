import random

from vatcheck.jobs.retry import (
    RETRY_EXHAUSTED_CODE,
    ErrorClass,
    RetryPolicy,
    classify_upstream_error,
    is_retryable,
)


def _policy(**overrides) -> RetryPolicy:
    values = {
        "max_attempts": 4,
        "default_ladder": [1, 2, 4],
        "congestion_ladder": [10, 20],
        "jitter_seconds": 0.0,
    }
    values.update(overrides)
    return RetryPolicy(**values)


def test_classify_upstream_error_maps_codes_and_statuses() -> None:
    assert classify_upstream_error("MS_MAX_CONCURRENT_REQ", 200) is ErrorClass.UPSTREAM_CONGESTION
    assert classify_upstream_error("GLOBAL_MAX_CONCURRENT_REQ") is ErrorClass.UPSTREAM_CONGESTION
    assert classify_upstream_error("HTTP_429", 429) is ErrorClass.UPSTREAM_CONGESTION
    assert classify_upstream_error("MS_UNAVAILABLE", 200) is ErrorClass.UPSTREAM_UNAVAILABLE
    assert classify_upstream_error("HTTP_503", 503) is ErrorClass.UPSTREAM_UNAVAILABLE
    assert classify_upstream_error("TIMEOUT", 0) is ErrorClass.NETWORK_OR_TIMEOUT
    assert classify_upstream_error("HTTP_504", 504) is ErrorClass.NETWORK_OR_TIMEOUT
    assert classify_upstream_error("INVALID_INPUT", 400) is ErrorClass.UPSTREAM_REJECTED
    assert classify_upstream_error(None, 404) is ErrorClass.UPSTREAM_REJECTED


def test_only_transient_classes_are_retryable() -> None:
    assert is_retryable(ErrorClass.UPSTREAM_CONGESTION)
    assert is_retryable(ErrorClass.UPSTREAM_UNAVAILABLE)
    assert is_retryable(ErrorClass.NETWORK_OR_TIMEOUT)
    assert not is_retryable(ErrorClass.UPSTREAM_REJECTED)
    assert not is_retryable(ErrorClass.MALFORMED_INPUT)
    assert not is_retryable(ErrorClass.RETRY_BUDGET_EXHAUSTED)


def test_delay_follows_ladder_and_clamps_at_last_step() -> None:
    policy = _policy()
    assert [policy.delay_seconds(ErrorClass.NETWORK_OR_TIMEOUT, n) for n in (1, 2, 3, 4, 9)] == [1, 2, 4, 4, 4]
    assert [policy.delay_seconds(ErrorClass.UPSTREAM_CONGESTION, n) for n in (1, 2, 3)] == [10, 20, 20]


def test_jitter_stays_within_bound() -> None:
    policy = _policy(jitter_seconds=0.5, rng=random.Random(7))
    for attempt in range(1, 20):
        delay = policy.delay_seconds(ErrorClass.UPSTREAM_UNAVAILABLE, attempt)
        base = [1, 2, 4][min(attempt, 3) - 1]
        assert base <= delay <= base + 0.5


def test_decide_gives_up_on_rejected_error_immediately() -> None:
    decision = _policy().decide(ErrorClass.UPSTREAM_REJECTED, "INVALID_INPUT", 1)
    assert decision.retry is False
    assert decision.error_code == "INVALID_INPUT"
    assert decision.attempts == 1


def test_decide_exhausts_budget_at_max_attempts() -> None:
    policy = _policy(max_attempts=3)
    assert policy.decide(ErrorClass.UPSTREAM_CONGESTION, "MS_MAX_CONCURRENT_REQ", 2).retry is True

    decision = policy.decide(ErrorClass.UPSTREAM_CONGESTION, "MS_MAX_CONCURRENT_REQ", 3)
    assert decision.retry is False
    assert decision.error_class is ErrorClass.RETRY_BUDGET_EXHAUSTED
    assert decision.error_code == RETRY_EXHAUSTED_CODE
