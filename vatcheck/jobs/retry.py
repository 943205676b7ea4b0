from __future__ import annotations

import random
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum


class ErrorClass(str, Enum):
    MALFORMED_INPUT = "malformed_input"
    NETWORK_OR_TIMEOUT = "network_or_timeout"
    UPSTREAM_CONGESTION = "upstream_congestion"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_REJECTED = "upstream_rejected"
    RETRY_BUDGET_EXHAUSTED = "retry_budget_exhausted"


MALFORMED_INPUT_CODE = "MALFORMED_INPUT"
RETRY_EXHAUSTED_CODE = "RETRY_BUDGET_EXHAUSTED"
STATUS_GATE_UNAVAILABLE_CODE = "MS_UNAVAILABLE_STATUS"
NETWORK_ERROR_CODE = "NETWORK_ERROR"
TIMEOUT_CODE = "TIMEOUT"

CONGESTION_CODES = {
    "GLOBAL_MAX_CONCURRENT_REQ",
    "GLOBAL_MAX_CONCURRENT_REQ_TIME",
    "MS_MAX_CONCURRENT_REQ",
    "MS_MAX_CONCURRENT_REQ_TIME",
}
UNAVAILABLE_CODES = {"SERVICE_UNAVAILABLE", "MS_UNAVAILABLE", STATUS_GATE_UNAVAILABLE_CODE}
NETWORK_CODES = {TIMEOUT_CODE, NETWORK_ERROR_CODE}
RETRYABLE_CLASSES = {
    ErrorClass.NETWORK_OR_TIMEOUT,
    ErrorClass.UPSTREAM_CONGESTION,
    ErrorClass.UPSTREAM_UNAVAILABLE,
}


def classify_upstream_error(error_code: str | None, http_status: int | None = None) -> ErrorClass:
    code = (error_code or "").upper()
    if code in CONGESTION_CODES or http_status == 429:
        return ErrorClass.UPSTREAM_CONGESTION
    if code in UNAVAILABLE_CODES or http_status in {502, 503}:
        return ErrorClass.UPSTREAM_UNAVAILABLE
    if code in NETWORK_CODES or http_status in {0, 504}:
        return ErrorClass.NETWORK_OR_TIMEOUT
    return ErrorClass.UPSTREAM_REJECTED


def is_retryable(error_class: ErrorClass) -> bool:
    return error_class in RETRYABLE_CLASSES


@dataclass(frozen=True, slots=True)
class RetryDecision:
    retry: bool
    attempts: int
    delay_seconds: float
    error_class: ErrorClass
    error_code: str


@dataclass(slots=True)
class RetryPolicy:
    """Backoff and retry budget shared by the fast and slow lanes.

    ``attempts`` passed to :meth:`decide` is the number of failed attempts
    including the one being decided on. Congestion signals use their own,
    steeper ladder; every other retryable class uses ``default_ladder``.
    Ladders are indexed by attempt and clamp at their last step.
    """

    max_attempts: int
    default_ladder: Sequence[float]
    congestion_ladder: Sequence[float]
    jitter_seconds: float = 0.0
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        self.max_attempts = max(1, self.max_attempts)
        self.default_ladder = tuple(max(0.0, float(step)) for step in self.default_ladder) or (0.0,)
        self.congestion_ladder = tuple(max(0.0, float(step)) for step in self.congestion_ladder) or self.default_ladder
        self.jitter_seconds = max(0.0, self.jitter_seconds)

    def delay_seconds(self, error_class: ErrorClass, attempt: int) -> float:
        ladder = self.congestion_ladder if error_class is ErrorClass.UPSTREAM_CONGESTION else self.default_ladder
        index = min(max(attempt, 1) - 1, len(ladder) - 1)
        jitter = self.rng.uniform(0.0, self.jitter_seconds) if self.jitter_seconds else 0.0
        return ladder[index] + jitter

    def decide(self, error_class: ErrorClass, error_code: str, attempts: int) -> RetryDecision:
        if not is_retryable(error_class):
            return RetryDecision(
                retry=False,
                attempts=attempts,
                delay_seconds=0.0,
                error_class=error_class,
                error_code=error_code,
            )
        if attempts >= self.max_attempts:
            return RetryDecision(
                retry=False,
                attempts=attempts,
                delay_seconds=0.0,
                error_class=ErrorClass.RETRY_BUDGET_EXHAUSTED,
                error_code=RETRY_EXHAUSTED_CODE,
            )
        return RetryDecision(
            retry=True,
            attempts=attempts,
            delay_seconds=self.delay_seconds(error_class, attempts),
            error_class=error_class,
            error_code=error_code,
        )
