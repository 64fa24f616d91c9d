"""Retry/backoff policy for failed job attempts."""

from __future__ import annotations

from dataclasses import dataclass

from agent_desk.jobs.models import PERMANENT_FAILURE_TYPES, FailureType

_MAX_EXPONENT = 62


@dataclass(slots=True)
class RetryDecision:
    """Decision returned by retry policy."""

    should_retry: bool
    delay_seconds: float
    reason: str


def compute_backoff_seconds(*, retry_count: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential delay for the attempt that just failed, capped at ``max_seconds``.

    ``retry_count`` is the number of claims so far; the result never decreases
    as it grows.
    """

    exponent = min(max(retry_count, 0), _MAX_EXPONENT)
    return min(max_seconds, base_seconds * (2**exponent))


def decide_retry(
    *,
    failure_type: FailureType,
    retry_count: int,
    max_retries: int,
    base_seconds: float,
    max_seconds: float,
) -> RetryDecision:
    """Requeue transient failures while the retry budget lasts."""

    if failure_type in PERMANENT_FAILURE_TYPES:
        return RetryDecision(
            should_retry=False,
            delay_seconds=0.0,
            reason=f"Failure type {failure_type.value} is permanent.",
        )
    if retry_count >= max_retries:
        return RetryDecision(
            should_retry=False,
            delay_seconds=0.0,
            reason=f"Retry budget exhausted ({retry_count}/{max_retries}).",
        )
    return RetryDecision(
        should_retry=True,
        delay_seconds=compute_backoff_seconds(
            retry_count=retry_count,
            base_seconds=base_seconds,
            max_seconds=max_seconds,
        ),
        reason=f"Retrying {failure_type.value} failure ({retry_count}/{max_retries}).",
    )
