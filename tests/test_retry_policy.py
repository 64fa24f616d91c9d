from __future__ import annotations

import allure
import pytest

from agent_desk.jobs.models import PERMANENT_FAILURE_TYPES, FailureType
from agent_desk.jobs.retry_policy import compute_backoff_seconds, decide_retry

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Retry Policy"),
]


def test_backoff_grows_monotonically_until_cap() -> None:
    delays = [
        compute_backoff_seconds(retry_count=count, base_seconds=2.0, max_seconds=60.0)
        for count in range(0, 10)
    ]

    assert delays[:4] == [2.0, 4.0, 8.0, 16.0]
    assert delays == sorted(delays)
    assert max(delays) == 60.0


def test_backoff_survives_huge_retry_counts() -> None:
    delay = compute_backoff_seconds(retry_count=10_000, base_seconds=1.0, max_seconds=300.0)

    assert delay == 300.0


def test_transient_failure_is_retried_while_budget_lasts() -> None:
    decision = decide_retry(
        failure_type=FailureType.RATE_LIMIT,
        retry_count=1,
        max_retries=3,
        base_seconds=5.0,
        max_seconds=600.0,
    )

    assert decision.should_retry is True
    assert decision.delay_seconds == 10.0
    assert "rate_limit" in decision.reason


def test_exhausted_budget_stops_retrying() -> None:
    decision = decide_retry(
        failure_type=FailureType.TIMEOUT,
        retry_count=3,
        max_retries=3,
        base_seconds=5.0,
        max_seconds=600.0,
    )

    assert decision.should_retry is False
    assert "exhausted" in decision.reason


@pytest.mark.parametrize("failure_type", sorted(PERMANENT_FAILURE_TYPES, key=lambda t: t.value))
def test_permanent_failures_are_never_retried(failure_type: FailureType) -> None:
    decision = decide_retry(
        failure_type=failure_type,
        retry_count=0,
        max_retries=5,
        base_seconds=1.0,
        max_seconds=10.0,
    )

    assert decision.should_retry is False
    assert decision.delay_seconds == 0.0
    assert "permanent" in decision.reason
