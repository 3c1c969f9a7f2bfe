"""Unit tests for the retry policy and executor."""

from __future__ import annotations

from typing import Any

import pytest

from workflow_coordinator.core.config import RetrySettings
from workflow_coordinator.orchestrator.errors import WorkflowError
from workflow_coordinator.orchestrator.retry import RetryPolicy, execute_with_retry


def test_delay_grows_exponentially_and_is_capped() -> None:
    policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=5000, backoff_multiplier=2.0)

    delays = [policy.delay_ms(a) for a in range(1, 6)]

    assert delays == [1000, 2000, 4000, 5000, 5000]
    assert delays == sorted(delays)


def test_delay_stays_capped_for_very_large_attempts() -> None:
    policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=30000, backoff_multiplier=2.0)

    assert policy.delay_ms(2000) == 30000
    assert policy.delay_ms(5000) == 30000
    assert RetryPolicy(base_delay_ms=0, max_delay_ms=0).delay_ms(5000) == 0
    assert RetryPolicy(base_delay_ms=500, backoff_multiplier=1.0).delay_ms(5000) == 500


def test_policy_rejects_invalid_parameters() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=0)
    with pytest.raises(ValueError):
        RetryPolicy(backoff_multiplier=0.5)


def test_policy_from_settings() -> None:
    policy = RetryPolicy.from_settings(RetrySettings(max_retries=5, base_delay_ms=10))
    assert policy.max_retries == 5
    assert policy.base_delay_ms == 10


def test_retryability_follows_the_catalogue() -> None:
    policy = RetryPolicy()

    assert policy.is_retryable(WorkflowError("JIRA_FETCH_FAILED")) is True
    assert policy.is_retryable(WorkflowError("WORKFLOW_NOT_FOUND")) is False
    assert policy.is_retryable(RuntimeError("network blip")) is True


def test_succeeds_after_transient_failures() -> None:
    calls = {"n": 0}
    slept: list[float] = []
    metrics: list[tuple[str, str, dict[str, Any]]] = []

    def flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise RuntimeError("timeout")
        return "ok"

    outcome = execute_with_retry(
        flaky,
        policy=RetryPolicy(max_retries=3, base_delay_ms=100, backoff_multiplier=2.0),
        workflow_id="wf-1",
        operation_name="fetch_jira",
        record_metric=lambda *args: metrics.append(args),
        sleep=slept.append,
    )

    assert outcome.success is True
    assert outcome.value == "ok"
    assert outcome.attempts == 3
    assert slept == [0.1, 0.2]
    assert [m[1] for m in metrics] == ["retryAttempt", "retryAttempt", "retrySuccess"]
    assert metrics[0][2] == {
        "operation": "fetch_jira",
        "attempt": 1,
        "delay": 100,
        "error": "timeout",
    }


def test_exhaustion_records_one_error() -> None:
    errors: list[tuple[str, str, dict[str, Any]]] = []
    retries: list[int] = []

    def always_fails() -> None:
        raise WorkflowError("EXCEL_CREATION_FAILED", "disk full")

    outcome = execute_with_retry(
        always_fails,
        policy=RetryPolicy(max_retries=3, base_delay_ms=0),
        workflow_id="wf-1",
        operation_name="create_excel",
        record_error=lambda *args: errors.append(args),
        on_retry=lambda attempt, delay, err: retries.append(attempt),
        sleep=lambda s: None,
    )

    assert outcome.success is False
    assert outcome.attempts == 3
    assert outcome.error_code == "EXCEL_CREATION_FAILED"
    assert retries == [1, 2]
    assert len(errors) == 1
    workflow_id, message, details = errors[0]
    assert workflow_id == "wf-1"
    assert message.startswith("create_excel failed after 3 attempts")
    assert details == {"errorCode": "EXCEL_CREATION_FAILED", "attempts": 3}


def test_non_retryable_error_stops_immediately() -> None:
    slept: list[float] = []

    def not_found() -> None:
        raise WorkflowError("WORKFLOW_NOT_FOUND", "wf-x")

    outcome = execute_with_retry(
        not_found,
        policy=RetryPolicy(max_retries=5),
        workflow_id="wf-x",
        sleep=slept.append,
    )

    assert outcome.success is False
    assert outcome.attempts == 1
    assert slept == []
