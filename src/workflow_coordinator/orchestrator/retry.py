"""Retry policy for stage actions.

Delays grow exponentially: ``min(max_delay, base_delay * multiplier^(attempt-1))``.
Errors whose code is in the catalogue are retried only when recoverable;
anything unrecognised is retried.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from workflow_coordinator.core.config import RetrySettings
from workflow_coordinator.orchestrator.errors import ERROR_CODES

logger = logging.getLogger(__name__)

T = TypeVar("T")

MetricSink = Callable[[str, str, dict[str, Any]], object]
ErrorSink = Callable[[str, str, dict[str, Any]], object]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            base_delay_ms=settings.base_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            backoff_multiplier=settings.backoff_multiplier,
        )

    def delay_ms(self, attempt: int) -> int:
        """Backoff before retrying after ``attempt`` (1-indexed) failed."""

        exponent = max(attempt - 1, 0)
        if self.base_delay_ms <= 0:
            return 0
        if self.base_delay_ms >= self.max_delay_ms:
            return self.max_delay_ms
        if self.backoff_multiplier > 1.0:
            # Past this exponent the delay is capped; stop before the power overflows.
            cap = math.log(self.max_delay_ms / self.base_delay_ms, self.backoff_multiplier)
            if exponent > cap:
                return self.max_delay_ms
        delay = self.base_delay_ms * (self.backoff_multiplier**exponent)
        return int(min(self.max_delay_ms, delay))

    def is_retryable(self, error: BaseException) -> bool:
        error_code = getattr(error, "error_code", None)
        definition = ERROR_CODES.get(error_code) if isinstance(error_code, str) else None
        if definition is None:
            return True
        return definition.recoverable


@dataclass(frozen=True, slots=True)
class RetryOutcome(Generic[T]):
    success: bool
    attempts: int
    value: T | None = None
    error: BaseException | None = None
    error_code: str | None = None


def _error_code_of(error: BaseException) -> str:
    code = getattr(error, "error_code", None)
    return code if isinstance(code, str) else "UNKNOWN"


def execute_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    workflow_id: str,
    operation_name: str = "operation",
    record_metric: MetricSink | None = None,
    record_error: ErrorSink | None = None,
    on_retry: Callable[[int, int, BaseException], object] | None = None,
    sleep: Callable[[float], object] = time.sleep,
) -> RetryOutcome[T]:
    """Run ``operation`` until it succeeds or retries are exhausted.

    Args:
        operation: Zero-argument callable to attempt.
        policy: Backoff and retryability rules.
        workflow_id: Workflow the metrics and errors are recorded against.
        operation_name: Label used in metrics, logs and the final error.
        record_metric: ``(workflow_id, metric_type, data)`` sink.
        record_error: ``(workflow_id, message, details)`` sink, called once on
            final failure.
        on_retry: Called as ``(attempt, delay_ms, error)`` before each sleep.
        sleep: Sleep function in seconds (injectable for tests).

    Returns:
        RetryOutcome with the operation's value on success.
    """

    last_error: BaseException | None = None
    attempt = 0

    for attempt in range(1, policy.max_retries + 1):
        try:
            value = operation()
        except Exception as e:
            last_error = e
            if not policy.is_retryable(e) or attempt == policy.max_retries:
                if record_error is not None:
                    record_error(
                        workflow_id,
                        f"{operation_name} failed after {attempt} attempts: {e}",
                        {"errorCode": _error_code_of(e), "attempts": attempt},
                    )
                break

            delay = policy.delay_ms(attempt)
            logger.warning(
                "Operation failed, retrying",
                extra={
                    "workflow_id": workflow_id,
                    "operation": operation_name,
                    "attempt": attempt,
                    "delay_ms": delay,
                    "error": str(e),
                },
            )
            if record_metric is not None:
                record_metric(
                    workflow_id,
                    "retryAttempt",
                    {
                        "operation": operation_name,
                        "attempt": attempt,
                        "delay": delay,
                        "error": str(e),
                    },
                )
            if on_retry is not None:
                on_retry(attempt, delay, e)
            sleep(delay / 1000)
            continue

        if attempt > 1 and record_metric is not None:
            record_metric(
                workflow_id,
                "retrySuccess",
                {"operation": operation_name, "attempts": attempt},
            )
        return RetryOutcome(success=True, attempts=attempt, value=value)

    return RetryOutcome(
        success=False,
        attempts=attempt,
        error=last_error,
        error_code=_error_code_of(last_error) if last_error is not None else None,
    )
