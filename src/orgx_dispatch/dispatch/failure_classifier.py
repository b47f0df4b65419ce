"""Deterministic classification of failed worker attempts.

The class is diagnostic: it is recorded in job state and activity metadata,
while the retry decision stays exit-code based.
"""

from __future__ import annotations

from dataclasses import dataclass

from orgx_dispatch.dispatch.models import FailureClass, WorkerExit

WORKER_FAILURE_CLASSIFIER_VERSION = 1
TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
)


@dataclass(slots=True)
class WorkerFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": WORKER_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_worker_failure(
    worker_exit: WorkerExit,
    *,
    log_tail: str,
    transient_exit_codes: tuple[int, ...] = TRANSIENT_EXIT_CODES,
) -> WorkerFailureClassification:
    """Classify a failed attempt from its exit metadata and log tail."""

    if worker_exit.launch_error is not None:
        return WorkerFailureClassification(
            failure_class=FailureClass.LAUNCH_FAILED,
            reason_code="worker_launch_failed",
            matched_rule="launch_error",
            matched_pattern=None,
        )
    if worker_exit.timed_out:
        return WorkerFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="worker_timeout",
            matched_rule="attempt_timeout",
            matched_pattern=None,
        )

    haystack = log_tail.lower()
    rules: tuple[tuple[str, tuple[str, ...], FailureClass], ...] = (
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, FailureClass.BILLING_OR_QUOTA),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, FailureClass.ACCESS_OR_AUTH),
        ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS, FailureClass.MODEL_NOT_AVAILABLE),
        ("rate_limit_transient", _RATE_LIMIT_TRANSIENT_PATTERNS, FailureClass.BACKEND_TRANSIENT),
    )
    for rule, patterns, failure_class in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return WorkerFailureClassification(
                failure_class=failure_class,
                reason_code=f"worker_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    exit_code_transient = worker_exit.exit_code in transient_exit_codes
    if pattern is not None or exit_code_transient:
        return WorkerFailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code="worker_backend_transient",
            matched_rule=(
                "transient_exit_code"
                if exit_code_transient and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return WorkerFailureClassification(
        failure_class=FailureClass.WORKER_FAILED,
        reason_code="worker_failed",
        matched_rule="fallback_worker_failed",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
