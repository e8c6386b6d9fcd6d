"""Deterministic failure classification for inference calls.

Classification only feeds the log line and task event details: the
classifier and decomposer never retry, whatever the class.
"""

from __future__ import annotations

from dataclasses import dataclass

from task_relay.orchestrator.models import FailureClass

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
    "api key",
    "authentication",
    "credentials",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "model is not available",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "try again later",
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
)


@dataclass(slots=True)
class InferenceFailure:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_pattern: str | None = None

    def to_log_details(self, *, purpose: str) -> dict[str, object]:
        return {
            "purpose": purpose,
            "failure_class": self.failure_class.value,
            "matched_pattern": self.matched_pattern,
        }


def classify_inference_failure(
    *,
    exit_code: int,
    timed_out: bool,
    stdout: str,
    stderr: str,
) -> InferenceFailure:
    """Classify a failed inference call by exit state and output text."""

    if timed_out:
        return InferenceFailure(failure_class=FailureClass.TIMEOUT)

    haystack = f"{stderr}\n{stdout}".lower()
    for failure_class, patterns in (
        (FailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.BACKEND_TRANSIENT, _TRANSIENT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return InferenceFailure(failure_class=failure_class, matched_pattern=pattern)

    if exit_code in {137, 143}:
        return InferenceFailure(failure_class=FailureClass.BACKEND_TRANSIENT)
    return InferenceFailure(failure_class=FailureClass.BACKEND_NON_RETRYABLE)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
