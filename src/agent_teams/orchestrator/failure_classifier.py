"""Deterministic classification of free-form execution errors into failure classes."""

from __future__ import annotations

from dataclasses import dataclass

from agent_teams.orchestrator.models import ExecutionStatus, FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_UNRECOVERABLE_PATTERNS: tuple[str, ...] = (
    "quota",
    "billing",
    "insufficient credits",
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
)
_UNSUITABLE_TOOL_PATTERNS: tuple[str, ...] = (
    "unsupported tool",
    "unknown tool",
    "tool not found",
    "tool not available",
    "missing capability",
    "cannot handle",
    "not supported by this worker",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "try again later",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "service unavailable",
    "503",
)

_STATUS_TO_CLASS: dict[ExecutionStatus, FailureClass] = {
    ExecutionStatus.TRANSIENT_ERROR: FailureClass.TRANSIENT,
    ExecutionStatus.UNSUITABLE_TOOL: FailureClass.UNSUITABLE_TOOL,
    ExecutionStatus.UNRECOVERABLE: FailureClass.UNRECOVERABLE,
}


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for team events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_error_text(
    message: str,
    *,
    source: str,
    transient_exit_codes: tuple[int, ...] = (),
    exit_code: int | None = None,
) -> FailureClassification:
    """Classify an error message by ordered pattern rules.

    Hard failures are checked before retryable ones so that, e.g., a quota
    message mentioning "try again later" is not retried.
    """

    haystack = message.lower()

    for failure_class, rule, patterns in (
        (FailureClass.UNRECOVERABLE, "unrecoverable", _UNRECOVERABLE_PATTERNS),
        (FailureClass.UNSUITABLE_TOOL, "unsuitable_tool", _UNSUITABLE_TOOL_PATTERNS),
        (FailureClass.RATE_LIMIT, "rate_limit", _RATE_LIMIT_PATTERNS),
        (FailureClass.TIMEOUT, "timeout", _TIMEOUT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                reason_code=f"{source}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    transient_exit = exit_code is not None and exit_code in transient_exit_codes
    if pattern is not None or transient_exit:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code=f"{source}_transient",
            matched_rule="transient_exit_code" if pattern is None else "generic_transient",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.UNRECOVERABLE,
        reason_code=f"{source}_unrecoverable",
        matched_rule="fallback_unrecoverable",
        matched_pattern=None,
    )


def classify_execution_status(
    status: ExecutionStatus,
    *,
    message: str,
    source: str = "tool",
) -> FailureClassification:
    """Map a tool executor status to a failure class, refining transient errors by text."""

    if status == ExecutionStatus.SUCCESS:
        raise ValueError("Successful executions have no failure class.")
    if status == ExecutionStatus.TRANSIENT_ERROR:
        refined = classify_error_text(message, source=source)
        if refined.failure_class.is_transient:
            return refined
    return FailureClassification(
        failure_class=_STATUS_TO_CLASS[status],
        reason_code=f"{source}_{status.value}",
        matched_rule="reported_status",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
