from __future__ import annotations

import allure
import pytest

from agent_teams.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_error_text,
    classify_execution_status,
)
from agent_teams.orchestrator.models import ExecutionStatus, FailureClass

pytestmark = [
    allure.epic("Mission Runtime"),
    allure.feature("Failure Recovery"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_prefers_quota_over_retry_hint() -> None:
    classified = classify_error_text(
        "Quota exceeded for this project, try again later",
        source="engine",
    )
    assert classified.failure_class == FailureClass.UNRECOVERABLE
    assert classified.matched_pattern == "quota"
    assert classified.reason_code == "engine_unrecoverable"


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("HTTP 429 Too Many Requests", FailureClass.RATE_LIMIT),
        ("request timed out after 30s", FailureClass.TIMEOUT),
        ("Connection reset by peer", FailureClass.TRANSIENT),
        ("unknown tool: spreadsheet", FailureClass.UNSUITABLE_TOOL),
        ("segmentation fault", FailureClass.UNRECOVERABLE),
    ],
)
def test_classifier_maps_messages(message: str, expected: FailureClass) -> None:
    assert classify_error_text(message, source="tool").failure_class == expected


def test_classifier_treats_transient_exit_codes_as_transient() -> None:
    classified = classify_error_text(
        "killed",
        source="engine",
        transient_exit_codes=(124, 75),
        exit_code=124,
    )
    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_rule == "transient_exit_code"
    assert classified.to_event_details()["classifier_version"] == FAILURE_CLASSIFIER_VERSION


def test_execution_status_refines_transient_errors_by_text() -> None:
    refined = classify_execution_status(
        ExecutionStatus.TRANSIENT_ERROR,
        message="upstream deadline exceeded",
    )
    plain = classify_execution_status(ExecutionStatus.TRANSIENT_ERROR, message="flaky")

    assert refined.failure_class == FailureClass.TIMEOUT
    assert plain.failure_class == FailureClass.TRANSIENT
    assert plain.matched_rule == "reported_status"


def test_execution_status_keeps_reported_hard_failures() -> None:
    unsuitable = classify_execution_status(
        ExecutionStatus.UNSUITABLE_TOOL,
        message="connection reset",
    )
    assert unsuitable.failure_class == FailureClass.UNSUITABLE_TOOL
    assert (
        classify_execution_status(ExecutionStatus.UNRECOVERABLE, message="").failure_class
        == FailureClass.UNRECOVERABLE
    )


def test_execution_status_rejects_success() -> None:
    with pytest.raises(ValueError):
        classify_execution_status(ExecutionStatus.SUCCESS, message="")
