from __future__ import annotations

import pytest

from spark_orchestrator.config.load_config import ClassificationOverrides
from spark_orchestrator.runtime.classifier import build_tables, classify
from spark_orchestrator.runtime.types import NativeStatus, OutcomeKind


@pytest.mark.parametrize(
    "state,expected",
    [
        ("SUBMITTED", OutcomeKind.RUNNING),
        ("SCHEDULED", OutcomeKind.RUNNING),
        ("CANCELLING", OutcomeKind.RUNNING),
        ("SUCCESS", OutcomeKind.SUCCEEDED),
        ("CANCELLED", OutcomeKind.CANCELLED),
        ("FAILED", OutcomeKind.TERMINAL_FAILURE),
    ],
)
def test_serverless_vocabulary(state: str, expected: OutcomeKind) -> None:
    assert classify(NativeStatus(state=state), "emr_serverless").kind == expected


def test_serverless_capacity_failure_is_retryable() -> None:
    status = NativeStatus(state="FAILED", message="Job failed: insufficient capacity in subnet")
    outcome = classify(status, "emr_serverless")
    assert outcome.kind == OutcomeKind.RETRYABLE_FAILURE
    assert outcome.native_status == "FAILED"


def test_containers_failure_reason_drives_retryability() -> None:
    infra = classify(NativeStatus(state="FAILED", failure_reason="CLUSTER_UNAVAILABLE"), "emr_containers")
    user = classify(
        NativeStatus(state="FAILED", failure_reason="USER_ERROR", message="Exception in thread main"),
        "emr_containers",
    )
    assert infra.kind == OutcomeKind.RETRYABLE_FAILURE
    assert user.kind == OutcomeKind.TERMINAL_FAILURE
    assert user.message == "USER_ERROR: Exception in thread main"
    assert classify(NativeStatus(state="COMPLETED"), "emr_containers").kind == OutcomeKind.SUCCEEDED


def test_not_found_is_terminal_failure() -> None:
    outcome = classify(NativeStatus(state="NOT_FOUND"), "dry_run")
    assert outcome.kind == OutcomeKind.TERMINAL_FAILURE
    assert outcome.message


def test_unknown_state_keeps_running_with_diagnostic() -> None:
    outcome = classify(NativeStatus(state="warming"), "emr_serverless")
    assert outcome.kind == OutcomeKind.RUNNING
    assert outcome.native_status == "WARMING"
    assert "Unrecognized" in (outcome.message or "")


def test_unknown_backend_kind_raises() -> None:
    with pytest.raises(KeyError):
        classify(NativeStatus(state="RUNNING"), "mainframe")


def test_overrides_extend_tables() -> None:
    tables = build_tables(
        {
            "emr_serverless": ClassificationOverrides(
                extra_running_states=("warming",),
                retryable_patterns=("quota exceeded",),
            ),
            "custom": ClassificationOverrides(extra_success_states=("DONE",)),
        }
    )
    assert classify(NativeStatus(state="WARMING"), "emr_serverless", tables).message is None
    quota = classify(NativeStatus(state="FAILED", message="Quota exceeded for vCPU"), "emr_serverless", tables)
    assert quota.kind == OutcomeKind.RETRYABLE_FAILURE
    assert classify(NativeStatus(state="done"), "custom", tables).kind == OutcomeKind.SUCCEEDED
    # Defaults are untouched.
    assert classify(NativeStatus(state="WARMING"), "emr_serverless").message is not None
