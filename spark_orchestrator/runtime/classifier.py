"""Reduce backend status vocabularies to the generic outcome taxonomy.

Everything backend-specific lives in `ClassificationTable`s; the state
machine only ever sees a `PollOutcome`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Mapping

from spark_orchestrator.backends.base import NOT_FOUND_STATE
from spark_orchestrator.config.load_config import ClassificationOverrides
from spark_orchestrator.runtime.types import NativeStatus, OutcomeKind, PollOutcome


@dataclass(frozen=True)
class ClassificationTable:
    running_states: frozenset[str]
    success_states: frozenset[str]
    failure_states: frozenset[str]
    cancelled_states: frozenset[str]
    # Failure reasons / message fragments caused by the infrastructure rather
    # than the job code. Anything not listed is terminal.
    retryable_reasons: frozenset[str] = frozenset()
    retryable_patterns: tuple[str, ...] = ()
    _compiled: tuple[re.Pattern[str], ...] = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "_compiled", tuple(re.compile(p, re.IGNORECASE) for p in self.retryable_patterns)
        )

    def is_retryable(self, status: NativeStatus) -> bool:
        reason = (status.failure_reason or "").strip().upper()
        if reason and reason in self.retryable_reasons:
            return True
        text = " ".join(s for s in (status.failure_reason, status.message) if s)
        return any(p.search(text) for p in self._compiled)

    def extended(self, overrides: ClassificationOverrides) -> "ClassificationTable":
        def _up(values: tuple[str, ...]) -> frozenset[str]:
            return frozenset(v.strip().upper() for v in values if v.strip())

        return replace(
            self,
            running_states=self.running_states | _up(overrides.extra_running_states),
            success_states=self.success_states | _up(overrides.extra_success_states),
            failure_states=self.failure_states | _up(overrides.extra_failure_states),
            cancelled_states=self.cancelled_states | _up(overrides.extra_cancelled_states),
            retryable_reasons=self.retryable_reasons | _up(overrides.retryable_reasons),
            retryable_patterns=self.retryable_patterns + tuple(overrides.retryable_patterns),
        )


_INFRA_PATTERNS = (
    r"insufficient\s+capacity",
    r"capacity\s+(is\s+)?(not\s+)?available",
    r"throttl",
    r"internal\s*(server)?\s*error",
    r"service\s+unavailable",
    r"failed\s+to\s+(schedule|place|launch)",
    r"image\s*pull",
    r"node\s+(was\s+)?(lost|terminated|preempted)",
    r"spot\s+(instance\s+)?interruption",
)


EMR_SERVERLESS_TABLE = ClassificationTable(
    running_states=frozenset({"SUBMITTED", "PENDING", "SCHEDULED", "RUNNING", "QUEUED", "CANCELLING"}),
    success_states=frozenset({"SUCCESS"}),
    failure_states=frozenset({"FAILED"}),
    cancelled_states=frozenset({"CANCELLED"}),
    retryable_patterns=_INFRA_PATTERNS + (r"application\s+.*\s+(is\s+)?(stopping|stopped|starting)",),
)

EMR_CONTAINERS_TABLE = ClassificationTable(
    running_states=frozenset({"PENDING", "SUBMITTED", "RUNNING", "CANCEL_PENDING"}),
    success_states=frozenset({"COMPLETED"}),
    failure_states=frozenset({"FAILED"}),
    cancelled_states=frozenset({"CANCELLED"}),
    # USER_ERROR / VALIDATION_ERROR stay terminal.
    retryable_reasons=frozenset({"INTERNAL_ERROR", "CLUSTER_UNAVAILABLE"}),
    retryable_patterns=_INFRA_PATTERNS,
)

DRY_RUN_TABLE = ClassificationTable(
    running_states=frozenset({"SUBMITTED", "RUNNING"}),
    success_states=frozenset({"SUCCESS"}),
    failure_states=frozenset({"FAILED"}),
    cancelled_states=frozenset({"CANCELLED"}),
    retryable_reasons=frozenset({"INFRASTRUCTURE"}),
)


DEFAULT_TABLES: dict[str, ClassificationTable] = {
    "emr_serverless": EMR_SERVERLESS_TABLE,
    "emr_containers": EMR_CONTAINERS_TABLE,
    "dry_run": DRY_RUN_TABLE,
}


def build_tables(
    overrides: Mapping[str, ClassificationOverrides] | None = None,
    *,
    base: Mapping[str, ClassificationTable] | None = None,
) -> dict[str, ClassificationTable]:
    """Default tables extended with configured overrides (unknown kinds start empty)."""
    tables = dict(base or DEFAULT_TABLES)
    for kind, ov in (overrides or {}).items():
        current = tables.get(kind) or ClassificationTable(
            running_states=frozenset(),
            success_states=frozenset(),
            failure_states=frozenset(),
            cancelled_states=frozenset(),
        )
        tables[kind] = current.extended(ov)
    return tables


def classify(
    status: NativeStatus,
    backend_kind: str,
    tables: Mapping[str, ClassificationTable] | None = None,
) -> PollOutcome:
    table = (tables or DEFAULT_TABLES).get(backend_kind)
    if table is None:
        raise KeyError(f"No classification table for backend kind {backend_kind!r}")

    state = (status.state or "").strip().upper()
    message = status.message
    if status.failure_reason and status.failure_reason not in (message or ""):
        message = f"{status.failure_reason}: {message}" if message else status.failure_reason

    if state == NOT_FOUND_STATE:
        return PollOutcome(OutcomeKind.TERMINAL_FAILURE, state, message or "Backend no longer knows this run.")
    if state in table.success_states:
        return PollOutcome(OutcomeKind.SUCCEEDED, state, message)
    if state in table.cancelled_states:
        return PollOutcome(OutcomeKind.CANCELLED, state, message)
    if state in table.failure_states:
        kind = OutcomeKind.RETRYABLE_FAILURE if table.is_retryable(status) else OutcomeKind.TERMINAL_FAILURE
        return PollOutcome(kind, state, message)
    if state in table.running_states:
        return PollOutcome(OutcomeKind.RUNNING, state, message)
    # Unrecognized vocabulary: keep polling; the execution timeout bounds it.
    return PollOutcome(OutcomeKind.RUNNING, state, f"Unrecognized {backend_kind} status {state!r}")
