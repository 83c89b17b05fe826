from __future__ import annotations

import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from spark_orchestrator.backends.base import (
    BackendError,
    BackendNotFoundError,
    JobBackend,
    SubmissionError,
    TransientDescribeError,
)
from spark_orchestrator.runtime.types import JobSpecification, NativeStatus


TRANSIENT = "TRANSIENT"
LOST = "LOST"
REJECT = "REJECT"

_DEFAULT_SCRIPT = ("SUBMITTED", "RUNNING", "SUCCESS")


def _parse_step(step: str) -> NativeStatus:
    """`STATE[:REASON[:message]]`, e.g. `FAILED:INFRASTRUCTURE:node lost`."""
    state, _, rest = str(step).partition(":")
    reason, _, message = rest.partition(":")
    return NativeStatus(
        state=state.strip().upper(),
        failure_reason=reason.strip() or None,
        message=message.strip() or None,
        raw={"step": step},
    )


@dataclass
class _SimulatedRun:
    token: str
    steps: deque[str]
    last: str
    cancelled: bool = False
    describes: int = 0
    history: list[str] = field(default_factory=list)


class DryRunBackend(JobBackend):
    """Deterministic in-process stand-in for a remote Spark service.

    Each submit consumes the next per-attempt script (a list of status steps);
    each describe consumes one step, and the final step repeats forever.
    Special steps: `TRANSIENT` raises TransientDescribeError, `LOST` raises
    BackendNotFoundError. A script whose first step is `REJECT` makes the
    submit itself fail. Without queued scripts, `submission_params["dry_run_script"]`
    is used, then a plain success script.
    """

    kind = "dry_run"

    def __init__(
        self,
        backend_id: str = "dry-run",
        *,
        scripts: Iterable[Sequence[str]] | None = None,
        fail_cancel: bool = False,
    ) -> None:
        super().__init__(backend_id)
        self._lock = threading.Lock()
        self._scripts: deque[list[str]] = deque(list(s) for s in (scripts or ()))
        self._runs: dict[str, _SimulatedRun] = {}
        self.fail_cancel = fail_cancel
        self.submitted: list[dict[str, Any]] = []
        self.cancelled: list[str] = []

    def queue_script(self, *steps: str) -> None:
        with self._lock:
            self._scripts.append(list(steps))

    def describe_count(self, token: str) -> int:
        with self._lock:
            run = self._runs.get(token)
            return run.describes if run is not None else 0

    def submit(self, spec: JobSpecification, *, client_token: str) -> str:
        with self._lock:
            if self._scripts:
                steps = self._scripts.popleft()
            else:
                steps = list(spec.submission_params.get("dry_run_script") or _DEFAULT_SCRIPT)
            if not steps:
                raise SubmissionError("Empty dry-run script.", code="ValidationException")
            if str(steps[0]).upper().startswith(REJECT):
                _, _, message = str(steps[0]).partition(":")
                raise SubmissionError(message or "Dry-run submission rejected.", code="ValidationException")

            token = f"dry/{uuid.uuid4().hex}"
            self._runs[token] = _SimulatedRun(token=token, steps=deque(steps), last=str(steps[-1]))
            self.submitted.append(
                {"token": token, "client_token": client_token, "name": spec.name, "entry_point": spec.entry_point}
            )
            return token

    def describe(self, token: str) -> NativeStatus:
        with self._lock:
            run = self._runs.get(token)
            if run is None:
                raise BackendNotFoundError(f"Unknown dry-run token: {token}")
            run.describes += 1
            if run.cancelled:
                step = "CANCELLED"
            elif run.steps:
                step = run.steps.popleft()
            else:
                step = run.last
            run.history.append(step)

        upper = step.upper()
        if upper == TRANSIENT:
            raise TransientDescribeError("Simulated throttling on describe.")
        if upper == LOST:
            raise BackendNotFoundError(f"Simulated lost run: {token}")
        return _parse_step(step)

    def cancel(self, token: str) -> None:
        with self._lock:
            self.cancelled.append(token)
            run = self._runs.get(token)
            if run is not None:
                run.cancelled = True
        if self.fail_cancel:
            raise BackendError(f"Simulated cancel failure for {token}")
