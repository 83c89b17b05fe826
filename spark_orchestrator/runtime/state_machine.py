"""Per-run state machine: Submit -> Monitor -> Succeed/Fail/Retry -> terminal.

One `RunStateMachine` drives one run sequentially. Its only suspension points
are the Poll Scheduler waits and backend calls; everything it decides is
folded into the ledger before the next step.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping

from spark_orchestrator.backends.base import (
    NOT_FOUND_STATE,
    BackendNotFoundError,
    JobBackend,
    SubmissionError,
    TransientDescribeError,
)
from spark_orchestrator.runtime.classifier import ClassificationTable, classify
from spark_orchestrator.runtime.errors import LedgerTransitionError, TimeoutExceeded
from spark_orchestrator.runtime.poll_scheduler import PollScheduler
from spark_orchestrator.runtime.types import NativeStatus, OutcomeKind, RunLedgerEntry, RunState
from spark_orchestrator.storage.ledger_store import LedgerStore
from spark_orchestrator.utils.cancel import CancellationToken, CancelledError


logger = logging.getLogger(__name__)


class DriverStopped(RuntimeError):
    """The orchestrator is shutting down; leave the ledger as-is for recovery."""


def client_token_for(run_id: str, attempt: int) -> str:
    # Stable per attempt so a replayed submit cannot start a second remote job.
    return f"{run_id}-a{int(attempt)}"[-64:]


class RunStateMachine:
    def __init__(
        self,
        *,
        run_id: str,
        store: LedgerStore,
        backend: JobBackend,
        scheduler: PollScheduler,
        cancel: CancellationToken | None = None,
        tables: Mapping[str, ClassificationTable] | None = None,
        shutdown: threading.Event | None = None,
    ) -> None:
        self.run_id = run_id
        self.store = store
        self.backend = backend
        self.scheduler = scheduler
        self.cancel = cancel or CancellationToken()
        self.tables = tables
        self._shutdown = shutdown or threading.Event()
        self._transient_failures = 0

    def trace(self, event_type: str, payload: dict[str, Any]) -> None:
        self.store.append_event(self.run_id, event_type, payload)

    # --- main loop
    def drive(self) -> RunLedgerEntry:
        entry = self.store.require_run(self.run_id)
        while not entry.terminal:
            try:
                self._check_cancelled()
                if entry.state == RunState.PENDING:
                    entry = self._submit(entry, expected=RunState.PENDING, attempt=entry.attempt)
                elif entry.state == RunState.SUBMITTED:
                    entry = self.store.transition(
                        self.run_id,
                        expected=RunState.SUBMITTED,
                        to=RunState.MONITORING,
                        expected_attempt=entry.attempt,
                        event={"reason": "first_poll_scheduled"},
                    )
                elif entry.state == RunState.MONITORING:
                    entry = self._monitor_once(entry)
                elif entry.state == RunState.RETRYING:
                    entry = self._retry(entry)
                else:
                    raise LedgerTransitionError(f"Unhandled state {entry.state.value} for {self.run_id}")
            except CancelledError:
                entry = self.finish_cancelled(reason=self.cancel.reason)
            except LedgerTransitionError:
                # Someone else finalized the run (e.g. an inline cancel); the ledger wins.
                current = self.store.require_run(self.run_id)
                if not current.terminal:
                    raise
                entry = current
        return entry

    def _check_cancelled(self) -> None:
        if self._shutdown.is_set():
            raise DriverStopped(self.run_id)
        if self.cancel.cancelled:
            raise CancelledError("Cancelled")
        request = self.store.get_cancel_request(run_id=self.run_id)
        if request is not None:
            self.cancel.request_cancel(request["reason"] or "cancel_requested")
            self.store.acknowledge_cancel(run_id=self.run_id)
            raise CancelledError("Cancelled")

    # --- Pending / Retrying -> Submitted
    def _submit(self, entry: RunLedgerEntry, *, expected: RunState, attempt: int) -> RunLedgerEntry:
        assert entry.spec is not None
        try:
            token = self.backend.submit(entry.spec, client_token=client_token_for(self.run_id, attempt))
        except SubmissionError as e:
            return self.store.transition(
                self.run_id,
                expected=expected,
                to=RunState.FAILED,
                attempt=attempt,
                last_error={"kind": "submission_error", "native_status": e.code, "message": str(e)},
            )
        except Exception as e:
            # Submission outcome unknown: never resubmit implicitly.
            logger.exception("submit raised unexpectedly for run %s", self.run_id)
            return self.store.transition(
                self.run_id,
                expected=expected,
                to=RunState.FAILED,
                attempt=attempt,
                last_error={"kind": "submission_error", "native_status": type(e).__name__, "message": str(e)},
            )

        self._transient_failures = 0
        return self.store.transition(
            self.run_id,
            expected=expected,
            to=RunState.SUBMITTED,
            attempt=attempt,
            backend_run_token=token,
            submitted_at=self.scheduler.now(),
            event={"backend_run_token": token},
        )

    # --- Monitoring
    def _monitor_once(self, entry: RunLedgerEntry) -> RunLedgerEntry:
        assert entry.spec is not None and entry.submitted_at is not None and entry.backend_run_token
        timeout_s = entry.spec.execution_timeout_s
        if self.scheduler.deadline_reached(entry.submitted_at, timeout_s):
            return self._finish_timed_out(entry)

        tick = self.scheduler.wait_for_next_poll(
            self.cancel,
            submitted_at=entry.submitted_at,
            timeout_s=timeout_s,
            transient_failures=self._transient_failures,
        )
        if tick is None:
            self._check_cancelled()
            raise CancelledError("Cancelled")
        # A cancel that arrived while sleeping skips this poll.
        self._check_cancelled()
        if self.scheduler.deadline_reached(entry.submitted_at, timeout_s):
            return self._finish_timed_out(entry)

        try:
            status = self.backend.describe(entry.backend_run_token)
        except BackendNotFoundError as e:
            status = NativeStatus(state=NOT_FOUND_STATE, message=str(e))
        except TransientDescribeError as e:
            return self._note_transient(entry, e)
        except Exception as e:
            logger.warning("describe failed for run %s: %s", self.run_id, e)
            return self._note_transient(entry, e)

        self._transient_failures = 0
        outcome = classify(status, self.backend.kind, self.tables)
        entry = self.store.record_poll(
            self.run_id,
            attempt=entry.attempt,
            polled_at=tick.polled_at,
            rearm=outcome.kind == OutcomeKind.RUNNING,
        )
        self.trace(
            "poll",
            {
                "attempt": entry.attempt,
                "native_status": outcome.native_status,
                "outcome": outcome.kind.value,
                "message": outcome.message,
                "waited_s": round(tick.waited_s, 3),
            },
        )

        if outcome.kind == OutcomeKind.RUNNING:
            return entry
        if outcome.kind == OutcomeKind.SUCCEEDED:
            return self._terminal(entry, RunState.SUCCEEDED, last_error=None)
        if outcome.kind == OutcomeKind.CANCELLED:
            return self._terminal(entry, RunState.CANCELLED, last_error=outcome.to_error())
        if outcome.kind == OutcomeKind.TERMINAL_FAILURE:
            return self._terminal(entry, RunState.FAILED, last_error=outcome.to_error())

        # Retryable failure: bounded by the retry policy.
        if entry.attempt < entry.spec.retry_policy.max_attempts:
            return self.store.transition(
                self.run_id,
                expected=RunState.MONITORING,
                to=RunState.RETRYING,
                expected_attempt=entry.attempt,
                last_error=outcome.to_error(),
            )
        error = outcome.to_error()
        error["attempts_exhausted"] = True
        return self._terminal(entry, RunState.FAILED, last_error=error)

    def _note_transient(self, entry: RunLedgerEntry, error: Exception) -> RunLedgerEntry:
        self._transient_failures += 1
        self.trace(
            "describe_transient_error",
            {
                "attempt": entry.attempt,
                "consecutive": self._transient_failures,
                "error": str(error),
                "next_backoff_s": self.scheduler.transient_backoff(self._transient_failures),
            },
        )
        return entry

    def _terminal(self, entry: RunLedgerEntry, to: RunState, *, last_error: dict[str, Any] | None) -> RunLedgerEntry:
        fields: dict[str, Any] = {}
        if last_error is not None:
            fields["last_error"] = last_error
        return self.store.transition(
            self.run_id,
            expected=RunState.MONITORING,
            to=to,
            expected_attempt=entry.attempt,
            **fields,
        )

    def _finish_timed_out(self, entry: RunLedgerEntry) -> RunLedgerEntry:
        assert entry.spec is not None and entry.submitted_at is not None
        exc = TimeoutExceeded(
            elapsed_s=self.scheduler.elapsed_since(entry.submitted_at),
            timeout_s=entry.spec.execution_timeout_s,
        )
        done = self._terminal(entry, RunState.TIMED_OUT, last_error=exc.to_error())
        self.best_effort_cancel(entry.backend_run_token, reason="timeout_exceeded")
        return done

    # --- Retrying -> Submitted (attempt += 1)
    def _retry(self, entry: RunLedgerEntry) -> RunLedgerEntry:
        assert entry.spec is not None
        next_attempt = entry.attempt + 1
        delay = entry.spec.retry_policy.delay_before_attempt(next_attempt)
        self.trace("retry_backoff", {"next_attempt": next_attempt, "delay_s": delay})
        if self.scheduler.wait(delay, self.cancel):
            self._check_cancelled()
            raise CancelledError("Cancelled")
        self._check_cancelled()
        return self._submit(entry, expected=RunState.RETRYING, attempt=next_attempt)

    # --- Cancellation
    def finish_cancelled(self, *, reason: str | None = None) -> RunLedgerEntry:
        """Move the run to Cancelled regardless of what the backend says."""
        entry = self.store.require_run(self.run_id)
        if entry.terminal:
            return entry
        done = self.store.transition(
            self.run_id,
            expected=entry.state,
            to=RunState.CANCELLED,
            expected_attempt=entry.attempt,
            last_error={"kind": "cancelled", "native_status": None, "message": reason or "cancel_requested"},
        )
        # Pending has no token yet; a Retrying entry still carries the last attempt's.
        self.best_effort_cancel(entry.backend_run_token, reason=reason or "cancel_requested")
        return done

    def best_effort_cancel(self, token: str | None, *, reason: str) -> bool:
        if not token:
            return False
        try:
            self.backend.cancel(token)
        except Exception as e:
            logger.warning("backend cancel failed for run %s (%s): %s", self.run_id, token, e)
            self.trace("backend_cancel_failed", {"backend_run_token": token, "reason": reason, "error": str(e)})
            return False
        self.trace("backend_cancel_requested", {"backend_run_token": token, "reason": reason})
        return True
