from __future__ import annotations

import hashlib
import json
import logging
import random
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any

from spark_orchestrator.backends.registry import BackendRegistry
from spark_orchestrator.config.load_config import OrchestratorConfig, load_orchestrator_config
from spark_orchestrator.runtime.classifier import ClassificationTable, build_tables
from spark_orchestrator.runtime.errors import LedgerTransitionError, RunNotFoundError, UnknownBackendError
from spark_orchestrator.runtime.poll_scheduler import Clock, PollScheduler
from spark_orchestrator.runtime.state_machine import DriverStopped, RunStateMachine
from spark_orchestrator.runtime.types import JobSpecification, RunLedgerEntry, RunState
from spark_orchestrator.storage.ledger_store import LedgerStore, default_db_path
from spark_orchestrator.utils.cancel import CancellationToken


logger = logging.getLogger(__name__)


def request_hash(spec: JobSpecification) -> str:
    raw = json.dumps(spec.to_dict(), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class _Driver:
    run_id: str
    thread: threading.Thread
    cancel: CancellationToken


class SparkJobOrchestrator:
    """Owns the Run Ledger, the backend registry and one driver thread per live run.

    - `start_run` persists a Pending entry before anything touches a backend.
    - Drivers open their own `LedgerStore` (sqlite connections are thread-bound).
    - `stop()` halts drivers without finalizing runs; `recover()` in the next
      process resumes them from the ledger.
    """

    def __init__(
        self,
        *,
        config: OrchestratorConfig | None = None,
        registry: BackendRegistry | None = None,
        db_path: str | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        start_drivers: bool = True,
    ) -> None:
        self.config = config or load_orchestrator_config()
        self.registry = registry or BackendRegistry.from_config(self.config)
        self.db_path = db_path or default_db_path()
        self.tables: dict[str, ClassificationTable] = build_tables(self.config.classification)
        self._clock = clock
        self._rng = rng
        self._start_drivers = start_drivers
        self._lock = threading.Lock()
        self._drivers: dict[str, _Driver] = {}
        self._shutdown = threading.Event()

    def _open_store(self) -> LedgerStore:
        return LedgerStore(self.db_path)

    def _scheduler(self) -> PollScheduler:
        return PollScheduler(self.config.poll, clock=self._clock, rng=self._rng)

    # --- lifecycle
    def status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            live = sorted(rid for rid, d in self._drivers.items() if d.thread.is_alive())
        with self._open_store() as store:
            by_state = store.count_runs_by_state()
        return {
            "drivers_enabled": self._start_drivers,
            "live_drivers": len(live),
            "runs_by_state": by_state,
            "backends": list(self.registry),
            "db_path": str(self.db_path),
        }

    def start(self, *, recover: bool = True) -> dict[str, int]:
        self._shutdown.clear()
        if not recover:
            return {"resumed": 0, "failed_unacknowledged": 0}
        return self.recover()

    def recover(self) -> dict[str, int]:
        """Resume every non-terminal run found in the ledger (run once at startup)."""
        counts = {"resumed": 0, "failed_unacknowledged": 0}
        with self._open_store() as store:
            for entry in store.list_non_terminal_runs():
                if self._driver_alive(entry.run_id):
                    continue
                if entry.state == RunState.PENDING:
                    # The submit call's fate is unknown; resubmitting could start a duplicate job.
                    self._fail_unacknowledged(store, entry)
                    counts["failed_unacknowledged"] += 1
                    continue
                if self._launch(entry.run_id):
                    store.append_event(entry.run_id, "run_resumed", {"state": entry.state.value, "attempt": entry.attempt})
                    counts["resumed"] += 1
        return counts

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._shutdown.set()
        with self._lock:
            drivers = list(self._drivers.values())
        for d in drivers:
            # Wake sleeping drivers; they see the shutdown flag before the token.
            d.cancel.request_cancel("shutdown")
        for d in drivers:
            d.thread.join(timeout=timeout_s)

    def wait(self, run_id: str, *, timeout_s: float | None = None) -> RunLedgerEntry:
        with self._lock:
            driver = self._drivers.get(run_id)
        if driver is not None:
            driver.thread.join(timeout=timeout_s)
        return self.get_run_status(run_id)

    # --- API
    def start_run(
        self,
        spec: JobSpecification,
        *,
        run_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        if spec.backend not in self.registry:
            raise UnknownBackendError(spec.backend)
        with self._open_store() as store:
            entry, created = store.create_run(
                spec=spec,
                run_id=run_id,
                idempotency_key=idempotency_key,
                request_hash=request_hash(spec) if idempotency_key else None,
            )
        if created:
            self._launch(entry.run_id)
        return entry.run_id

    def get_run_status(self, run_id: str) -> RunLedgerEntry:
        with self._open_store() as store:
            entry = store.require_run(run_id)
            if entry.state == RunState.PENDING and not self._driver_alive(run_id):
                age = time.time() - entry.created_at
                if age >= float(self.config.runs.submission_ack_timeout_s):
                    entry = self._fail_unacknowledged(store, entry)
            return entry

    def cancel_run(self, run_id: str, *, reason: str | None = None) -> RunLedgerEntry:
        """Request cancellation. Idempotent; terminal runs are returned unchanged."""
        reason = (reason or "").strip() or "cancel_requested"
        with self._open_store() as store:
            entry = store.require_run(run_id)
            if entry.terminal:
                return entry
            store.request_cancel(run_id=run_id, reason=reason)

            with self._lock:
                driver = self._drivers.get(run_id)
            if driver is not None and driver.thread.is_alive():
                driver.cancel.request_cancel(reason)
                return store.require_run(run_id)

        # No live driver will observe the durable request; finalize inline.
        return self._finalize_cancel_inline(run_id, reason=reason)

    def list_runs(
        self,
        *,
        limit: int = 50,
        cursor: tuple[float, str] | None = None,
        states: list[str] | None = None,
    ) -> dict[str, Any]:
        with self._open_store() as store:
            return store.list_runs_page(limit=limit, cursor=cursor, states=states)

    def iter_events(self, run_id: str) -> list[dict[str, Any]]:
        with self._open_store() as store:
            store.require_run(run_id)
            return list(store.iter_events(run_id))

    # --- internals
    def _driver_alive(self, run_id: str) -> bool:
        with self._lock:
            d = self._drivers.get(run_id)
        return d is not None and d.thread.is_alive()

    def _fail_unacknowledged(self, store: LedgerStore, entry: RunLedgerEntry) -> RunLedgerEntry:
        try:
            return store.transition(
                entry.run_id,
                expected=RunState.PENDING,
                to=RunState.FAILED,
                last_error={
                    "kind": "submission_not_acknowledged",
                    "native_status": None,
                    "message": "Submission was never acknowledged by the backend.",
                },
            )
        except LedgerTransitionError:
            return store.require_run(entry.run_id)

    def _finalize_cancel_inline(self, run_id: str, *, reason: str) -> RunLedgerEntry:
        with self._open_store() as store:
            entry = store.require_run(run_id)
            backend = self.registry.get(entry.backend)
            machine = RunStateMachine(
                run_id=run_id,
                store=store,
                backend=backend,
                scheduler=self._scheduler(),
                tables=self.tables,
            )
            store.acknowledge_cancel(run_id=run_id)
            return machine.finish_cancelled(reason=reason)

    def _launch(self, run_id: str) -> bool:
        if not self._start_drivers or self._shutdown.is_set():
            return False
        with self._lock:
            existing = self._drivers.get(run_id)
            if existing is not None and existing.thread.is_alive():
                return False
            cancel = CancellationToken()
            thread = threading.Thread(
                target=self._drive,
                args=(run_id, cancel),
                name=f"spark-orch-{run_id}",
                daemon=True,
            )
            self._drivers[run_id] = _Driver(run_id=run_id, thread=thread, cancel=cancel)
            thread.start()
            return True

    def _drive(self, run_id: str, cancel: CancellationToken) -> None:
        store = self._open_store()
        try:
            entry = store.require_run(run_id)
            try:
                backend = self.registry.get(entry.backend)
            except UnknownBackendError as e:
                self._fail_driver(store, run_id, kind="unknown_backend", error=e)
                return
            machine = RunStateMachine(
                run_id=run_id,
                store=store,
                backend=backend,
                scheduler=self._scheduler(),
                cancel=cancel,
                tables=self.tables,
                shutdown=self._shutdown,
            )
            machine.drive()
        except DriverStopped:
            store.append_event(run_id, "driver_stopped", {"reason": "shutdown"})
        except RunNotFoundError:
            logger.error("driver started for unknown run %s", run_id)
        except Exception as e:
            # Never let a driver die silently with a live ledger entry.
            logger.exception("driver for run %s crashed", run_id)
            self._fail_driver(store, run_id, kind="orchestrator_error", error=e)
        finally:
            store.close()

    def _fail_driver(self, store: LedgerStore, run_id: str, *, kind: str, error: Exception) -> None:
        store.append_event(run_id, "driver_failed", {"error": str(error), "traceback": traceback.format_exc()})
        entry = store.get_run(run_id)
        if entry is None or entry.terminal:
            return
        try:
            store.transition(
                run_id,
                expected=entry.state,
                to=RunState.FAILED,
                last_error={"kind": kind, "native_status": None, "message": str(error)},
            )
        except LedgerTransitionError as e:
            # Submitted has no edge to Failed; leave it for the next recover().
            logger.warning("could not fail run %s after driver error: %s", run_id, e)
