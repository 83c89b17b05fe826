from __future__ import annotations

import os
import tempfile

import pytest

from conftest import FakeClock, HoldingClock, make_config, make_spec
from spark_orchestrator.backends.dry_run import DryRunBackend
from spark_orchestrator.backends.registry import BackendRegistry
from spark_orchestrator.config.load_config import RunsConfig
from spark_orchestrator.runtime.errors import RunConflictError, RunNotFoundError, UnknownBackendError
from spark_orchestrator.runtime.orchestrator import SparkJobOrchestrator
from spark_orchestrator.runtime.state_machine import client_token_for
from spark_orchestrator.runtime.types import RunState
from spark_orchestrator.storage.ledger_store import LedgerStore


def _registry(backend: DryRunBackend) -> BackendRegistry:
    registry = BackendRegistry()
    registry.register(backend)
    return registry


def test_start_run_drives_to_success_and_records_trace() -> None:
    with tempfile.TemporaryDirectory() as td:
        backend = DryRunBackend()
        orch = SparkJobOrchestrator(
            config=make_config(),
            registry=_registry(backend),
            db_path=os.path.join(td, "ledger.db"),
            clock=FakeClock(),
        )
        try:
            run_id = orch.start_run(make_spec())
            final = orch.wait(run_id, timeout_s=5.0)
            assert final.state == RunState.SUCCEEDED
            types = [e["event_type"] for e in orch.iter_events(run_id)]
            assert types[0] == "run_created"
            assert types.count("state_changed") == 3
            assert "poll" in types
        finally:
            orch.stop()


def test_idempotency_key_replays_and_conflicts() -> None:
    with tempfile.TemporaryDirectory() as td:
        orch = SparkJobOrchestrator(
            config=make_config(),
            registry=_registry(DryRunBackend()),
            db_path=os.path.join(td, "ledger.db"),
            start_drivers=False,
        )
        r1 = orch.start_run(make_spec(), idempotency_key="k1")
        r2 = orch.start_run(make_spec(), idempotency_key="k1")
        assert r1 == r2

        with pytest.raises(RunConflictError):
            orch.start_run(make_spec(name="other-job"), idempotency_key="k1")


def test_duplicate_run_id_and_unknown_backend_are_rejected() -> None:
    with tempfile.TemporaryDirectory() as td:
        orch = SparkJobOrchestrator(
            config=make_config(),
            registry=_registry(DryRunBackend()),
            db_path=os.path.join(td, "ledger.db"),
            start_drivers=False,
        )
        orch.start_run(make_spec(), run_id="run-fixed")
        with pytest.raises(RunConflictError):
            orch.start_run(make_spec(), run_id="run-fixed")
        with pytest.raises(UnknownBackendError):
            orch.start_run(make_spec(backend="nowhere"))
        with pytest.raises(RunNotFoundError):
            orch.get_run_status("run-missing")


def test_cancel_without_driver_finalizes_inline_and_is_idempotent() -> None:
    with tempfile.TemporaryDirectory() as td:
        backend = DryRunBackend()
        orch = SparkJobOrchestrator(
            config=make_config(),
            registry=_registry(backend),
            db_path=os.path.join(td, "ledger.db"),
            start_drivers=False,
        )
        run_id = orch.start_run(make_spec())
        assert orch.get_run_status(run_id).state == RunState.PENDING

        entry = orch.cancel_run(run_id, reason="not needed")
        assert entry.state == RunState.CANCELLED
        assert backend.submitted == []

        again = orch.cancel_run(run_id)
        assert again.state == RunState.CANCELLED
        assert again.terminal_at == entry.terminal_at


def test_cancel_live_run_wakes_driver() -> None:
    with tempfile.TemporaryDirectory() as td:
        backend = DryRunBackend()
        backend.queue_script("RUNNING")
        clock = HoldingClock(hold_after=1)
        orch = SparkJobOrchestrator(
            config=make_config(),
            registry=_registry(backend),
            db_path=os.path.join(td, "ledger.db"),
            clock=clock,
        )
        try:
            run_id = orch.start_run(make_spec())
            assert clock.parked.wait(5.0)

            orch.cancel_run(run_id, reason="user")
            final = orch.wait(run_id, timeout_s=5.0)
            assert final.state == RunState.CANCELLED
            assert backend.cancelled == [final.backend_run_token]
        finally:
            orch.stop()


def test_stop_then_recover_resumes_monitoring_without_resubmit() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "ledger.db")
        backend = DryRunBackend()
        backend.queue_script("RUNNING", "RUNNING", "SUCCESS")

        clock = HoldingClock(hold_after=1)
        first = SparkJobOrchestrator(config=make_config(), registry=_registry(backend), db_path=db_path, clock=clock)
        run_id = first.start_run(make_spec())
        assert clock.parked.wait(5.0)
        first.stop()

        mid = first.get_run_status(run_id)
        assert mid.state == RunState.MONITORING
        assert mid.poll_count == 1

        second = SparkJobOrchestrator(
            config=make_config(),
            registry=_registry(backend),
            db_path=db_path,
            clock=FakeClock(start=clock.now()),
        )
        try:
            counts = second.start()
            assert counts == {"resumed": 1, "failed_unacknowledged": 0}
            final = second.wait(run_id, timeout_s=5.0)
            assert final.state == RunState.SUCCEEDED
            assert final.backend_run_token == mid.backend_run_token
            assert len(backend.submitted) == 1
        finally:
            second.stop()


def test_recover_fails_unacknowledged_pending_runs() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "ledger.db")
        with LedgerStore(db_path) as store:
            entry, _ = store.create_run(spec=make_spec())

        backend = DryRunBackend()
        orch = SparkJobOrchestrator(config=make_config(), registry=_registry(backend), db_path=db_path, clock=FakeClock())
        try:
            counts = orch.recover()
            assert counts == {"resumed": 0, "failed_unacknowledged": 1}
            final = orch.get_run_status(entry.run_id)
            assert final.state == RunState.FAILED
            assert final.last_error["kind"] == "submission_not_acknowledged"
            assert backend.submitted == []
        finally:
            orch.stop()


def test_recover_retrying_run_resubmits_next_attempt() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "ledger.db")
        with LedgerStore(db_path) as store:
            entry, _ = store.create_run(spec=make_spec())
            rid = entry.run_id
            store.transition(rid, expected=RunState.PENDING, to=RunState.SUBMITTED, backend_run_token="dry/old", submitted_at=1000.0)
            store.transition(rid, expected=RunState.SUBMITTED, to=RunState.MONITORING)
            store.transition(
                rid,
                expected=RunState.MONITORING,
                to=RunState.RETRYING,
                last_error={"kind": "retryable_failure", "native_status": "FAILED", "message": "capacity"},
            )

        backend = DryRunBackend()
        backend.queue_script("SUCCESS")
        orch = SparkJobOrchestrator(config=make_config(), registry=_registry(backend), db_path=db_path, clock=FakeClock())
        try:
            orch.recover()
            final = orch.wait(rid, timeout_s=5.0)
            assert final.state == RunState.SUCCEEDED
            assert final.attempt == 2
            assert [s["client_token"] for s in backend.submitted] == [client_token_for(rid, 2)]
        finally:
            orch.stop()


def test_pending_past_ack_timeout_reports_failed() -> None:
    with tempfile.TemporaryDirectory() as td:
        orch = SparkJobOrchestrator(
            config=make_config(runs=RunsConfig(submission_ack_timeout_s=0.0)),
            registry=_registry(DryRunBackend()),
            db_path=os.path.join(td, "ledger.db"),
            start_drivers=False,
        )
        run_id = orch.start_run(make_spec())
        entry = orch.get_run_status(run_id)
        assert entry.state == RunState.FAILED
        assert entry.last_error["kind"] == "submission_not_acknowledged"


def test_status_snapshot_counts_runs_by_state() -> None:
    with tempfile.TemporaryDirectory() as td:
        orch = SparkJobOrchestrator(
            config=make_config(),
            registry=_registry(DryRunBackend()),
            db_path=os.path.join(td, "ledger.db"),
            start_drivers=False,
        )
        orch.start_run(make_spec())
        snap = orch.status_snapshot()
        assert snap["runs_by_state"] == {"Pending": 1}
        assert snap["backends"] == ["dry-run"]
        assert snap["live_drivers"] == 0
