from __future__ import annotations

import sqlite3
import tempfile

import pytest

from conftest import make_spec
from spark_orchestrator.runtime.errors import LedgerTransitionError, RunConflictError
from spark_orchestrator.runtime.types import RunState
from spark_orchestrator.storage.ledger_store import SCHEMA_VERSION, LedgerStore


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? LIMIT 1;",
        (name,),
    ).fetchone()
    return row is not None


def _to_monitoring(store: LedgerStore, run_id: str) -> None:
    store.transition(run_id, expected=RunState.PENDING, to=RunState.SUBMITTED, backend_run_token="dry/1", submitted_at=10.0)
    store.transition(run_id, expected=RunState.SUBMITTED, to=RunState.MONITORING)


def test_create_run_persists_spec_and_pending_state() -> None:
    with tempfile.TemporaryDirectory() as td:
        with LedgerStore(f"{td}/ledger.db") as store:
            entry, created = store.create_run(spec=make_spec(), run_id="run-1")
            assert created is True
            assert entry.state == RunState.PENDING
            assert entry.attempt == 1
            assert entry.spec == make_spec()
            assert store.count_events(run_id="run-1", event_type="run_created") == 1

            with pytest.raises(RunConflictError):
                store.create_run(spec=make_spec(), run_id="run-1")


def test_idempotency_key_returns_original_entry() -> None:
    with tempfile.TemporaryDirectory() as td:
        with LedgerStore(f"{td}/ledger.db") as store:
            first, created1 = store.create_run(spec=make_spec(), idempotency_key="k", request_hash="h1")
            again, created2 = store.create_run(spec=make_spec(), idempotency_key="k", request_hash="h1")
            assert created1 is True and created2 is False
            assert again.run_id == first.run_id

            with pytest.raises(RunConflictError):
                store.create_run(spec=make_spec(), idempotency_key="k", request_hash="h2")


def test_terminal_entries_are_immutable() -> None:
    with tempfile.TemporaryDirectory() as td:
        with LedgerStore(f"{td}/ledger.db") as store:
            entry, _ = store.create_run(spec=make_spec())
            _to_monitoring(store, entry.run_id)
            done = store.transition(entry.run_id, expected=RunState.MONITORING, to=RunState.SUCCEEDED)
            assert done.terminal
            assert done.terminal_at is not None

            for target in (RunState.FAILED, RunState.CANCELLED, RunState.RETRYING):
                with pytest.raises(LedgerTransitionError):
                    store.transition(entry.run_id, expected=RunState.SUCCEEDED, to=target)
            with pytest.raises(LedgerTransitionError):
                store.record_poll(entry.run_id, attempt=1, polled_at=99.0, rearm=True)
            assert store.require_run(entry.run_id) == done


def test_illegal_and_stale_transitions_are_rejected() -> None:
    with tempfile.TemporaryDirectory() as td:
        with LedgerStore(f"{td}/ledger.db") as store:
            entry, _ = store.create_run(spec=make_spec())
            # Pending cannot jump straight to Monitoring.
            with pytest.raises(LedgerTransitionError):
                store.transition(entry.run_id, expected=RunState.PENDING, to=RunState.MONITORING)
            # Writer with an outdated view of the state.
            with pytest.raises(LedgerTransitionError):
                store.transition(entry.run_id, expected=RunState.SUBMITTED, to=RunState.MONITORING)

            _to_monitoring(store, entry.run_id)
            with pytest.raises(LedgerTransitionError):
                store.transition(entry.run_id, expected=RunState.MONITORING, to=RunState.RETRYING, expected_attempt=2)


def test_attempt_never_decreases_and_resets_poll_counters() -> None:
    with tempfile.TemporaryDirectory() as td:
        with LedgerStore(f"{td}/ledger.db") as store:
            entry, _ = store.create_run(spec=make_spec())
            rid = entry.run_id
            _to_monitoring(store, rid)
            store.record_poll(rid, attempt=1, polled_at=40.0, rearm=True)
            polled = store.record_poll(rid, attempt=1, polled_at=70.0, rearm=False)
            assert (polled.poll_count, polled.rearm_count, polled.last_polled_at) == (2, 1, 70.0)

            store.transition(rid, expected=RunState.MONITORING, to=RunState.RETRYING)
            with pytest.raises(LedgerTransitionError):
                store.transition(rid, expected=RunState.RETRYING, to=RunState.SUBMITTED, attempt=0)

            resubmitted = store.transition(
                rid,
                expected=RunState.RETRYING,
                to=RunState.SUBMITTED,
                attempt=2,
                backend_run_token="dry/2",
                submitted_at=200.0,
            )
            assert resubmitted.attempt == 2
            assert (resubmitted.poll_count, resubmitted.rearm_count, resubmitted.last_polled_at) == (0, 0, None)
            assert resubmitted.backend_run_token == "dry/2"

            # A poll for the previous attempt is stale.
            store.transition(rid, expected=RunState.SUBMITTED, to=RunState.MONITORING)
            with pytest.raises(LedgerTransitionError):
                store.record_poll(rid, attempt=1, polled_at=230.0, rearm=True)


def test_unknown_transition_fields_are_rejected() -> None:
    with tempfile.TemporaryDirectory() as td:
        with LedgerStore(f"{td}/ledger.db") as store:
            entry, _ = store.create_run(spec=make_spec())
            with pytest.raises(ValueError):
                store.transition(entry.run_id, expected=RunState.PENDING, to=RunState.FAILED, state="Succeeded")


def test_cancel_requests_are_durable_across_connections() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/ledger.db"
        with LedgerStore(db_path) as a:
            entry, _ = a.create_run(spec=make_spec())
            a.request_cancel(run_id=entry.run_id, reason="operator")

        with LedgerStore(db_path) as b:
            assert b.is_cancel_requested(run_id=entry.run_id)
            b.acknowledge_cancel(run_id=entry.run_id)
            row = b.get_cancel_request(run_id=entry.run_id)
            assert row is not None
            assert row["status"] == "acknowledged"
            assert row["reason"] == "operator"


def test_list_non_terminal_and_counts() -> None:
    with tempfile.TemporaryDirectory() as td:
        with LedgerStore(f"{td}/ledger.db") as store:
            a, _ = store.create_run(spec=make_spec())
            b, _ = store.create_run(spec=make_spec())
            store.transition(b.run_id, expected=RunState.PENDING, to=RunState.FAILED, last_error={"kind": "x"})

            assert [e.run_id for e in store.list_non_terminal_runs()] == [a.run_id]
            assert store.count_runs_by_state() == {"Pending": 1, "Failed": 1}
            failed = store.require_run(b.run_id)
            assert failed.last_error == {"kind": "x"}


def test_migration_from_v1_adds_idempotency_table() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/ledger.db"
        with LedgerStore(db_path) as store:
            assert _table_exists(store._conn, "idempotency_keys")

        # Simulate a database written by a v1 build.
        conn = sqlite3.connect(db_path)
        conn.execute("DROP TABLE idempotency_keys;")
        conn.execute("UPDATE meta SET value = '1' WHERE key = 'schema_version';")
        conn.commit()
        conn.close()

        with LedgerStore(db_path) as store:
            assert _table_exists(store._conn, "idempotency_keys")
            assert store._get_schema_version() == SCHEMA_VERSION
