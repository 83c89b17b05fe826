from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable

from spark_orchestrator.runtime.errors import LedgerTransitionError, RunConflictError, RunNotFoundError
from spark_orchestrator.runtime.types import JobSpecification, RunLedgerEntry, RunState, TERMINAL_STATES


SCHEMA_VERSION = 2


# Legal moves per state. Re-arming inside Monitoring is a poll record, not a transition.
ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.PENDING: frozenset({RunState.SUBMITTED, RunState.FAILED, RunState.CANCELLED}),
    RunState.SUBMITTED: frozenset({RunState.MONITORING, RunState.CANCELLED}),
    RunState.MONITORING: frozenset(
        {RunState.SUCCEEDED, RunState.FAILED, RunState.RETRYING, RunState.TIMED_OUT, RunState.CANCELLED}
    ),
    RunState.RETRYING: frozenset({RunState.SUBMITTED, RunState.FAILED, RunState.CANCELLED}),
}


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def default_db_path() -> str:
    return os.getenv("SPARK_ORCH_SQLITE_PATH", "data/ledger.db")


def _row_to_entry(row: sqlite3.Row) -> RunLedgerEntry:
    spec_raw = json.loads(row["spec_json"]) if row["spec_json"] else None
    return RunLedgerEntry(
        run_id=str(row["run_id"]),
        backend=str(row["backend"]),
        state=RunState(str(row["state"])),
        attempt=int(row["attempt"]),
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
        backend_run_token=row["backend_run_token"],
        submitted_at=float(row["submitted_at"]) if row["submitted_at"] is not None else None,
        last_polled_at=float(row["last_polled_at"]) if row["last_polled_at"] is not None else None,
        terminal_at=float(row["terminal_at"]) if row["terminal_at"] is not None else None,
        last_error=json.loads(row["last_error_json"]) if row["last_error_json"] else None,
        poll_count=int(row["poll_count"]),
        rearm_count=int(row["rearm_count"]),
        spec=JobSpecification.from_dict(spec_raw) if spec_raw is not None else None,
    )


class LedgerStore:
    """SQLite-backed Run Ledger plus the per-run trace of events.

    - One connection per thread: every run driver and every HTTP request opens
      its own store.
    - Each transition is a single `BEGIN IMMEDIATE` read-modify-write guarded
      by the expected state, so a stale writer fails instead of overwriting.
    - Rows are never deleted; terminal rows are the audit record.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "LedgerStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              run_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              backend TEXT NOT NULL,
              state TEXT NOT NULL,
              attempt INTEGER NOT NULL,
              backend_run_token TEXT,
              submitted_at REAL,
              last_polled_at REAL,
              terminal_at REAL,
              last_error_json TEXT,
              poll_count INTEGER NOT NULL DEFAULT 0,
              rearm_count INTEGER NOT NULL DEFAULT 0,
              spec_json TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              event_id TEXT PRIMARY KEY,
              run_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              FOREIGN KEY (run_id) REFERENCES runs(run_id)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cancel_requests (
              cancel_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              run_id TEXT NOT NULL,
              status TEXT NOT NULL,
              reason TEXT
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_run_ts ON events(run_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_state ON runs(state, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_cancel_run ON cancel_requests(run_id, created_at);")

        # New databases start at schema_version=1 and migrate forward explicitly.
        cur.execute("INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);", ("schema_version", "1"))
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN;")
        try:
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Idempotency keys for start_run (API/trigger-level retries).
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
              key TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              request_hash TEXT NOT NULL,
              run_id TEXT NOT NULL
            );
            """
        )

    # --- Idempotency
    def get_idempotency(self, key: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT key, created_at, request_hash, run_id FROM idempotency_keys WHERE key = ? LIMIT 1;",
            (key,),
        ).fetchone()

    def _put_idempotency(self, *, key: str, request_hash: str, run_id: str) -> None:
        self._conn.execute(
            """
            INSERT INTO idempotency_keys(key, created_at, request_hash, run_id)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(key) DO NOTHING;
            """,
            (key, _utc_ts(), request_hash, run_id),
        )

    # --- Runs
    def create_run(
        self,
        *,
        spec: JobSpecification,
        run_id: str | None = None,
        idempotency_key: str | None = None,
        request_hash: str | None = None,
    ) -> tuple[RunLedgerEntry, bool]:
        """Insert a Pending entry. Returns (entry, created).

        With an idempotency key, a replay of the same request returns the
        original entry with created=False.
        """
        rid = (run_id or "").strip() or _new_id("run")
        ts = _utc_ts()
        with self.transaction(mode="IMMEDIATE"):
            if idempotency_key:
                prior = self.get_idempotency(idempotency_key)
                if prior is not None:
                    if str(prior["request_hash"]) != str(request_hash or ""):
                        raise RunConflictError(
                            "Idempotency key reused with a different job specification.",
                            details={"idempotency_key": idempotency_key, "run_id": str(prior["run_id"])},
                        )
                    existing = self.get_run(str(prior["run_id"]))
                    if existing is None:
                        raise RunNotFoundError(str(prior["run_id"]))
                    return existing, False

            if self._conn.execute("SELECT 1 FROM runs WHERE run_id = ? LIMIT 1;", (rid,)).fetchone():
                raise RunConflictError(f"Run id already exists: {rid}", details={"run_id": rid})

            self._conn.execute(
                """
                INSERT INTO runs(
                  run_id, created_at, updated_at, backend, state, attempt, spec_json
                ) VALUES(?, ?, ?, ?, ?, ?, ?);
                """,
                (rid, ts, ts, spec.backend, RunState.PENDING.value, 1, _json_dumps(spec.to_dict())),
            )
            self._insert_event(rid, "run_created", {"state": RunState.PENDING.value, "backend": spec.backend}, ts=ts)
            if idempotency_key:
                self._put_idempotency(key=idempotency_key, request_hash=str(request_hash or ""), run_id=rid)

        entry = self.get_run(rid)
        assert entry is not None
        return entry, True

    def get_run(self, run_id: str) -> RunLedgerEntry | None:
        row = self._conn.execute("SELECT * FROM runs WHERE run_id = ? LIMIT 1;", (run_id,)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def require_run(self, run_id: str) -> RunLedgerEntry:
        entry = self.get_run(run_id)
        if entry is None:
            raise RunNotFoundError(run_id)
        return entry

    def list_non_terminal_runs(self) -> list[RunLedgerEntry]:
        terminal = [s.value for s in TERMINAL_STATES]
        placeholders = ",".join(["?"] * len(terminal))
        rows = self._conn.execute(
            f"SELECT * FROM runs WHERE state NOT IN ({placeholders}) ORDER BY created_at ASC, run_id ASC;",
            terminal,
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def list_runs_page(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None,
        states: list[str] | None,
    ) -> dict[str, Any]:
        where: list[str] = []
        params: list[Any] = []
        if states:
            where.append(f"state IN ({','.join(['?'] * len(states))})")
            params.extend(states)
        if cursor is not None:
            created_at, run_id = cursor
            where.append("(created_at < ? OR (created_at = ? AND run_id < ?))")
            params.extend([created_at, created_at, run_id])
        sql = "SELECT * FROM runs"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC, run_id DESC LIMIT ?;"
        params.append(int(limit) + 1)

        rows = self._conn.execute(sql, params).fetchall()
        has_more = len(rows) > limit
        rows = rows[:limit]
        items = [_row_to_entry(r).to_dict(include_spec=False) for r in rows]
        next_cursor = None
        if has_more and rows:
            last = rows[-1]
            next_cursor = (float(last["created_at"]), str(last["run_id"]))
        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_runs_by_state(self) -> dict[str, int]:
        rows = self._conn.execute("SELECT state, COUNT(1) AS n FROM runs GROUP BY state;").fetchall()
        return {str(r["state"]): int(r["n"]) for r in rows}

    def transition(
        self,
        run_id: str,
        *,
        expected: RunState,
        to: RunState,
        expected_attempt: int | None = None,
        event: dict[str, Any] | None = None,
        **fields: Any,
    ) -> RunLedgerEntry:
        """Atomically move a run from `expected` to `to`.

        Accepted fields: backend_run_token, submitted_at, last_error, attempt.
        Terminal targets stamp `terminal_at`; a new attempt resets the per-attempt
        poll counters.
        """
        unknown = set(fields) - {"backend_run_token", "submitted_at", "last_error", "attempt"}
        if unknown:
            raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")

        ts = _utc_ts()
        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                "SELECT state, attempt FROM runs WHERE run_id = ? LIMIT 1;", (run_id,)
            ).fetchone()
            if row is None:
                raise RunNotFoundError(run_id)
            current = RunState(str(row["state"]))
            attempt = int(row["attempt"])
            if current in TERMINAL_STATES:
                raise LedgerTransitionError(f"Run {run_id} is terminal ({current.value}); refusing {to.value}.")
            if current != expected:
                raise LedgerTransitionError(
                    f"Stale transition for {run_id}: expected {expected.value}, found {current.value}."
                )
            if expected_attempt is not None and attempt != expected_attempt:
                raise LedgerTransitionError(
                    f"Stale transition for {run_id}: expected attempt {expected_attempt}, found {attempt}."
                )
            if to not in ALLOWED_TRANSITIONS.get(current, frozenset()):
                raise LedgerTransitionError(f"Illegal transition for {run_id}: {current.value} -> {to.value}.")

            new_attempt = int(fields.get("attempt", attempt))
            if new_attempt < attempt:
                raise LedgerTransitionError(f"Attempt may not decrease for {run_id}: {attempt} -> {new_attempt}.")

            sets = ["state = ?", "updated_at = ?"]
            params: list[Any] = [to.value, ts]
            if new_attempt != attempt:
                sets.extend(["attempt = ?", "poll_count = 0", "rearm_count = 0", "last_polled_at = NULL"])
                params.append(new_attempt)
            if "backend_run_token" in fields:
                sets.append("backend_run_token = ?")
                params.append(fields["backend_run_token"])
            if "submitted_at" in fields:
                sets.append("submitted_at = ?")
                params.append(fields["submitted_at"])
            if "last_error" in fields:
                sets.append("last_error_json = ?")
                params.append(_json_dumps(fields["last_error"]) if fields["last_error"] is not None else None)
            if to in TERMINAL_STATES:
                sets.append("terminal_at = ?")
                params.append(ts)
            params.append(run_id)
            self._conn.execute(f"UPDATE runs SET {', '.join(sets)} WHERE run_id = ?;", params)

            payload: dict[str, Any] = {"from": current.value, "to": to.value, "attempt": new_attempt}
            if event:
                payload.update(event)
            self._insert_event(run_id, "state_changed", payload, ts=ts)

        return self.require_run(run_id)

    def record_poll(
        self,
        run_id: str,
        *,
        attempt: int,
        polled_at: float,
        rearm: bool,
    ) -> RunLedgerEntry:
        """Fold one classified poll into a Monitoring entry (no state change)."""
        with self.transaction(mode="IMMEDIATE"):
            updated = self._conn.execute(
                """
                UPDATE runs
                SET
                  last_polled_at = ?,
                  poll_count = poll_count + 1,
                  rearm_count = rearm_count + ?,
                  updated_at = ?
                WHERE run_id = ? AND state = ? AND attempt = ?;
                """,
                (polled_at, 1 if rearm else 0, _utc_ts(), run_id, RunState.MONITORING.value, int(attempt)),
            )
            if updated.rowcount != 1:
                raise LedgerTransitionError(f"Run {run_id} is no longer monitoring attempt {attempt}.")
        return self.require_run(run_id)

    # --- Events (trace)
    def _insert_event(self, run_id: str, event_type: str, payload: dict[str, Any], *, ts: float | None = None) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO events(event_id, run_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, run_id, ts if ts is not None else _utc_ts(), event_type, _json_dumps(payload)),
        )
        return event_id

    def append_event(self, run_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = self._insert_event(run_id, event_type, payload)
        self._conn.commit()
        return event_id

    def iter_events(self, run_id: str) -> Iterable[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT event_id, created_at, event_type, payload_json
            FROM events WHERE run_id = ?
            ORDER BY created_at, rowid;
            """,
            (run_id,),
        )
        for r in rows:
            yield {
                "event_id": r["event_id"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }

    def list_events_page(
        self,
        *,
        run_id: str,
        limit: int,
        cursor: tuple[float, str] | None,
        event_types: list[str] | None,
    ) -> dict[str, Any]:
        # Stable ordering by (created_at, event_id); fetch strictly after the cursor.
        where = ["run_id = ?"]
        params: list[Any] = [run_id]
        if event_types:
            where.append("event_type IN (%s)" % ",".join(["?"] * len(event_types)))
            params.extend(event_types)
        if cursor is not None:
            created_at, event_id = cursor
            where.append("(created_at > ? OR (created_at = ? AND event_id > ?))")
            params.extend([float(created_at), float(created_at), str(event_id)])
        params.append(int(limit) + 1)
        rows = self._conn.execute(
            "SELECT event_id, created_at, event_type, payload_json FROM events "
            f"WHERE {' AND '.join(where)} "
            "ORDER BY created_at ASC, event_id ASC LIMIT ?;",
            params,
        ).fetchall()
        has_more = len(rows) > limit
        rows = rows[:limit]
        items = [
            {
                "event_id": r["event_id"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }
            for r in rows
        ]
        next_cursor = (float(rows[-1]["created_at"]), str(rows[-1]["event_id"])) if has_more and rows else None
        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_events(self, *, run_id: str, event_type: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(1) AS n FROM events WHERE run_id = ? AND event_type = ?;",
            (run_id, event_type),
        ).fetchone()
        return int(row["n"]) if row is not None else 0

    # --- Cancellation (durable; observed by the run's driver at its next scheduling point)
    def request_cancel(self, *, run_id: str, reason: str | None = None) -> str:
        cancel_id = _new_id("cancel")
        self._conn.execute(
            """
            INSERT INTO cancel_requests(cancel_id, created_at, run_id, status, reason)
            VALUES(?, ?, ?, ?, ?);
            """,
            (cancel_id, _utc_ts(), run_id, "requested", reason),
        )
        self._insert_event(run_id, "cancel_requested", {"cancel_id": cancel_id, "reason": reason})
        self._conn.commit()
        return cancel_id

    def get_cancel_request(self, *, run_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT cancel_id, created_at, run_id, status, reason FROM cancel_requests
            WHERE run_id = ? AND status IN ('requested', 'acknowledged')
            ORDER BY created_at ASC
            LIMIT 1;
            """,
            (run_id,),
        ).fetchone()

    def is_cancel_requested(self, *, run_id: str) -> bool:
        return self.get_cancel_request(run_id=run_id) is not None

    def acknowledge_cancel(self, *, run_id: str) -> None:
        self._conn.execute(
            "UPDATE cancel_requests SET status = 'acknowledged' WHERE run_id = ? AND status = 'requested';",
            (run_id,),
        )
        self._conn.commit()
