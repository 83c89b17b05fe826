#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from spark_orchestrator.runtime.errors import RunNotFoundError  # noqa: E402
from spark_orchestrator.storage.ledger_store import LedgerStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Request cancellation of a run. The driver owning the run observes it at its next scheduling point."
    )
    p.add_argument("--run-id", required=True, help="Run id to cancel (e.g. run_<uuid>).")
    p.add_argument("--db-path", default="", help="SQLite path (default: env SPARK_ORCH_SQLITE_PATH or data/ledger.db).")
    p.add_argument("--reason", default="user_cancel", help="Optional reason to record.")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    store = LedgerStore(args.db_path or None)
    try:
        try:
            entry = store.require_run(str(args.run_id))
        except RunNotFoundError as e:
            print(str(e), file=sys.stderr)
            return 1
        if entry.terminal:
            print(f"Run already terminal: {entry.state.value}", file=sys.stderr)
            return 0
        cancel_id = store.request_cancel(run_id=entry.run_id, reason=str(args.reason))
        print(cancel_id)
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
