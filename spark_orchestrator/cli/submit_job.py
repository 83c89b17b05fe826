from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from spark_orchestrator.backends.dry_run import DryRunBackend
from spark_orchestrator.backends.registry import BackendRegistry
from spark_orchestrator.config.load_config import ConfigError, load_orchestrator_config
from spark_orchestrator.runtime.errors import OrchestratorError
from spark_orchestrator.runtime.orchestrator import SparkJobOrchestrator
from spark_orchestrator.runtime.types import JobSpecification, RunLedgerEntry, RunState


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Submit one Spark job and drive it to a terminal state in this process (SQLite-backed ledger). "
            "For fire-and-forget submission, POST /api/v1/runs to the serving process instead."
        )
    )
    parser.add_argument("--spec", required=True, help="Path to a JSON job specification.")
    parser.add_argument("--run-id", default="", help="Optional caller-chosen run id.")
    parser.add_argument("--idempotency-key", default="", help="Replaying the same key returns the original run.")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env SPARK_ORCH_SQLITE_PATH or data/ledger.db).",
    )
    parser.add_argument("--config", default="", help="TOML config path (default: env SPARK_ORCH_CONFIG_PATH).")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Route the job to an in-process simulated backend (no cloud calls).",
    )
    return parser.parse_args(argv)


def _print_entry(entry: RunLedgerEntry) -> None:
    print(json.dumps(entry.to_dict(include_spec=False), ensure_ascii=False, indent=2, sort_keys=True))


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])

    try:
        config = load_orchestrator_config(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    try:
        raw: dict[str, Any] = json.loads(Path(args.spec).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"Cannot read job specification {args.spec}: {e}", file=sys.stderr)
        return 2

    registry = BackendRegistry.from_config(config)
    if args.dry_run:
        raw["backend"] = "dry-run"
        registry.register(DryRunBackend("dry-run"))

    try:
        spec = JobSpecification.from_dict(
            raw,
            default_timeout_s=config.runs.default_execution_timeout_s,
            default_retry=config.retry,
        )
    except (TypeError, ValueError) as e:
        print(f"Invalid job specification: {e}", file=sys.stderr)
        return 2

    # The driver thread lives in this process, so the command stays until the run
    # is terminal; the execution timeout bounds how long that can take.
    orch = SparkJobOrchestrator(config=config, registry=registry, db_path=args.db_path or None)
    try:
        run_id = orch.start_run(
            spec,
            run_id=args.run_id.strip() or None,
            idempotency_key=args.idempotency_key.strip() or None,
        )
        print(run_id, file=sys.stderr)
        try:
            entry = orch.wait(run_id)
        except KeyboardInterrupt:
            orch.cancel_run(run_id, reason="cli_interrupted")
            entry = orch.wait(run_id, timeout_s=30.0)
        _print_entry(entry)
        return 0 if entry.state == RunState.SUCCEEDED else 1
    except OrchestratorError as e:
        print(str(e), file=sys.stderr)
        return 1
    finally:
        orch.stop()


if __name__ == "__main__":
    raise SystemExit(main())
