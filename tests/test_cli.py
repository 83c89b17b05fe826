from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

import pytest

from spark_orchestrator.cli.submit_job import main
from spark_orchestrator.runtime.types import RunState
from spark_orchestrator.storage.ledger_store import LedgerStore


FAST_CONFIG = "\n".join(
    [
        "[poll]",
        "base_interval_s = 0.01",
        "jitter_ratio = 0.0",
        "transient_backoff_base_s = 0.01",
        "transient_backoff_max_s = 0.01",
    ]
)


def _write_inputs(td: str, **spec_overrides: object) -> tuple[str, str, str]:
    spec = {
        "name": "nightly-etl",
        "backend": "serverless",
        "execution_role_arn": "arn:aws:iam::123456789012:role/spark-runner",
        "entry_point": "s3://example-bucket/jobs/etl.py",
        "execution_timeout_s": 30,
    }
    spec.update(spec_overrides)
    spec_path = Path(td) / "job.json"
    spec_path.write_text(json.dumps(spec), encoding="utf-8")
    cfg_path = Path(td) / "orch.toml"
    cfg_path.write_text(FAST_CONFIG, encoding="utf-8")
    return str(spec_path), str(cfg_path), os.path.join(td, "ledger.db")


def test_dry_run_submit_drives_run_to_success(capsys: pytest.CaptureFixture[str]) -> None:
    with tempfile.TemporaryDirectory() as td:
        spec_path, cfg_path, db_path = _write_inputs(td)
        code = main(["--spec", spec_path, "--config", cfg_path, "--db-path", db_path, "--dry-run"])
        assert code == 0

        printed = json.loads(capsys.readouterr().out)
        assert printed["state"] == RunState.SUCCEEDED.value

        # The run is finished when the command returns; nothing is left for a later recover().
        with LedgerStore(db_path) as store:
            assert store.list_non_terminal_runs() == []
            entry = store.require_run(printed["run_id"])
            assert entry.state == RunState.SUCCEEDED
            assert entry.backend == "dry-run"
            assert store.count_events(run_id=entry.run_id, event_type="driver_stopped") == 0


def test_failed_run_exits_non_zero(capsys: pytest.CaptureFixture[str]) -> None:
    with tempfile.TemporaryDirectory() as td:
        spec_path, cfg_path, db_path = _write_inputs(
            td, submission_params={"dry_run_script": ["RUNNING", "FAILED:USER_ERROR:boom"]}
        )
        code = main(["--spec", spec_path, "--config", cfg_path, "--db-path", db_path, "--dry-run"])
        assert code == 1
        printed = json.loads(capsys.readouterr().out)
        assert printed["state"] == RunState.FAILED.value
        assert printed["last_error"]["kind"] == "terminal_failure"


def test_invalid_spec_is_usage_error() -> None:
    with tempfile.TemporaryDirectory() as td:
        spec_path, cfg_path, db_path = _write_inputs(td, entry_point="")
        assert main(["--spec", spec_path, "--config", cfg_path, "--db-path", db_path, "--dry-run"]) == 2
        assert main(["--spec", os.path.join(td, "missing.json"), "--config", cfg_path, "--db-path", db_path]) == 2
