from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Any, Callable

import pytest


# Ensure `import spark_orchestrator...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from spark_orchestrator.config.load_config import OrchestratorConfig, PollConfig, RetryDefaults, RunsConfig  # noqa: E402
from spark_orchestrator.runtime.types import JobSpecification, RetryPolicy  # noqa: E402
from spark_orchestrator.utils.cancel import CancellationToken  # noqa: E402


class FakeClock:
    """Deterministic clock: `sleep` advances time instantly.

    `on_sleep(n)` runs after the n-th sleep (1-based) and may request
    cancellation to simulate something arriving during the wait.
    """

    def __init__(self, start: float = 1_000.0) -> None:
        self.t = float(start)
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[int], None] | None = None
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self.t

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> bool:
        if cancel is not None and cancel.cancelled:
            return True
        with self._lock:
            self.sleeps.append(float(seconds))
            self.t += max(0.0, float(seconds))
            n = len(self.sleeps)
        if self.on_sleep is not None:
            self.on_sleep(n)
        return bool(cancel is not None and cancel.cancelled)


class HoldingClock(FakeClock):
    """Fake clock that parks the caller on its cancel token after `hold_after` sleeps."""

    def __init__(self, hold_after: int, start: float = 1_000.0) -> None:
        super().__init__(start)
        self.hold_after = hold_after
        self.parked = threading.Event()

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> bool:
        if cancel is not None and len(self.sleeps) >= self.hold_after:
            self.parked.set()
            return cancel.wait(10.0)
        return super().sleep(seconds, cancel)


def make_spec(**overrides: Any) -> JobSpecification:
    data: dict[str, Any] = {
        "name": "nightly-etl",
        "backend": "dry-run",
        "execution_role_arn": "arn:aws:iam::123456789012:role/spark-runner",
        "entry_point": "s3://example-bucket/jobs/etl.py",
        "arguments": ("--date", "2024-01-01"),
        "execution_timeout_s": 3600.0,
        "retry_policy": RetryPolicy(max_attempts=3, backoff="exponential", base_delay_s=10.0, max_delay_s=60.0),
    }
    data.update(overrides)
    return JobSpecification(**data)


def make_config(**overrides: Any) -> OrchestratorConfig:
    data: dict[str, Any] = {
        "poll": PollConfig(base_interval_s=30.0, jitter_ratio=0.0, transient_backoff_base_s=5.0, transient_backoff_max_s=40.0),
        "runs": RunsConfig(),
        "retry": RetryDefaults(),
    }
    data.update(overrides)
    return OrchestratorConfig(**data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
