from __future__ import annotations

import random

from conftest import FakeClock
from spark_orchestrator.config.load_config import PollConfig
from spark_orchestrator.runtime.poll_scheduler import PollScheduler
from spark_orchestrator.utils.cancel import CancellationToken


def test_jitter_stays_within_ratio() -> None:
    sched = PollScheduler(PollConfig(base_interval_s=30.0, jitter_ratio=0.2), clock=FakeClock(), rng=random.Random(1))
    samples = [sched.jittered_interval() for _ in range(200)]
    assert all(24.0 <= s <= 36.0 for s in samples)
    assert len({round(s, 6) for s in samples}) > 1


def test_transient_backoff_is_capped_exponential() -> None:
    sched = PollScheduler(PollConfig(transient_backoff_base_s=5.0, transient_backoff_max_s=30.0), clock=FakeClock())
    assert [sched.transient_backoff(n) for n in range(1, 6)] == [5.0, 10.0, 20.0, 30.0, 30.0]
    assert sched.next_delay(transient_failures=2) == 10.0


def test_deadline_is_inclusive() -> None:
    clock = FakeClock(start=100.0)
    sched = PollScheduler(PollConfig(), clock=clock)
    assert not sched.deadline_reached(0.0, 100.5)
    assert sched.deadline_reached(0.0, 100.0)


def test_wait_for_next_poll_clamps_to_deadline() -> None:
    clock = FakeClock(start=0.0)
    sched = PollScheduler(PollConfig(base_interval_s=30.0, jitter_ratio=0.0), clock=clock)
    tick = sched.wait_for_next_poll(None, submitted_at=0.0, timeout_s=12.0)
    assert tick is not None
    assert tick.waited_s == 12.0
    assert tick.polled_at == 12.0


def test_wait_returns_none_when_cancelled() -> None:
    clock = FakeClock(start=0.0)
    sched = PollScheduler(PollConfig(jitter_ratio=0.0), clock=clock)
    cancel = CancellationToken()
    cancel.request_cancel("stop")
    assert sched.wait_for_next_poll(cancel, submitted_at=0.0, timeout_s=100.0) is None
    assert sched.wait(5.0, cancel) is True
    assert cancel.reason == "stop"
