from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Protocol

from spark_orchestrator.config.load_config import PollConfig
from spark_orchestrator.utils.cancel import CancellationToken


class Clock(Protocol):
    def now(self) -> float: ...

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> bool:
        """Sleep; return True if woken by cancellation."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> bool:
        if cancel is not None:
            return cancel.wait(seconds)
        time.sleep(max(0.0, seconds))
        return False


@dataclass(frozen=True)
class PollTick:
    """A 'time to poll' event handed to the state machine."""

    polled_at: float
    waited_s: float


class PollScheduler:
    """Decides when the next `describe` call happens for one run.

    Base cadence is `base_interval_s` with +/- `jitter_ratio` random spread so
    that many concurrent runs do not hit the backend API in lockstep. After a
    transient describe fault the delay switches to a capped exponential
    backoff, independent of the job-level retry policy. Waits never extend past
    the attempt's timeout deadline so expiry is detected on time.
    """

    def __init__(
        self,
        config: PollConfig,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self.clock: Clock = clock or SystemClock()
        self._rng = rng or random.Random()

    def now(self) -> float:
        return self.clock.now()

    def jittered_interval(self) -> float:
        base = float(self._config.base_interval_s)
        j = float(self._config.jitter_ratio)
        if j <= 0:
            return base
        return base * (1.0 + self._rng.uniform(-j, j))

    def transient_backoff(self, consecutive_failures: int) -> float:
        n = max(1, int(consecutive_failures))
        delay = float(self._config.transient_backoff_base_s) * (2 ** (n - 1))
        return min(delay, float(self._config.transient_backoff_max_s))

    def next_delay(self, *, transient_failures: int = 0) -> float:
        if transient_failures > 0:
            return self.transient_backoff(transient_failures)
        return self.jittered_interval()

    def elapsed_since(self, submitted_at: float) -> float:
        return self.now() - float(submitted_at)

    def deadline_reached(self, submitted_at: float, timeout_s: float) -> bool:
        # Inclusive: elapsed == timeout counts as exceeded.
        return self.elapsed_since(submitted_at) >= float(timeout_s)

    def wait_for_next_poll(
        self,
        cancel: CancellationToken | None,
        *,
        submitted_at: float,
        timeout_s: float,
        transient_failures: int = 0,
    ) -> PollTick | None:
        """Block until the next poll is due. Returns None if cancelled while waiting."""
        delay = self.next_delay(transient_failures=transient_failures)
        remaining = float(timeout_s) - self.elapsed_since(submitted_at)
        delay = max(0.0, min(delay, remaining))
        if self.clock.sleep(delay, cancel):
            return None
        return PollTick(polled_at=self.now(), waited_s=delay)

    def wait(self, seconds: float, cancel: CancellationToken | None) -> bool:
        """Plain interruptible wait (used for retry backoff). True if cancelled."""
        return self.clock.sleep(max(0.0, float(seconds)), cancel)
