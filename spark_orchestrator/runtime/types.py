from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from spark_orchestrator.config.load_config import BACKOFF_SHAPES, RetryDefaults


class RunState(str, Enum):
    PENDING = "Pending"
    SUBMITTED = "Submitted"
    MONITORING = "Monitoring"
    RETRYING = "Retrying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    TIMED_OUT = "TimedOut"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({RunState.SUCCEEDED, RunState.FAILED, RunState.CANCELLED, RunState.TIMED_OUT})


class OutcomeKind(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class NativeStatus:
    """A backend's raw answer to `describe`, in its own vocabulary."""

    state: str
    failure_reason: str | None = None
    message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PollOutcome:
    kind: OutcomeKind
    native_status: str
    message: str | None = None

    def to_error(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "native_status": self.native_status, "message": self.message}


def _require(cond: bool, message: str) -> None:
    if not cond:
        raise ValueError(message)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: str = "exponential"
    base_delay_s: float = 60.0
    max_delay_s: float = 900.0

    def __post_init__(self) -> None:
        _require(self.max_attempts >= 1, f"retry_policy.max_attempts must be >= 1, got {self.max_attempts}")
        _require(self.backoff in BACKOFF_SHAPES, f"retry_policy.backoff must be one of {BACKOFF_SHAPES}")
        _require(self.base_delay_s >= 0, "retry_policy.base_delay_s must be >= 0")
        _require(self.max_delay_s >= self.base_delay_s, "retry_policy.max_delay_s must be >= base_delay_s")

    @classmethod
    def from_defaults(cls, d: RetryDefaults) -> "RetryPolicy":
        return cls(max_attempts=d.max_attempts, backoff=d.backoff, base_delay_s=d.base_delay_s, max_delay_s=d.max_delay_s)

    def delay_before_attempt(self, next_attempt: int) -> float:
        """Backoff to wait before starting `next_attempt` (2-based)."""
        n = max(1, int(next_attempt) - 1)
        if self.backoff == "linear":
            delay = self.base_delay_s * n
        else:
            delay = self.base_delay_s * (2 ** (n - 1))
        return float(min(delay, self.max_delay_s))


@dataclass(frozen=True)
class ResourceLimits:
    driver_cores: int | None = None
    driver_memory: str | None = None
    executor_cores: int | None = None
    executor_memory: str | None = None
    executor_instances: int | None = None
    max_executors: int | None = None

    def spark_conf(self) -> dict[str, str]:
        conf: dict[str, str] = {}
        if self.driver_cores is not None:
            conf["spark.driver.cores"] = str(self.driver_cores)
        if self.driver_memory:
            conf["spark.driver.memory"] = self.driver_memory
        if self.executor_cores is not None:
            conf["spark.executor.cores"] = str(self.executor_cores)
        if self.executor_memory:
            conf["spark.executor.memory"] = self.executor_memory
        if self.executor_instances is not None:
            conf["spark.executor.instances"] = str(self.executor_instances)
        if self.max_executors is not None:
            conf["spark.dynamicAllocation.maxExecutors"] = str(self.max_executors)
        return conf


@dataclass(frozen=True)
class LogDestination:
    kind: str  # s3|cloudwatch
    uri: str | None = None
    log_group: str | None = None
    stream_prefix: str | None = None

    def __post_init__(self) -> None:
        _require(self.kind in {"s3", "cloudwatch"}, f"log destination kind must be s3|cloudwatch, got {self.kind!r}")
        if self.kind == "s3":
            _require(bool(self.uri), "s3 log destination requires uri")
        else:
            _require(bool(self.log_group), "cloudwatch log destination requires log_group")


@dataclass(frozen=True)
class JobSpecification:
    """Caller-supplied, immutable description of one Spark job.

    `submission_params` is opaque to the orchestrator and only interpreted by
    the adapter of `backend`.
    """

    name: str
    backend: str
    execution_role_arn: str
    entry_point: str
    arguments: tuple[str, ...] = ()
    submission_params: Mapping[str, Any] = field(default_factory=dict)
    resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
    execution_timeout_s: float = 3600.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    log_destinations: tuple[LogDestination, ...] = ()
    tags: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _require(bool(self.name.strip()), "name is required")
        _require(bool(self.backend.strip()), "backend is required")
        _require(bool(self.execution_role_arn.strip()), "execution_role_arn is required")
        _require(bool(self.entry_point.strip()), "entry_point is required")
        _require(self.execution_timeout_s > 0, "execution_timeout_s must be > 0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "backend": self.backend,
            "execution_role_arn": self.execution_role_arn,
            "entry_point": self.entry_point,
            "arguments": list(self.arguments),
            "submission_params": dict(self.submission_params),
            "resource_limits": {k: v for k, v in vars(self.resource_limits).items() if v is not None},
            "execution_timeout_s": float(self.execution_timeout_s),
            "retry_policy": dict(vars(self.retry_policy)),
            "log_destinations": [
                {k: v for k, v in vars(d).items() if v is not None} for d in self.log_destinations
            ],
            "tags": dict(self.tags),
        }

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        *,
        default_timeout_s: float | None = None,
        default_retry: RetryDefaults | None = None,
    ) -> "JobSpecification":
        retry_raw = data.get("retry_policy")
        if retry_raw:
            retry = RetryPolicy(**dict(retry_raw))
        elif default_retry is not None:
            retry = RetryPolicy.from_defaults(default_retry)
        else:
            retry = RetryPolicy()

        timeout = data.get("execution_timeout_s")
        if timeout is None:
            timeout = default_timeout_s if default_timeout_s is not None else 3600.0

        return cls(
            name=str(data.get("name") or ""),
            backend=str(data.get("backend") or ""),
            execution_role_arn=str(data.get("execution_role_arn") or ""),
            entry_point=str(data.get("entry_point") or ""),
            arguments=tuple(str(a) for a in (data.get("arguments") or ())),
            submission_params=dict(data.get("submission_params") or {}),
            resource_limits=ResourceLimits(**dict(data.get("resource_limits") or {})),
            execution_timeout_s=float(timeout),
            retry_policy=retry,
            log_destinations=tuple(LogDestination(**dict(d)) for d in (data.get("log_destinations") or ())),
            tags={str(k): str(v) for k, v in dict(data.get("tags") or {}).items()},
        )


@dataclass(frozen=True)
class RunLedgerEntry:
    """Read-only projection of one run's ledger row."""

    run_id: str
    backend: str
    state: RunState
    attempt: int
    created_at: float
    updated_at: float
    backend_run_token: str | None = None
    submitted_at: float | None = None
    last_polled_at: float | None = None
    terminal_at: float | None = None
    last_error: dict[str, Any] | None = None
    poll_count: int = 0
    rearm_count: int = 0
    spec: JobSpecification | None = None

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def to_dict(self, *, include_spec: bool = True) -> dict[str, Any]:
        out: dict[str, Any] = {
            "run_id": self.run_id,
            "backend": self.backend,
            "state": self.state.value,
            "attempt": int(self.attempt),
            "backend_run_token": self.backend_run_token,
            "created_at": float(self.created_at),
            "updated_at": float(self.updated_at),
            "submitted_at": self.submitted_at,
            "last_polled_at": self.last_polled_at,
            "terminal_at": self.terminal_at,
            "last_error": self.last_error,
            "poll_count": int(self.poll_count),
            "rearm_count": int(self.rearm_count),
        }
        if include_spec and self.spec is not None:
            out["spec"] = self.spec.to_dict()
        return out
