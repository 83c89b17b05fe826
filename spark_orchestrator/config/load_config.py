from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


BACKEND_KINDS = ("emr_serverless", "emr_containers", "dry_run")
BACKOFF_SHAPES = ("linear", "exponential")


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_str_list(value: Any, *, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ConfigError(f"Invalid list for {key}: {value!r}")
    return tuple(str(v) for v in value)


def _positive(value: float, *, key: str, allow_zero: bool = False) -> float:
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"Invalid {key}: must be {'>= 0' if allow_zero else '> 0'}, got {value!r}")
    return value


def _reject_unknown(section: dict[str, Any], allowed: set[str], *, key: str) -> None:
    unknown = sorted(set(section) - allowed)
    if unknown:
        raise ConfigError(f"Unknown option(s) in [{key}]: {', '.join(unknown)}")


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"Invalid section [{name}]: expected a table")
    return value


@dataclass(frozen=True)
class PollConfig:
    base_interval_s: float = 30.0
    jitter_ratio: float = 0.2
    transient_backoff_base_s: float = 5.0
    transient_backoff_max_s: float = 300.0


@dataclass(frozen=True)
class RunsConfig:
    submission_ack_timeout_s: float = 600.0
    default_execution_timeout_s: float = 3600.0


@dataclass(frozen=True)
class RetryDefaults:
    max_attempts: int = 3
    backoff: str = "exponential"
    base_delay_s: float = 60.0
    max_delay_s: float = 900.0


@dataclass(frozen=True)
class BackendConfig:
    """One configured execution backend (what the provisioning layer hands us)."""

    backend_id: str
    kind: str
    region: str | None = None
    application_id: str | None = None
    virtual_cluster_id: str | None = None
    release_label: str = "emr-6.12.0"
    pod_template_location: str | None = None
    client_timeout_s: float = 60.0


@dataclass(frozen=True)
class ClassificationOverrides:
    extra_running_states: tuple[str, ...] = ()
    extra_success_states: tuple[str, ...] = ()
    extra_failure_states: tuple[str, ...] = ()
    extra_cancelled_states: tuple[str, ...] = ()
    retryable_reasons: tuple[str, ...] = ()
    retryable_patterns: tuple[str, ...] = ()


@dataclass(frozen=True)
class OrchestratorConfig:
    poll: PollConfig = field(default_factory=PollConfig)
    runs: RunsConfig = field(default_factory=RunsConfig)
    retry: RetryDefaults = field(default_factory=RetryDefaults)
    backends: dict[str, BackendConfig] = field(default_factory=dict)
    classification: dict[str, ClassificationOverrides] = field(default_factory=dict)


def default_config_path() -> Path:
    return Path(os.getenv("SPARK_ORCH_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def _parse_poll(raw: dict[str, Any]) -> PollConfig:
    d = PollConfig()
    _reject_unknown(raw, set(PollConfig.__dataclass_fields__), key="poll")
    cfg = PollConfig(
        base_interval_s=_as_float(raw.get("base_interval_s", d.base_interval_s), key="poll.base_interval_s"),
        jitter_ratio=_as_float(raw.get("jitter_ratio", d.jitter_ratio), key="poll.jitter_ratio"),
        transient_backoff_base_s=_as_float(
            raw.get("transient_backoff_base_s", d.transient_backoff_base_s), key="poll.transient_backoff_base_s"
        ),
        transient_backoff_max_s=_as_float(
            raw.get("transient_backoff_max_s", d.transient_backoff_max_s), key="poll.transient_backoff_max_s"
        ),
    )
    _positive(cfg.base_interval_s, key="poll.base_interval_s")
    _positive(cfg.transient_backoff_base_s, key="poll.transient_backoff_base_s")
    if not 0.0 <= cfg.jitter_ratio < 1.0:
        raise ConfigError(f"Invalid poll.jitter_ratio: must be in [0, 1), got {cfg.jitter_ratio!r}")
    if cfg.transient_backoff_max_s < cfg.transient_backoff_base_s:
        raise ConfigError("Invalid poll.transient_backoff_max_s: must be >= poll.transient_backoff_base_s")
    return cfg


def _parse_runs(raw: dict[str, Any]) -> RunsConfig:
    d = RunsConfig()
    _reject_unknown(raw, set(RunsConfig.__dataclass_fields__), key="runs")
    cfg = RunsConfig(
        submission_ack_timeout_s=_as_float(
            raw.get("submission_ack_timeout_s", d.submission_ack_timeout_s), key="runs.submission_ack_timeout_s"
        ),
        default_execution_timeout_s=_as_float(
            raw.get("default_execution_timeout_s", d.default_execution_timeout_s),
            key="runs.default_execution_timeout_s",
        ),
    )
    _positive(cfg.submission_ack_timeout_s, key="runs.submission_ack_timeout_s")
    _positive(cfg.default_execution_timeout_s, key="runs.default_execution_timeout_s")
    return cfg


def _parse_retry(raw: dict[str, Any]) -> RetryDefaults:
    d = RetryDefaults()
    _reject_unknown(raw, set(RetryDefaults.__dataclass_fields__), key="retry")
    cfg = RetryDefaults(
        max_attempts=_as_int(raw.get("max_attempts", d.max_attempts), key="retry.max_attempts"),
        backoff=_as_str(raw.get("backoff", d.backoff), key="retry.backoff"),
        base_delay_s=_as_float(raw.get("base_delay_s", d.base_delay_s), key="retry.base_delay_s"),
        max_delay_s=_as_float(raw.get("max_delay_s", d.max_delay_s), key="retry.max_delay_s"),
    )
    if cfg.max_attempts < 1:
        raise ConfigError(f"Invalid retry.max_attempts: must be >= 1, got {cfg.max_attempts}")
    if cfg.backoff not in BACKOFF_SHAPES:
        raise ConfigError(f"Invalid retry.backoff: {cfg.backoff!r} (expected one of {BACKOFF_SHAPES})")
    _positive(cfg.base_delay_s, key="retry.base_delay_s", allow_zero=True)
    if cfg.max_delay_s < cfg.base_delay_s:
        raise ConfigError("Invalid retry.max_delay_s: must be >= retry.base_delay_s")
    return cfg


def _parse_backend(backend_id: str, raw: Any) -> BackendConfig:
    key = f"backends.{backend_id}"
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid section [{key}]: expected a table")
    allowed = set(BackendConfig.__dataclass_fields__) - {"backend_id"}
    _reject_unknown(raw, allowed, key=key)

    kind = _as_str(raw.get("kind"), key=f"{key}.kind")
    if kind not in BACKEND_KINDS:
        raise ConfigError(f"Invalid {key}.kind: {kind!r} (expected one of {BACKEND_KINDS})")

    def _opt(name: str) -> str | None:
        v = raw.get(name)
        return str(v).strip() or None if v is not None else None

    cfg = BackendConfig(
        backend_id=backend_id,
        kind=kind,
        region=_opt("region"),
        application_id=_opt("application_id"),
        virtual_cluster_id=_opt("virtual_cluster_id"),
        release_label=_as_str(raw.get("release_label", BackendConfig.release_label), key=f"{key}.release_label"),
        pod_template_location=_opt("pod_template_location"),
        client_timeout_s=_as_float(
            raw.get("client_timeout_s", BackendConfig.client_timeout_s), key=f"{key}.client_timeout_s"
        ),
    )
    if kind == "emr_serverless" and not cfg.application_id:
        raise ConfigError(f"Missing required config key: {key}.application_id")
    if kind == "emr_containers" and not cfg.virtual_cluster_id:
        raise ConfigError(f"Missing required config key: {key}.virtual_cluster_id")
    _positive(cfg.client_timeout_s, key=f"{key}.client_timeout_s")
    return cfg


def _parse_classification(kind: str, raw: Any) -> ClassificationOverrides:
    key = f"classification.{kind}"
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid section [{key}]: expected a table")
    _reject_unknown(raw, set(ClassificationOverrides.__dataclass_fields__), key=key)
    return ClassificationOverrides(
        **{name: _as_str_list(raw.get(name), key=f"{key}.{name}") for name in ClassificationOverrides.__dataclass_fields__}
    )


def config_from_mapping(raw: dict[str, Any]) -> OrchestratorConfig:
    _reject_unknown(raw, {"poll", "runs", "retry", "backends", "classification"}, key="<root>")
    backends_raw = _section(raw, "backends")
    classification_raw = _section(raw, "classification")
    return OrchestratorConfig(
        poll=_parse_poll(_section(raw, "poll")),
        runs=_parse_runs(_section(raw, "runs")),
        retry=_parse_retry(_section(raw, "retry")),
        backends={str(k): _parse_backend(str(k), v) for k, v in backends_raw.items()},
        classification={str(k): _parse_classification(str(k), v) for k, v in classification_raw.items()},
    )


def load_orchestrator_config(path: Path | None = None) -> OrchestratorConfig:
    explicit = path is not None or bool(os.getenv("SPARK_ORCH_CONFIG_PATH"))
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {cfg_path}")
        return OrchestratorConfig()

    import tomllib

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e
    return config_from_mapping(raw)
