from __future__ import annotations

import logging
from typing import Any

from spark_orchestrator.backends.base import BackendDependencyError
from spark_orchestrator.runtime.types import JobSpecification, LogDestination


logger = logging.getLogger(__name__)


# Error codes that mean "ask again later" on the polling channel.
RETRYABLE_ERROR_CODES = frozenset(
    {
        "ThrottlingException",
        "Throttling",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "InternalServerException",
        "InternalServerError",
        "InternalFailure",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "RequestTimeout",
        "RequestTimeoutException",
    }
)

NOT_FOUND_ERROR_CODES = frozenset({"ResourceNotFoundException", "NotFoundException"})


def make_client(service_name: str, *, region: str | None, timeout_s: float) -> Any:
    """Create a boto3 client whose calls are bounded by `timeout_s`."""
    try:
        import boto3
        from botocore.config import Config
    except ImportError as e:
        raise BackendDependencyError(
            "Missing dependency: boto3. Install it in the runtime environment.", missing=["boto3"]
        ) from e

    config = Config(
        connect_timeout=timeout_s,
        read_timeout=timeout_s,
        # Polling has its own backoff; keep the SDK's retries short.
        retries={"max_attempts": 2, "mode": "standard"},
    )
    return boto3.client(service_name, region_name=region, config=config)


def client_error_code(error: Exception) -> str:
    response = getattr(error, "response", None) or {}
    return str((response.get("Error") or {}).get("Code") or type(error).__name__)


def client_error_message(error: Exception) -> str:
    response = getattr(error, "response", None) or {}
    return str((response.get("Error") or {}).get("Message") or error)


def is_connection_error(error: Exception) -> bool:
    try:
        from botocore.exceptions import ConnectionError as BotoConnectionError
        from botocore.exceptions import ReadTimeoutError
    except ImportError:
        return False
    return isinstance(error, (BotoConnectionError, ReadTimeoutError))


def spark_submit_parameters(spec: JobSpecification) -> str | None:
    parts: list[str] = []
    for key, value in spec.resource_limits.spark_conf().items():
        parts.append(f"--conf {key}={value}")
    extra = str(spec.submission_params.get("spark_submit_parameters") or "").strip()
    if extra:
        parts.append(extra)
    return " ".join(parts) or None


def monitoring_configuration(destinations: tuple[LogDestination, ...]) -> dict[str, Any]:
    monitoring: dict[str, Any] = {}
    for dest in destinations:
        if dest.kind == "s3":
            monitoring["s3MonitoringConfiguration"] = {"logUri": dest.uri}
        else:
            cw: dict[str, Any] = {"logGroupName": dest.log_group}
            if dest.stream_prefix:
                cw["logStreamNamePrefix"] = dest.stream_prefix
            monitoring["cloudWatchMonitoringConfiguration"] = cw
    return monitoring


def best_effort(call: str, fn: Any, **kwargs: Any) -> None:
    """Invoke a cancel-style API call, logging instead of raising."""
    from botocore.exceptions import BotoCoreError, ClientError

    try:
        fn(**kwargs)
    except ClientError as e:
        logger.warning("%s ignored (%s): %s", call, client_error_code(e), client_error_message(e))
    except BotoCoreError as e:
        logger.warning("%s ignored: %s", call, e)
