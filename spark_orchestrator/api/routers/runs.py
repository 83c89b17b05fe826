from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from spark_orchestrator.api.dependencies import get_orchestrator
from spark_orchestrator.api.errors import APIError
from spark_orchestrator.api.pagination import Cursor, CursorError, decode_cursor, encode_page
from spark_orchestrator.runtime.orchestrator import SparkJobOrchestrator
from spark_orchestrator.runtime.types import JobSpecification, RunState
from spark_orchestrator.storage.ledger_store import LedgerStore


router = APIRouter()


class RetryPolicyInput(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff: Literal["linear", "exponential"] = "exponential"
    base_delay_s: float = Field(default=60.0, ge=0)
    max_delay_s: float = Field(default=900.0, ge=0)


class ResourceLimitsInput(BaseModel):
    driver_cores: int | None = Field(default=None, ge=1)
    driver_memory: str | None = None
    executor_cores: int | None = Field(default=None, ge=1)
    executor_memory: str | None = None
    executor_instances: int | None = Field(default=None, ge=0)
    max_executors: int | None = Field(default=None, ge=1)


class LogDestinationInput(BaseModel):
    kind: Literal["s3", "cloudwatch"]
    uri: str | None = None
    log_group: str | None = None
    stream_prefix: str | None = None


class StartRunRequest(BaseModel):
    name: str = Field(min_length=1)
    backend: str = Field(min_length=1)
    execution_role_arn: str = Field(min_length=1)
    entry_point: str = Field(min_length=1)
    arguments: list[str] = Field(default_factory=list)
    submission_params: dict[str, Any] = Field(default_factory=dict)
    resource_limits: ResourceLimitsInput = Field(default_factory=ResourceLimitsInput)
    execution_timeout_s: float | None = Field(default=None, gt=0)
    retry_policy: RetryPolicyInput | None = None
    log_destinations: list[LogDestinationInput] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)
    run_id: str | None = Field(default=None, description="Caller-chosen run id; duplicates are rejected.")

    def to_spec(self, orch: SparkJobOrchestrator) -> JobSpecification:
        data = self.model_dump(mode="python", exclude={"run_id"}, exclude_none=True)
        try:
            return JobSpecification.from_dict(
                data,
                default_timeout_s=orch.config.runs.default_execution_timeout_s,
                default_retry=orch.config.retry,
            )
        except (TypeError, ValueError) as e:
            raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e


class CancelRunRequest(BaseModel):
    reason: str = Field(default="")


def _parse_cursor(cursor: str | None) -> tuple[float, str] | None:
    if not cursor:
        return None
    try:
        parsed: Cursor = decode_cursor(cursor)
    except CursorError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
    return parsed.as_key()


@router.post("/runs", status_code=202)
def start_run(
    body: StartRunRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    orch: SparkJobOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    spec = body.to_spec(orch)
    run_id = orch.start_run(
        spec,
        run_id=(body.run_id or "").strip() or None,
        idempotency_key=(idempotency_key or "").strip() or None,
    )
    return {"run": orch.get_run_status(run_id).to_dict()}


@router.get("/runs")
def list_runs(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    state: list[str] | None = Query(default=None),
    orch: SparkJobOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    states = state or None
    if states:
        known = {s.value for s in RunState}
        unknown = sorted(set(states) - known)
        if unknown:
            raise APIError(
                status_code=400,
                code="invalid_argument",
                message="Unknown run state filter.",
                details={"unknown": unknown, "allowed": sorted(known)},
            )
    page = orch.list_runs(limit=int(limit), cursor=_parse_cursor(cursor), states=states)
    return encode_page(page)


@router.get("/runs/{run_id}")
def get_run(run_id: str, orch: SparkJobOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return {"run": orch.get_run_status(run_id).to_dict()}


@router.get("/runs/{run_id}/events")
def list_run_events(
    run_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    cursor: str | None = Query(default=None),
    event_type: list[str] | None = Query(default=None),
    orch: SparkJobOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    with LedgerStore(orch.db_path) as store:
        store.require_run(run_id)
        page = store.list_events_page(
            run_id=run_id,
            limit=int(limit),
            cursor=_parse_cursor(cursor),
            event_types=event_type or None,
        )
    return encode_page(page)


@router.post("/runs/{run_id}/cancel")
def cancel_run(
    run_id: str,
    body: CancelRunRequest | None = None,
    orch: SparkJobOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    reason = (body.reason if body is not None else "").strip() or None
    entry = orch.cancel_run(run_id, reason=reason)
    return {"run": entry.to_dict(include_spec=False), "cancel": "requested" if not entry.terminal else "settled"}
