from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends, Request

from spark_orchestrator.api.dependencies import get_orchestrator
from spark_orchestrator.runtime.orchestrator import SparkJobOrchestrator
from spark_orchestrator.storage.ledger_store import SCHEMA_VERSION


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "spark-orchestrator",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "boto3": _pkg_version("boto3"),
        },
        "ts": time.time(),
    }


@router.get("/system/orchestrator")
def system_orchestrator(
    request: Request,
    orch: SparkJobOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return {
        "ts": time.time(),
        "orchestrator": orch.status_snapshot(),
        "startup": {"recovered_runs": getattr(request.app.state, "recovered_runs", None)},
    }
