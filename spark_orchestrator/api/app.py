from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from spark_orchestrator.api.errors import (
    APIError,
    api_error_handler,
    orchestrator_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from spark_orchestrator.backends.base import BackendDependencyError
from spark_orchestrator.runtime.errors import OrchestratorError
from spark_orchestrator.runtime.orchestrator import SparkJobOrchestrator

from .routers.health import router as health_router
from .routers.runs import router as runs_router


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("SPARK_ORCH_CORS_ORIGINS", "").strip()
    if not raw:
        return ["http://localhost:3000", "http://127.0.0.1:3000"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app(orchestrator: SparkJobOrchestrator | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        orch = orchestrator or SparkJobOrchestrator(start_drivers=_env_bool("SPARK_ORCH_ENABLE_DRIVERS", True))
        app.state.orchestrator = orch
        # Resume non-terminal runs left by a previous process (single-instance assumption).
        recovered = orch.start(recover=_env_bool("SPARK_ORCH_RECOVER_ON_STARTUP", True))
        app.state.recovered_runs = recovered
        try:
            yield
        finally:
            orch.stop()

    app = FastAPI(title="Spark Job Orchestrator API", version="0.1.0", lifespan=lifespan)
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)
    app.add_exception_handler(BackendDependencyError, orchestrator_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_from_env(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(runs_router, prefix="/api/v1", tags=["runs"])
    return app


app = create_app()
