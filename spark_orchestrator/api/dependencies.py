from __future__ import annotations

import threading

from fastapi import Request

from spark_orchestrator.api.errors import APIError, to_api_error
from spark_orchestrator.config.load_config import ConfigError
from spark_orchestrator.runtime.orchestrator import SparkJobOrchestrator


_ORCH_INIT_LOCK = threading.Lock()


def get_orchestrator(request: Request) -> SparkJobOrchestrator:
    """FastAPI dependency: the process-wide orchestrator kept in `app.state`.

    The lifespan hook normally installs it; building it lazily here covers
    apps used without running the lifespan (e.g. plain TestClient calls).
    """
    cached = getattr(request.app.state, "orchestrator", None)
    if isinstance(cached, SparkJobOrchestrator):
        return cached

    with _ORCH_INIT_LOCK:
        cached2 = getattr(request.app.state, "orchestrator", None)
        if isinstance(cached2, SparkJobOrchestrator):
            return cached2
        try:
            orch = SparkJobOrchestrator()
        except ConfigError as e:
            raise APIError(status_code=500, code="config_error", message=str(e)) from e
        except Exception as e:
            raise to_api_error(e) from e
        request.app.state.orchestrator = orch
        return orch
