from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from spark_orchestrator.backends.base import BackendDependencyError
from spark_orchestrator.runtime.errors import (
    LedgerTransitionError,
    RunConflictError,
    RunNotFoundError,
    UnknownBackendError,
)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload)


def to_api_error(exc: Exception) -> APIError:
    """Map core exceptions onto the envelope's status/code pairs."""
    if isinstance(exc, RunNotFoundError):
        return APIError(status_code=404, code="not_found", message="Run not found.", details={"run_id": exc.run_id})
    if isinstance(exc, RunConflictError):
        return APIError(status_code=409, code="conflict", message=str(exc), details=exc.details or None)
    if isinstance(exc, LedgerTransitionError):
        return APIError(status_code=409, code="conflict", message=str(exc))
    if isinstance(exc, UnknownBackendError):
        return APIError(
            status_code=400,
            code="invalid_argument",
            message=str(exc),
            details={"backend": exc.backend_id},
        )
    if isinstance(exc, BackendDependencyError):
        return APIError(
            status_code=503,
            code="dependency_unavailable",
            message=str(exc),
            details={"missing": exc.missing},
        )
    if isinstance(exc, ValueError):
        return APIError(status_code=400, code="invalid_argument", message=str(exc))
    return APIError(status_code=500, code="internal", message="Internal server error.", details={"type": type(exc).__name__})


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def orchestrator_error_handler(_req: Request, exc: Exception) -> JSONResponse:
    err = to_api_error(exc)
    return error_response(status_code=err.status_code, code=err.code, message=err.message, details=err.details)


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Normalize Pydantic validation errors into our contract envelope.
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(_req: Request, exc: Exception) -> JSONResponse:
    # Details stay in server logs and the ledger trace.
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
