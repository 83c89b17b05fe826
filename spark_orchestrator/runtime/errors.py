from __future__ import annotations

from typing import Any


class OrchestratorError(RuntimeError):
    """Base exception for the orchestrator core."""


class RunNotFoundError(OrchestratorError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class RunConflictError(OrchestratorError):
    """Duplicate run id, or an idempotency key reused with a different spec."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class LedgerTransitionError(OrchestratorError):
    """Illegal or stale ledger transition (including writes to a terminal entry)."""


class UnknownBackendError(OrchestratorError):
    def __init__(self, backend_id: str) -> None:
        super().__init__(f"Unknown backend: {backend_id!r}")
        self.backend_id = backend_id


class TimeoutExceeded(OrchestratorError):
    """Execution timeout detected by the orchestrator's own clock."""

    def __init__(self, *, elapsed_s: float, timeout_s: float) -> None:
        super().__init__(f"Execution timeout exceeded: elapsed {elapsed_s:.1f}s >= {timeout_s:.1f}s")
        self.elapsed_s = elapsed_s
        self.timeout_s = timeout_s

    def to_error(self, native_status: str | None = None) -> dict[str, Any]:
        return {"kind": "timeout_exceeded", "native_status": native_status, "message": str(self)}
