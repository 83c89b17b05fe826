from __future__ import annotations

from abc import ABC, abstractmethod

from spark_orchestrator.runtime.types import JobSpecification, NativeStatus


NOT_FOUND_STATE = "NOT_FOUND"


class BackendError(RuntimeError):
    pass


class SubmissionError(BackendError):
    """The backend rejected the submit request before anything executed."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransientDescribeError(BackendError):
    """Polling-channel fault (network, throttling). Retry the poll, not the job."""


class BackendNotFoundError(BackendError):
    """The backend no longer knows the run token."""


class BackendDependencyError(BackendError):
    def __init__(self, message: str, *, missing: list[str]) -> None:
        super().__init__(message)
        self.missing = missing


class JobBackend(ABC):
    """Capability interface implemented once per execution service.

    Adapters are stateless with respect to runs: every call gets the token (or
    spec) it needs and nothing is retained between calls.
    """

    kind: str

    def __init__(self, backend_id: str) -> None:
        self.backend_id = backend_id

    @abstractmethod
    def submit(self, spec: JobSpecification, *, client_token: str) -> str:
        """Start one attempt and return the opaque backend run token.

        `client_token` is forwarded to services that support request
        idempotency so that a lost response cannot start a second job.
        """

    @abstractmethod
    def describe(self, token: str) -> NativeStatus:
        """Return the native status of a submitted run."""

    @abstractmethod
    def cancel(self, token: str) -> None:
        """Best-effort cancel; must not raise when the run is already gone."""


def split_token(token: str, *, backend_kind: str) -> tuple[str, str]:
    """Split `<container>/<job_run_id>` tokens used by the EMR adapters."""
    container, sep, job_run_id = (token or "").partition("/")
    if not sep or not container or not job_run_id:
        raise BackendNotFoundError(f"Malformed {backend_kind} run token: {token!r}")
    return container, job_run_id
