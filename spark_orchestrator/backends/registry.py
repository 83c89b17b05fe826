from __future__ import annotations

import threading
from typing import Callable, Iterator

from spark_orchestrator.backends.base import JobBackend
from spark_orchestrator.config.load_config import BackendConfig, OrchestratorConfig
from spark_orchestrator.runtime.errors import UnknownBackendError


def build_backend(cfg: BackendConfig) -> JobBackend:
    if cfg.kind == "emr_serverless":
        from spark_orchestrator.backends.emr_serverless import EmrServerlessBackend

        return EmrServerlessBackend(
            cfg.backend_id,
            application_id=str(cfg.application_id),
            region=cfg.region,
            client_timeout_s=cfg.client_timeout_s,
        )
    if cfg.kind == "emr_containers":
        from spark_orchestrator.backends.emr_containers import EmrContainersBackend

        return EmrContainersBackend(
            cfg.backend_id,
            virtual_cluster_id=str(cfg.virtual_cluster_id),
            release_label=cfg.release_label,
            pod_template_location=cfg.pod_template_location,
            region=cfg.region,
            client_timeout_s=cfg.client_timeout_s,
        )
    if cfg.kind == "dry_run":
        from spark_orchestrator.backends.dry_run import DryRunBackend

        return DryRunBackend(cfg.backend_id)
    raise UnknownBackendError(cfg.kind)


class BackendRegistry:
    """Explicit, caller-owned map of backend id -> adapter.

    `get_or_create` returns the instance already registered under a key, so
    lookups are deterministic for a given key and configuration.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._backends: dict[str, JobBackend] = {}
        self._configs: dict[str, BackendConfig] = {}

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> "BackendRegistry":
        registry = cls()
        for backend_id, bcfg in sorted(config.backends.items()):
            registry._configs[backend_id] = bcfg
        return registry

    def register(self, backend: JobBackend) -> JobBackend:
        with self._lock:
            self._backends[backend.backend_id] = backend
            return backend

    def get_or_create(self, backend_id: str, factory: Callable[[], JobBackend]) -> JobBackend:
        with self._lock:
            existing = self._backends.get(backend_id)
            if existing is not None:
                return existing
            backend = factory()
            if backend.backend_id != backend_id:
                raise ValueError(f"Factory built backend {backend.backend_id!r} for key {backend_id!r}")
            self._backends[backend_id] = backend
            return backend

    def get(self, backend_id: str) -> JobBackend:
        # Configured adapters are built on first use so that a missing SDK only
        # affects runs that actually target that backend.
        cfg = self._configs.get(backend_id)
        if cfg is not None:
            return self.get_or_create(backend_id, lambda: build_backend(cfg))
        with self._lock:
            backend = self._backends.get(backend_id)
        if backend is None:
            raise UnknownBackendError(backend_id)
        return backend

    def __contains__(self, backend_id: object) -> bool:
        return backend_id in self._backends or backend_id in self._configs

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(set(self._backends) | set(self._configs)))
