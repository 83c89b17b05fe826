"""HTTP API layer (FastAPI).

Exposes a small, versioned `/api/v1` surface over the orchestrator:
- start runs (optionally idempotent) and list/fetch their ledger entries
- replay a run's trace events
- request cancellation

The API is intentionally thin: run semantics live in `spark_orchestrator/runtime`
and persistence in `spark_orchestrator/storage`.
"""
