"""Run orchestration core.

This layer is responsible for:
- driving each run through Pending -> Submitted -> Monitoring -> terminal
- scheduling polls and classifying native backend statuses
- recovering non-terminal runs from the ledger after a restart

It stays independent from the HTTP layer (`spark_orchestrator/api`), so both
the CLI and the API reuse the same execution logic.
"""
