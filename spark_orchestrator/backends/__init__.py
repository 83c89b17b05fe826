"""Execution backend adapters (submit / describe / cancel).

Each adapter translates a `JobSpecification` into one remote service's
vocabulary and returns raw native statuses; interpretation is left to the
classifier in `spark_orchestrator/runtime`.
"""
