"""Run lifecycle runtime (executor, cancellation, dispatch, workers).

This layer is responsible for:
- moving runs through the status state machine
- executing a task's step pipeline and recording progress
- claiming dispatched runs from SQLite in background workers

It stays independent from the HTTP layer (`agentrun/api`), so both the CLI
and the API reuse the same execution logic.
"""
