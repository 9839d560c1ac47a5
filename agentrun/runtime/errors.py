from __future__ import annotations

from typing import Any


class AgentRunError(RuntimeError):
    """Base class for run lifecycle errors."""


class RunNotFound(AgentRunError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class UnknownTaskType(AgentRunError):
    def __init__(self, task_type: str) -> None:
        super().__init__(f"Unknown task type: {task_type}")
        self.task_type = task_type


class InvalidTransition(AgentRunError):
    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        super().__init__(message or f"Invalid run status transition: {current!r} -> {target!r}")
        self.current = current
        self.target = target


class StepExecutionError(AgentRunError):
    """Raised by steps (or task hooks) when a step cannot produce its output."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class PersistenceError(AgentRunError):
    """Raised by the store when a read/write against SQLite fails."""
