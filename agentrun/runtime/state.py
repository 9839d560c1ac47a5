"""Run status vocabulary and the legal transition table."""

from __future__ import annotations

from agentrun.runtime.errors import InvalidTransition


PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
CANCEL_REQUESTED = "cancel_requested"

RUN_STATUSES = (PENDING, RUNNING, COMPLETED, FAILED, CANCELLED, CANCEL_REQUESTED)
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, CANCELLED})

MESSAGE_LEVELS = ("debug", "info", "warn", "error")

# cancel_requested -> completed/failed: a cancel request that races the last
# step (or a step error) loses; cancellation is only observed at boundaries.
_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({RUNNING, CANCEL_REQUESTED}),
    RUNNING: frozenset({RUNNING, COMPLETED, FAILED, CANCEL_REQUESTED}),
    CANCEL_REQUESTED: frozenset({CANCELLED, COMPLETED, FAILED}),
    COMPLETED: frozenset(),
    FAILED: frozenset(),
    CANCELLED: frozenset(),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str, *, message: str | None = None) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target, message)
