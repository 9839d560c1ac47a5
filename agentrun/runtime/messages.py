from __future__ import annotations

from typing import Any

from agentrun.storage.sqlite_store import MessageRecord, SQLiteStore
from agentrun.utils.logging import get_logger


logger = get_logger("agentrun.runs")

_LOG_METHODS = {"debug": "debug", "info": "info", "warn": "warning", "error": "error"}


def log_run_message(
    store: SQLiteStore,
    run_id: str,
    level: str,
    message: str,
    details: dict[str, Any] | None = None,
    *,
    step_number: int | None = None,
) -> MessageRecord:
    """Append to the run's message log and mirror it to the process logger."""
    record = store.append_message(run_id, level, message, step_number=step_number, details=details)
    method = getattr(logger, _LOG_METHODS.get(level, "info"))
    method(message, run_id=run_id, step=step_number, details=details)
    return record
