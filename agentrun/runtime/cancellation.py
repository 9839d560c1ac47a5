"""Cooperative cancellation.

The request layer and the worker are different processes; the run record's
status is the only channel between them. A cancel request flips the status
to `cancel_requested`; the executor polls it at step boundaries and resolves
it into `cancelled`.
"""

from __future__ import annotations

import time

from agentrun.runtime.messages import log_run_message
from agentrun.runtime.state import CANCEL_REQUESTED, CANCELLED
from agentrun.storage.sqlite_store import RunRecord, SQLiteStore


CANCELLED_MESSAGE = "Run cancelled by user request"


def is_cancel_requested(store: SQLiteStore, run_id: str) -> bool:
    return store.get_run_status(run_id=run_id) == CANCEL_REQUESTED


def finalize_cancelled(store: SQLiteStore, run_id: str) -> RunRecord | None:
    """Terminal cancel: no output and no error payload are set.

    Only a run still in `cancel_requested` moves; the message is logged once.
    """
    if store.compare_and_set_status(run_id, expected=CANCEL_REQUESTED, status=CANCELLED, completed_at=time.time()):
        log_run_message(store, run_id, "info", CANCELLED_MESSAGE)
    return store.get_run(run_id=run_id)
