from __future__ import annotations

from typing import Any

from agentrun.runtime.cancellation import finalize_cancelled
from agentrun.runtime.dispatch import DispatchGateway, SQLiteDispatch
from agentrun.runtime.errors import RunNotFound
from agentrun.runtime.state import CANCEL_REQUESTED, PENDING, ensure_transition
from agentrun.storage.sqlite_store import MessageRecord, RunRecord, SQLiteStore
from agentrun.utils.logging import get_logger


logger = get_logger(__name__)


class RunService:
    """Operations the request layer invokes on the run lifecycle.

    Task types are not checked against the registry here: an unknown type
    only surfaces when the executor resolves it, and the run then fails.
    """

    def __init__(
        self,
        store: SQLiteStore,
        dispatch: DispatchGateway | None = None,
        *,
        max_retries: int = 3,
    ) -> None:
        self._store = store
        self._dispatch = dispatch or SQLiteDispatch(store)
        self._max_retries = int(max_retries)

    def create_run(self, *, user_id: str, task_type: str, input_payload: dict[str, Any] | None = None) -> RunRecord:
        return self._store.create_run(
            user_id=user_id,
            task_type=task_type,
            input_payload=input_payload or {},
            max_retries=self._max_retries,
        )

    def launch_run(self, *, user_id: str, task_type: str, input_payload: dict[str, Any] | None = None) -> RunRecord:
        """Create a pending run and hand it to the dispatch queue."""
        run = self.create_run(user_id=user_id, task_type=task_type, input_payload=input_payload)
        job_id = self._dispatch.enqueue(run.run_id)
        updated = self._store.update_run(run.run_id, dispatch_job_id=job_id)
        logger.info("run_launched", run_id=run.run_id, task_type=task_type, job_id=job_id)
        return updated or run

    def get_run(self, *, run_id: str, user_id: str) -> RunRecord:
        run = self._store.get_run_for_user(run_id=run_id, user_id=user_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def list_messages(self, *, run_id: str, since: float | None = None) -> list[MessageRecord]:
        return self._store.list_messages(run_id=run_id, since=since)

    def request_cancel(self, *, run_id: str, user_id: str) -> RunRecord:
        run = self.get_run(run_id=run_id, user_id=user_id)
        ensure_transition(
            run.status,
            CANCEL_REQUESTED,
            message=f"Cannot cancel run with status '{run.status}'. Only 'pending' or 'running' runs can be cancelled.",
        )

        if not self._store.compare_and_set_status(run_id, expected=run.status, status=CANCEL_REQUESTED):
            # Lost a race with the worker or a second cancel; judge the fresh status.
            current = self._store.get_run_status(run_id=run_id)
            if current is None:
                raise RunNotFound(run_id)
            ensure_transition(current, CANCEL_REQUESTED)
            self._store.update_run_status(run_id, CANCEL_REQUESTED)
        updated = self.get_run(run_id=run_id, user_id=user_id)

        if run.status == PENDING and run.dispatch_job_id:
            # Best-effort: a job a worker already claimed is caught by the
            # executor's entry check instead.
            try:
                removed = self._dispatch.cancel_if_unclaimed(run.dispatch_job_id)
            except Exception as e:
                logger.warning("dispatch_cancel_failed", run_id=run_id, job_id=run.dispatch_job_id, error=str(e))
                removed = False
            if removed:
                # No worker will ever see this run, so resolve the request here.
                logger.info("dispatch_job_removed", run_id=run_id, job_id=run.dispatch_job_id)
                updated = finalize_cancelled(self._store, run_id) or updated

        return updated

    def list_runs(
        self,
        *,
        user_id: str,
        status: str | None = None,
        task_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[RunRecord], int]:
        runs = self._store.list_runs(
            user_id=user_id,
            status=status,
            task_type=task_type,
            limit=int(limit),
            offset=int(offset),
        )
        total = self._store.count_runs(user_id=user_id, status=status, task_type=task_type)
        return runs, total
