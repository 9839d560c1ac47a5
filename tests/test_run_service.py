from __future__ import annotations

import tempfile

import pytest

from agentrun.runtime.errors import InvalidTransition, RunNotFound
from agentrun.runtime.service import RunService
from agentrun.storage.sqlite_store import SQLiteStore


class _StuckDispatch:
    """Dispatch whose jobs are always already claimed."""

    def __init__(self) -> None:
        self.enqueued: list[str] = []

    def enqueue(self, run_id: str) -> str:
        self.enqueued.append(run_id)
        return f"job_{len(self.enqueued)}"

    def cancel_if_unclaimed(self, job_id: str) -> bool:
        return False


class _BrokenDispatch(_StuckDispatch):
    def cancel_if_unclaimed(self, job_id: str) -> bool:
        raise ConnectionError("queue unavailable")


def test_launch_creates_pending_run_and_enqueues_it() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run = RunService(store, max_retries=5).launch_run(
                user_id="u1",
                task_type="simple",
                input_payload={"prompt": "hi"},
            )
            assert run.status == "pending"
            assert run.current_step == 0
            assert run.total_steps is None
            assert run.max_retries == 5
            assert run.input_payload == {"prompt": "hi"}
            assert run.dispatch_job_id is not None

            job = store.get_dispatch_job(job_id=run.dispatch_job_id)
            assert job is not None
            assert job.run_id == run.run_id
            assert job.status == "queued"
        finally:
            store.close()


def test_get_run_is_scoped_to_owner() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            service = RunService(store)
            run = service.launch_run(user_id="u1", task_type="echo")
            assert service.get_run(run_id=run.run_id, user_id="u1").run_id == run.run_id
            with pytest.raises(RunNotFound):
                service.get_run(run_id=run.run_id, user_id="u2")
            with pytest.raises(RunNotFound):
                service.request_cancel(run_id=run.run_id, user_id="u2")
        finally:
            store.close()


def test_cancel_pending_run_removes_unclaimed_job() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            service = RunService(store)
            run = service.launch_run(user_id="u1", task_type="echo")
            cancelled = service.request_cancel(run_id=run.run_id, user_id="u1")

            assert cancelled.status == "cancelled"
            assert cancelled.completed_at is not None
            assert run.dispatch_job_id is not None
            assert store.get_dispatch_job(job_id=run.dispatch_job_id) is None
        finally:
            store.close()


def test_cancel_claimed_run_waits_for_executor() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            service = RunService(store, _StuckDispatch())
            run = service.launch_run(user_id="u1", task_type="echo")
            updated = service.request_cancel(run_id=run.run_id, user_id="u1")
            assert updated.status == "cancel_requested"
            assert updated.completed_at is None
        finally:
            store.close()


def test_dispatch_failure_does_not_fail_cancel_request() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            service = RunService(store, _BrokenDispatch())
            run = service.launch_run(user_id="u1", task_type="echo")
            updated = service.request_cancel(run_id=run.run_id, user_id="u1")
            assert updated.status == "cancel_requested"
        finally:
            store.close()


def test_second_cancel_is_rejected() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            service = RunService(store, _StuckDispatch())
            run = service.launch_run(user_id="u1", task_type="echo")
            service.request_cancel(run_id=run.run_id, user_id="u1")

            with pytest.raises(InvalidTransition) as exc:
                service.request_cancel(run_id=run.run_id, user_id="u1")
            assert exc.value.current == "cancel_requested"
            assert "Only 'pending' or 'running' runs can be cancelled" in str(exc.value)
            assert service.get_run(run_id=run.run_id, user_id="u1").status == "cancel_requested"
        finally:
            store.close()


@pytest.mark.parametrize("status", ["completed", "failed", "cancelled"])
def test_terminal_runs_cannot_be_cancelled(status: str) -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            service = RunService(store)
            run = service.create_run(user_id="u1", task_type="echo")
            store.update_run_status(run.run_id, status)
            with pytest.raises(InvalidTransition):
                service.request_cancel(run_id=run.run_id, user_id="u1")
            assert service.get_run(run_id=run.run_id, user_id="u1").status == status
        finally:
            store.close()


def test_list_runs_filters_and_counts() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            service = RunService(store)
            ids = [service.launch_run(user_id="u1", task_type="echo").run_id for _ in range(3)]
            simple = service.launch_run(user_id="u1", task_type="simple")
            service.launch_run(user_id="u2", task_type="echo")
            store.update_run_status(ids[0], "completed")

            runs, total = service.list_runs(user_id="u1")
            assert total == 4
            # Newest first.
            assert [r.run_id for r in runs] == [simple.run_id, *reversed(ids)]

            runs, total = service.list_runs(user_id="u1", task_type="echo", limit=2, offset=1)
            assert total == 3
            assert [r.run_id for r in runs] == [ids[1], ids[0]]

            runs, total = service.list_runs(user_id="u1", status="completed")
            assert total == 1
            assert [r.run_id for r in runs] == [ids[0]]
        finally:
            store.close()
