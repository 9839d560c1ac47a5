from __future__ import annotations

import tempfile
import threading
import time
from typing import Any

from agentrun.agents.registry import TaskRegistry, build_registry
from agentrun.agents.types import BaseTask, ExecutionContext, Step, StepResult
from agentrun.runtime.service import RunService
from agentrun.runtime.worker import RunWorker, WorkerSettings, run_once
from agentrun.storage.sqlite_store import SQLiteStore


def test_run_once_executes_and_completes_job() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run = RunService(store).launch_run(user_id="u1", task_type="echo", input_payload={"text": "x"})
            registry = build_registry()

            assert run_once(store, registry, worker_id="t") == run.run_id
            assert run_once(store, registry, worker_id="t") is None

            final = store.get_run(run_id=run.run_id)
            assert final is not None and final.status == "completed"
            assert store.count_dispatch_jobs_by_status() == {"completed": 1}
        finally:
            store.close()


def test_run_once_records_failed_job_without_raising() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run = RunService(store).launch_run(user_id="u1", task_type="not-registered")
            assert run_once(store, build_registry()) == run.run_id

            final = store.get_run(run_id=run.run_id)
            assert final is not None and final.status == "failed"
            assert store.count_dispatch_jobs_by_status() == {"failed": 1}
        finally:
            store.close()


def test_worker_pool_drains_queue() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        try:
            service = RunService(store)
            run_ids = [
                service.launch_run(user_id="u1", task_type="echo", input_payload={"i": i}).run_id
                for i in range(6)
            ]

            worker = RunWorker(db_path=db_path, settings=WorkerSettings(concurrency=3, poll_interval_s=0.05))
            worker.start()
            try:
                deadline = time.time() + 10.0
                while time.time() < deadline:
                    statuses = {store.get_run_status(run_id=r) for r in run_ids}
                    if statuses == {"completed"}:
                        break
                    time.sleep(0.05)
                snapshot = worker.status_snapshot()
            finally:
                worker.stop()

            assert {store.get_run_status(run_id=r) for r in run_ids} == {"completed"}
            assert snapshot["running"] is True
            assert snapshot["concurrency"] == 3
            assert "echo" in snapshot["task_types"]
            assert store.count_dispatch_jobs_by_status() == {"completed": 6}
        finally:
            store.close()


_release = threading.Event()


class _GatedTask(BaseTask):
    """Single step that blocks until the test releases it."""

    def steps(self) -> list[Step]:
        def wait(inp: Any, ctx: ExecutionContext) -> StepResult:
            _release.wait(timeout=10.0)
            return StepResult(output="released")

        return [Step(name="gate", kind="code", execute=wait)]


def _wait_for(predicate: Any, timeout_s: float = 10.0) -> bool:
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_busy_counts_only_executing_runs() -> None:
    registry = TaskRegistry()
    registry.register("gated", _GatedTask)
    _release.clear()
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        worker = RunWorker(
            db_path=db_path,
            registry=registry,
            settings=WorkerSettings(concurrency=2, poll_interval_s=0.01),
        )
        worker.start()
        try:
            # Idle claim polls are not work.
            for _ in range(50):
                assert worker.status_snapshot()["busy"] == 0
                time.sleep(0.005)

            run = RunService(store).launch_run(user_id="u1", task_type="gated")
            assert _wait_for(lambda: worker.status_snapshot()["busy"] == 1)
            assert _wait_for(lambda: store.get_run_status(run_id=run.run_id) == "running")

            _release.set()
            assert _wait_for(lambda: worker.status_snapshot()["processed"] == 1)
            snapshot = worker.status_snapshot()
            assert snapshot["busy"] == 0
            assert store.get_run_status(run_id=run.run_id) == "completed"
        finally:
            _release.set()
            worker.stop()
            store.close()
