from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable

from agentrun.agents.registry import TaskRegistry, build_registry
from agentrun.config.load_config import AppConfig, load_app_config
from agentrun.llm.openai_compat import OpenAICompatibleChatClient
from agentrun.runtime.dispatch import SQLiteDispatch, worker_identity
from agentrun.runtime.executor import RunExecutor
from agentrun.storage.sqlite_store import DispatchJob, SQLiteStore, default_db_path
from agentrun.utils.logging import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class WorkerSettings:
    concurrency: int = 5
    poll_interval_s: float = 1.0


def execute_job(
    store: SQLiteStore,
    registry: TaskRegistry,
    job: DispatchJob,
    *,
    worker_id: str,
    llm_factory: Callable[[], OpenAICompatibleChatClient] | None = None,
) -> None:
    """Execute a claimed job's run and record the job outcome.

    Run failures are already recorded on the run by the executor; here they
    only mark the dispatch job failed.
    """
    dispatch = SQLiteDispatch(store)
    executor = RunExecutor(store, registry, llm_factory=llm_factory)
    try:
        executor.execute(job.run_id)
    except Exception as e:
        logger.exception("run_execution_failed", run_id=job.run_id, job_id=job.job_id, worker_id=worker_id)
        dispatch.fail(job.job_id, str(e) or type(e).__name__)
    else:
        dispatch.complete(job.job_id)


def run_once(
    store: SQLiteStore,
    registry: TaskRegistry,
    *,
    worker_id: str | None = None,
    llm_factory: Callable[[], OpenAICompatibleChatClient] | None = None,
) -> str | None:
    """Claim and execute at most one queued run. Returns its run_id, or None if idle."""
    worker_id = worker_id or worker_identity("inline")
    job = SQLiteDispatch(store).claim_next(worker_id)
    if job is None:
        return None
    execute_job(store, registry, job, worker_id=worker_id, llm_factory=llm_factory)
    return job.run_id


class RunWorker:
    """Background worker pool that executes dispatched runs.

    Each thread owns its own SQLite connection and claims jobs atomically, so
    up to `concurrency` runs execute at once and one run never executes twice
    concurrently.
    """

    def __init__(
        self,
        *,
        db_path: str | None = None,
        settings: WorkerSettings | None = None,
        registry: TaskRegistry | None = None,
        app_config: AppConfig | None = None,
    ) -> None:
        self._db_path = db_path or default_db_path()
        self._app_config = app_config or load_app_config()
        self._settings = settings or WorkerSettings(
            concurrency=self._app_config.worker.concurrency,
            poll_interval_s=self._app_config.worker.poll_interval_s,
        )
        self._registry = registry or build_registry()
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()
        self._busy = 0
        self._processed = 0
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            busy, processed = self._busy, self._processed
        return {
            "running": self.running,
            "concurrency": int(self._settings.concurrency),
            "poll_interval_s": float(self._settings.poll_interval_s),
            "busy": busy,
            "processed": processed,
            "db_path": self._db_path,
            "task_types": self._registry.names(),
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._run_loop, args=(i,), name=f"agentrun-worker-{i}", daemon=True)
            for i in range(self._settings.concurrency)
        ]
        for t in self._threads:
            t.start()
        logger.info("worker_started", concurrency=self._settings.concurrency, db_path=self._db_path)

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout_s)
        logger.info("worker_stopped")

    def run_forever(self) -> None:
        """Start the pool and block until interrupted."""
        self.start()
        try:
            while not self._stop.is_set():
                self._stop.wait(timeout=1.0)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _llm_factory(self) -> OpenAICompatibleChatClient:
        return OpenAICompatibleChatClient.from_config(self._app_config.llm)

    def _run_loop(self, index: int) -> None:
        worker_id = worker_identity(index)
        store = SQLiteStore(self._db_path)
        dispatch = SQLiteDispatch(store)
        try:
            while not self._stop.is_set():
                try:
                    job = dispatch.claim_next(worker_id)
                except Exception:
                    # Store-level failure while claiming; keep the loop alive.
                    logger.exception("worker_claim_failed", worker_id=worker_id)
                    job = None
                if job is None:
                    self._stop.wait(timeout=self._settings.poll_interval_s)
                    continue

                with self._lock:
                    self._busy += 1
                try:
                    execute_job(store, self._registry, job, worker_id=worker_id, llm_factory=self._llm_factory)
                except Exception:
                    # Job bookkeeping failed; keep the loop alive.
                    logger.exception("worker_job_bookkeeping_failed", worker_id=worker_id, job_id=job.job_id)
                finally:
                    with self._lock:
                        self._busy -= 1
                        self._processed += 1
        finally:
            store.close()
