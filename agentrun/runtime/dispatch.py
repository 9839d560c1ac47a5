from __future__ import annotations

import os
import socket
from typing import Protocol

from agentrun.storage.sqlite_store import DispatchJob, SQLiteStore


class DispatchGateway(Protocol):
    def enqueue(self, run_id: str) -> str: ...

    def cancel_if_unclaimed(self, job_id: str) -> bool: ...


def worker_identity(label: str | int) -> str:
    """Claim owner recorded on a job: `host:pid:label`."""
    return f"{socket.gethostname()}:{os.getpid()}:{label}"


def owner_alive(locked_by: str | None) -> bool:
    """Whether the process that claimed a job may still be executing it.

    Only owners on this host can be checked; owners elsewhere, or ids not in
    `host:pid:label` form, count as alive so a run is never failed under a
    live executor.
    """
    if not locked_by:
        return False
    parts = locked_by.split(":")
    if len(parts) < 3 or not parts[1].isdigit():
        return True
    host, pid = parts[0], int(parts[1])
    if host != socket.gethostname():
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SQLiteDispatch:
    """Job queue backed by the `dispatch_jobs` table of the run store.

    One job per launched run; a worker claims a job by locking it (at most
    one active claim per job). Jobs are never retried automatically.
    """

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    def enqueue(self, run_id: str) -> str:
        return self._store.create_dispatch_job(run_id=run_id).job_id

    def cancel_if_unclaimed(self, job_id: str) -> bool:
        return self._store.delete_unclaimed_dispatch_job(job_id=job_id)

    def claim_next(self, worker_id: str) -> DispatchJob | None:
        return self._store.claim_next_dispatch_job(worker_id=worker_id)

    def complete(self, job_id: str) -> None:
        self._store.finish_dispatch_job(job_id, "completed")

    def fail(self, job_id: str, error: str) -> None:
        self._store.finish_dispatch_job(job_id, "failed", error=error)

    def count_by_status(self) -> dict[str, int]:
        return self._store.count_dispatch_jobs_by_status()

    def reconcile_orphaned_runs(self, *, reason: str = "worker_restarted") -> int:
        """Fail 'running' runs whose claiming worker process is gone."""
        return self._store.reconcile_running_runs(reason=reason, owner_alive=owner_alive)
