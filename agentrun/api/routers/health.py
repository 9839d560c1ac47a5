from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Request

from agentrun import __version__
from agentrun.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


router = APIRouter()


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version(request: Request) -> dict[str, Any]:
    registry = getattr(request.app.state, "registry", None)
    return {
        "service": "agentrun",
        "version": __version__,
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "task_types": registry.names() if registry is not None else [],
    }


@router.get("/system/worker")
def system_worker(request: Request) -> dict[str, Any]:
    """Worker pool snapshot plus run and dispatch-job counts by status."""
    worker = getattr(request.app.state, "run_worker", None)
    snapshot: dict[str, Any] = worker.status_snapshot() if worker is not None else {"running": False}
    snapshot["enabled"] = worker is not None

    store = SQLiteStore()
    try:
        runs_by_status = store.count_runs_by_status()
        jobs_by_status = store.count_dispatch_jobs_by_status()
    finally:
        store.close()
    return {
        "ts": time.time(),
        "worker": snapshot,
        "queue": {"runs_by_status": runs_by_status, "dispatch_jobs_by_status": jobs_by_status},
        "startup": {"reconciled_running_runs": getattr(request.app.state, "reconciled_running_runs", 0)},
    }
