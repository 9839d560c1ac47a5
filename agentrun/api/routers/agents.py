from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from agentrun.agents.registry import TaskRegistry
from agentrun.api.dependencies import get_app_config, get_registry, get_user_id
from agentrun.api.errors import APIError
from agentrun.config.load_config import AppConfig
from agentrun.runtime.service import RunService
from agentrun.runtime.state import CANCELLED, RUN_STATUSES
from agentrun.storage.sqlite_store import MessageRecord, RunRecord, SQLiteStore


router = APIRouter()


class LaunchRunRequest(BaseModel):
    input: dict[str, Any] = Field(default_factory=dict)


class LaunchRunResponse(BaseModel):
    run_id: str
    status: str
    poll_url: str
    created_at: float


class CancelRunResponse(BaseModel):
    run_id: str
    status: str
    message: str


def _poll_url(run_id: str) -> str:
    return f"/api/v1/agents/runs/{run_id}"


def _run_view(run: RunRecord) -> dict[str, Any]:
    return {
        "run_id": run.run_id,
        "task_type": run.task_type,
        "status": run.status,
        "input": run.input_payload,
        "output": run.output_payload,
        "current_step": run.current_step,
        "total_steps": run.total_steps,
        "error_message": run.error_message,
        "error_details": run.error_details,
        "retry_count": run.retry_count,
        "max_retries": run.max_retries,
        "created_at": run.created_at,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "updated_at": run.updated_at,
    }


def _message_view(msg: MessageRecord) -> dict[str, Any]:
    return {
        "message_id": msg.message_id,
        "step_number": msg.step_number,
        "level": msg.level,
        "message": msg.message,
        "details": msg.details,
        "created_at": msg.created_at,
    }


@router.get("/agents/types")
def list_task_types(registry: TaskRegistry = Depends(get_registry)) -> dict[str, Any]:
    return {"task_types": registry.names()}


@router.post("/agents/{task_type}/run", status_code=status.HTTP_202_ACCEPTED)
def launch_run(
    task_type: str,
    req: LaunchRunRequest,
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> LaunchRunResponse:
    # Task type is not checked here: an unregistered name fails when executed.
    store = SQLiteStore()
    try:
        service = RunService(store, max_retries=cfg.runs.max_retries)
        run = service.launch_run(user_id=user_id, task_type=task_type, input_payload=req.input)
        return LaunchRunResponse(
            run_id=run.run_id,
            status=run.status,
            poll_url=_poll_url(run.run_id),
            created_at=run.created_at,
        )
    finally:
        store.close()


@router.get("/agents/runs")
def list_runs(
    status_filter: str | None = Query(default=None, alias="status"),
    task_type: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    if status_filter is not None and status_filter not in RUN_STATUSES:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"Unknown status: {status_filter!r}.",
            details={"allowed": list(RUN_STATUSES)},
        )
    page_limit = cfg.runs.list_default_limit if limit is None else int(limit)
    if page_limit > cfg.runs.list_max_limit:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"limit must be <= {cfg.runs.list_max_limit}.",
        )

    store = SQLiteStore()
    try:
        service = RunService(store, max_retries=cfg.runs.max_retries)
        runs, total = service.list_runs(
            user_id=user_id,
            status=status_filter,
            task_type=(task_type.strip() if task_type else None),
            limit=page_limit,
            offset=offset,
        )
        return {
            "runs": [_run_view(r) for r in runs],
            "pagination": {"total": int(total), "limit": page_limit, "offset": int(offset)},
        }
    finally:
        store.close()


@router.get("/agents/runs/{run_id}")
def get_run(
    run_id: str,
    include_messages: bool = Query(default=False),
    messages_since: float | None = Query(default=None),
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        service = RunService(store, max_retries=cfg.runs.max_retries)
        run = service.get_run(run_id=run_id, user_id=user_id)
        out: dict[str, Any] = {"run": _run_view(run), "poll_url": _poll_url(run.run_id)}
        if include_messages:
            messages = service.list_messages(run_id=run.run_id, since=messages_since)
            out["messages"] = [_message_view(m) for m in messages]
        return out
    finally:
        store.close()


@router.post("/agents/runs/{run_id}/cancel")
def cancel_run(
    run_id: str,
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> CancelRunResponse:
    store = SQLiteStore()
    try:
        service = RunService(store, max_retries=cfg.runs.max_retries)
        run = service.request_cancel(run_id=run_id, user_id=user_id)
        message = "Run cancelled." if run.status == CANCELLED else "Cancellation requested."
        return CancelRunResponse(run_id=run.run_id, status=run.status, message=message)
    finally:
        store.close()
