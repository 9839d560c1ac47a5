from __future__ import annotations

from fastapi import Header, Request

from agentrun.agents.registry import TaskRegistry, build_registry
from agentrun.api.errors import APIError
from agentrun.config.load_config import AppConfig, load_app_config


def get_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    """Caller identity; authentication itself happens upstream of this service."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise APIError(status_code=401, code="unauthenticated", message="Missing X-User-Id header.")
    return user_id


def get_app_config(request: Request) -> AppConfig:
    cached = getattr(request.app.state, "app_config", None)
    if isinstance(cached, AppConfig):
        return cached
    cfg = load_app_config()
    request.app.state.app_config = cfg
    return cfg


def get_registry(request: Request) -> TaskRegistry:
    cached = getattr(request.app.state, "registry", None)
    if isinstance(cached, TaskRegistry):
        return cached
    registry = build_registry()
    request.app.state.registry = registry
    return registry

