from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from agentrun import __version__
from agentrun.agents.registry import build_registry
from agentrun.api.errors import (
    APIError,
    api_error_handler,
    invalid_transition_handler,
    run_not_found_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from agentrun.config.load_config import load_app_config
from agentrun.runtime.dispatch import SQLiteDispatch
from agentrun.runtime.errors import InvalidTransition, RunNotFound
from agentrun.runtime.worker import RunWorker
from agentrun.storage.sqlite_store import SQLiteStore
from agentrun.utils.logging import configure_logging, get_logger

from .routers.agents import router as agents_router
from .routers.health import router as health_router


logger = get_logger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("AGENTRUN_CORS_ORIGINS", "").strip()
    if not raw:
        # Local dev defaults.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        cfg = load_app_config()
        configure_logging(cfg.logging.level, cfg.logging.format)
        app.state.app_config = cfg
        # Explicit registry initialization, before any run can execute.
        app.state.registry = build_registry()

        # Runs left 'running' by a previous process can never finish.
        if env_bool("AGENTRUN_RECONCILE_ON_STARTUP", True):
            store = SQLiteStore()
            try:
                reconciled = SQLiteDispatch(store).reconcile_orphaned_runs()
                app.state.reconciled_running_runs = int(reconciled)
            finally:
                store.close()
            if reconciled:
                logger.warning("reconciled_running_runs", count=reconciled)
        else:
            app.state.reconciled_running_runs = 0

        if env_bool("AGENTRUN_ENABLE_WORKER", True):
            worker = RunWorker(registry=app.state.registry, app_config=cfg)
            worker.start()
            app.state.run_worker = worker
        try:
            yield
        finally:
            worker = getattr(app.state, "run_worker", None)
            if worker is not None:
                worker.stop()

    app = FastAPI(title="agentrun API", version=__version__, lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RunNotFound, run_not_found_handler)
    app.add_exception_handler(InvalidTransition, invalid_transition_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_from_env(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(agents_router, prefix="/api/v1", tags=["agents"])

    return app


app = create_app()
