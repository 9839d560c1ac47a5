from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder

from agentrun.runtime.errors import InvalidTransition, RunNotFound
from agentrun.utils.logging import get_logger


logger = get_logger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=int(status_code), content=payload)


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def run_not_found_handler(_req: Request, exc: RunNotFound) -> JSONResponse:
    return error_response(status_code=404, code="not_found", message="Run not found.", details={"run_id": exc.run_id})


async def invalid_transition_handler(_req: Request, exc: InvalidTransition) -> JSONResponse:
    return error_response(
        status_code=409,
        code="invalid_transition",
        message=str(exc),
        details={"current": exc.current, "target": exc.target},
    )


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Normalize Pydantic validation errors into our contract envelope.
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(req: Request, exc: Exception) -> JSONResponse:
    # Full traceback goes to the process log only.
    logger.error("unhandled_api_error", path=req.url.path, error_type=type(exc).__name__, exc_info=exc)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
