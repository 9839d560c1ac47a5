"""Process logging (structlog).

Per-run diagnostics live in the SQLite message log; this module only
configures the process-level logger that mirrors them to stderr.

Environment:
- AGENTRUN_LOG_LEVEL: DEBUG | INFO | WARNING | ERROR (overrides config)
- AGENTRUN_LOG_FORMAT: console | json (overrides config)
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog
from structlog.types import Processor


_configured = False


def configure_logging(level: str | None = None, fmt: str | None = None, *, force: bool = False) -> None:
    """Configure structlog + stdlib logging once per process."""
    global _configured
    if _configured and not force:
        return

    log_level = (os.getenv("AGENTRUN_LOG_LEVEL") or level or "INFO").strip().upper()
    log_format = (os.getenv("AGENTRUN_LOG_FORMAT") or fmt or "console").strip().lower()
    numeric_level = getattr(logging, log_level, logging.INFO)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
        force=True,
    )
    logging.getLogger("agentrun").setLevel(numeric_level)
    _configured = True


def get_logger(name: str, **initial: Any) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name, **initial)
