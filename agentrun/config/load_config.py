from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_positive_int(value: Any, *, key: str) -> int:
    n = _as_int(value, key=key)
    if n < 1:
        raise ConfigError(f"Invalid {key}: must be >= 1, got {n}")
    return n


@dataclass(frozen=True)
class WorkerConfig:
    concurrency: int
    poll_interval_s: float


@dataclass(frozen=True)
class RunsConfig:
    max_retries: int
    list_default_limit: int
    list_max_limit: int


@dataclass(frozen=True)
class LLMConfig:
    model: str
    max_tokens: int
    temperature: float
    timeout_s: float


@dataclass(frozen=True)
class LoggingConfig:
    level: str
    format: str


@dataclass(frozen=True)
class AppConfig:
    worker: WorkerConfig
    runs: RunsConfig
    llm: LLMConfig
    logging: LoggingConfig


def default_config_path() -> Path:
    return Path(os.getenv("AGENTRUN_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    worker = raw.get("worker", {})
    runs = raw.get("runs", {})
    llm = raw.get("llm", {})
    logging_cfg = raw.get("logging", {})

    list_default_limit = _as_positive_int(runs.get("list_default_limit"), key="runs.list_default_limit")
    list_max_limit = _as_positive_int(runs.get("list_max_limit"), key="runs.list_max_limit")
    if list_default_limit > list_max_limit:
        raise ConfigError(
            f"runs.list_default_limit ({list_default_limit}) exceeds runs.list_max_limit ({list_max_limit})"
        )

    log_format = _as_str(logging_cfg.get("format", "console"), key="logging.format").strip().lower()
    if log_format not in {"console", "json"}:
        raise ConfigError(f"Invalid logging.format: {log_format!r} (expected 'console' or 'json')")

    return AppConfig(
        worker=WorkerConfig(
            concurrency=_as_positive_int(worker.get("concurrency"), key="worker.concurrency"),
            poll_interval_s=_as_float(worker.get("poll_interval_s"), key="worker.poll_interval_s"),
        ),
        runs=RunsConfig(
            max_retries=_as_int(runs.get("max_retries"), key="runs.max_retries"),
            list_default_limit=list_default_limit,
            list_max_limit=list_max_limit,
        ),
        llm=LLMConfig(
            model=_as_str(llm.get("model"), key="llm.model"),
            max_tokens=_as_positive_int(llm.get("max_tokens"), key="llm.max_tokens"),
            temperature=_as_float(llm.get("temperature"), key="llm.temperature"),
            timeout_s=_as_float(llm.get("timeout_s"), key="llm.timeout_s"),
        ),
        logging=LoggingConfig(
            level=_as_str(logging_cfg.get("level", "INFO"), key="logging.level").strip().upper(),
            format=log_format,
        ),
    )
