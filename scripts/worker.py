#!/usr/bin/env python3
"""Standalone worker pool, for running executors outside the API process.

Start the API with AGENTRUN_ENABLE_WORKER=0 when using this.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from agentrun.config.load_config import load_app_config  # noqa: E402
from agentrun.runtime.dispatch import SQLiteDispatch  # noqa: E402
from agentrun.runtime.worker import RunWorker, WorkerSettings  # noqa: E402
from agentrun.storage.sqlite_store import SQLiteStore  # noqa: E402
from agentrun.utils.logging import configure_logging, get_logger  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run the agentrun worker pool (SQLite-backed).")
    p.add_argument("--db-path", default="", help="SQLite path (default: env AGENTRUN_SQLITE_PATH or data/agentrun.db).")
    p.add_argument("--concurrency", type=int, default=0, help="Worker threads (default: [worker].concurrency).")
    p.add_argument("--no-reconcile", action="store_true", help="Do not fail runs left 'running' by a dead process.")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    cfg = load_app_config()
    configure_logging(cfg.logging.level, cfg.logging.format)
    logger = get_logger("agentrun.worker")

    db_path = args.db_path or None
    if not args.no_reconcile:
        store = SQLiteStore(db_path)
        try:
            n = SQLiteDispatch(store).reconcile_orphaned_runs()
        finally:
            store.close()
        logger.info("reconciled_running_runs", count=n)

    settings = WorkerSettings(
        concurrency=int(args.concurrency) or cfg.worker.concurrency,
        poll_interval_s=cfg.worker.poll_interval_s,
    )
    RunWorker(db_path=db_path, settings=settings, app_config=cfg).run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
