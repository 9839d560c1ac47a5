#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from agentrun.runtime.errors import InvalidTransition, RunNotFound  # noqa: E402
from agentrun.runtime.service import RunService  # noqa: E402
from agentrun.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Request cancellation for a pending/running run (SQLite-backed).")
    p.add_argument("--run-id", required=True, help="Run id to cancel (e.g. run_<uuid>).")
    p.add_argument("--user-id", required=True, help="Owner of the run.")
    p.add_argument("--db-path", default="", help="SQLite path (default: env AGENTRUN_SQLITE_PATH or data/agentrun.db).")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    store = SQLiteStore(args.db_path or None)
    try:
        run = RunService(store).request_cancel(run_id=str(args.run_id), user_id=str(args.user_id))
    except (RunNotFound, InvalidTransition) as e:
        print(str(e), file=sys.stderr)
        return 1
    finally:
        store.close()
    print(run.status)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
