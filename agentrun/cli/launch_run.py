from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from agentrun.agents.registry import build_registry
from agentrun.config.load_config import load_app_config
from agentrun.llm.openai_compat import OpenAICompatibleChatClient
from agentrun.runtime.dispatch import worker_identity
from agentrun.runtime.service import RunService
from agentrun.runtime.state import COMPLETED, is_terminal
from agentrun.runtime.worker import run_once
from agentrun.storage.sqlite_store import SQLiteStore
from agentrun.utils.logging import configure_logging


def _parse_input(raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SystemExit(f"--input must be a JSON object: {e}") from e
    if not isinstance(payload, dict):
        raise SystemExit("--input must be a JSON object.")
    return payload


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Launch an agent run (SQLite-backed).")
    parser.add_argument("task_type", help="Registered task type (see --list-types).")
    parser.add_argument("--input", default="", help='Run input as a JSON object, e.g. \'{"prompt": "hi"}\'.')
    parser.add_argument("--user-id", default="cli", help="Owner recorded on the run.")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env AGENTRUN_SQLITE_PATH or data/agentrun.db).",
    )
    parser.add_argument(
        "--inline",
        action="store_true",
        help="Execute the run in this process instead of leaving it for a worker.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])

    app_config = load_app_config()
    configure_logging(app_config.logging.level, app_config.logging.format)
    registry = build_registry()
    if not registry.has(args.task_type):
        # Unknown types still launch and fail in the executor; warn early for CLI users.
        print(f"warning: task type {args.task_type!r} is not registered", file=sys.stderr)

    store = SQLiteStore(args.db_path or None)
    try:
        service = RunService(store, max_retries=app_config.runs.max_retries)
        run = service.launch_run(
            user_id=str(args.user_id),
            task_type=str(args.task_type),
            input_payload=_parse_input(str(args.input)),
        )
        print(run.run_id)
        if not args.inline:
            return 0

        def llm_factory() -> OpenAICompatibleChatClient:
            return OpenAICompatibleChatClient.from_config(app_config.llm)

        # Drain the queue up to (and including) our run.
        while run_once(store, registry, worker_id=worker_identity("cli"), llm_factory=llm_factory) not in (None, run.run_id):
            pass
        final = service.get_run(run_id=run.run_id, user_id=str(args.user_id))
        if not is_terminal(final.status):
            # Claimed by another worker process.
            print(f"run is {final.status} in another worker", file=sys.stderr)
            return 0
        print(json.dumps({"status": final.status, "output": final.output_payload, "error": final.error_message}, ensure_ascii=False))
        return 0 if final.status == COMPLETED else 1
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
