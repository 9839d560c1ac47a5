from __future__ import annotations

import functools
import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

from agentrun.runtime.errors import PersistenceError
from agentrun.runtime.state import MESSAGE_LEVELS


SCHEMA_VERSION = 2

_F = TypeVar("_F", bound=Callable[..., Any])

# Columns update_run() accepts; JSON columns are serialized on write.
_RUN_UPDATABLE = frozenset(
    {
        "status",
        "current_step",
        "total_steps",
        "output_payload",
        "error_message",
        "error_details",
        "retry_count",
        "started_at",
        "completed_at",
        "dispatch_job_id",
    }
)
_RUN_JSON_COLUMNS = frozenset({"input_payload", "output_payload", "error_details"})

_RUN_COLUMNS = """
  run_id, user_id, task_type, input_payload, output_payload, status,
  current_step, total_steps, error_message, error_details, retry_count, max_retries,
  created_at, started_at, completed_at, updated_at, dispatch_job_id
"""


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _json_loads(raw: Any) -> Any:
    if raw is None:
        return None
    return json.loads(str(raw))


def _opt_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def default_db_path() -> str:
    return os.getenv("AGENTRUN_SQLITE_PATH", "data/agentrun.db")


def _persistence(fn: _F) -> _F:
    """Re-raise sqlite3 errors from a store method as PersistenceError."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as e:
            raise PersistenceError(f"{fn.__name__} failed: {e}") from e

    return wrapper  # type: ignore[return-value]


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    user_id: str
    task_type: str
    input_payload: dict[str, Any]
    output_payload: Any
    status: str
    current_step: int
    total_steps: int | None
    error_message: str | None
    error_details: dict[str, Any] | None
    retry_count: int
    max_retries: int
    created_at: float
    started_at: float | None
    completed_at: float | None
    updated_at: float
    dispatch_job_id: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RunRecord":
        return cls(
            run_id=str(row["run_id"]),
            user_id=str(row["user_id"]),
            task_type=str(row["task_type"]),
            input_payload=_json_loads(row["input_payload"]) or {},
            output_payload=_json_loads(row["output_payload"]),
            status=str(row["status"]),
            current_step=int(row["current_step"]),
            total_steps=int(row["total_steps"]) if row["total_steps"] is not None else None,
            error_message=row["error_message"],
            error_details=_json_loads(row["error_details"]),
            retry_count=int(row["retry_count"]),
            max_retries=int(row["max_retries"]),
            created_at=float(row["created_at"]),
            started_at=_opt_float(row["started_at"]),
            completed_at=_opt_float(row["completed_at"]),
            updated_at=float(row["updated_at"]),
            dispatch_job_id=row["dispatch_job_id"],
        )


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    run_id: str
    step_number: int | None
    level: str
    message: str
    details: dict[str, Any] | None
    created_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MessageRecord":
        return cls(
            message_id=str(row["message_id"]),
            run_id=str(row["run_id"]),
            step_number=int(row["step_number"]) if row["step_number"] is not None else None,
            level=str(row["level"]),
            message=str(row["message"]),
            details=_json_loads(row["details"]),
            created_at=float(row["created_at"]),
        )


@dataclass(frozen=True)
class DispatchJob:
    job_id: str
    run_id: str
    status: str
    created_at: float
    locked_at: float | None
    locked_by: str | None
    attempts: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DispatchJob":
        return cls(
            job_id=str(row["job_id"]),
            run_id=str(row["run_id"]),
            status=str(row["status"]),
            created_at=float(row["created_at"]),
            locked_at=_opt_float(row["locked_at"]),
            locked_by=row["locked_by"],
            attempts=int(row["attempts"]),
        )


class SQLiteStore:
    """SQLite-backed store for runs, run messages and dispatch jobs.

    - One connection per instance; worker threads each open their own store.
    - Every write commits immediately unless it runs inside `transaction()`.
    - Run fields are updated last-writer-wins; the store does no status validation.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, so two workers can
        never both read the same queued job as claimable.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1): runs + run_messages.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              run_id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              task_type TEXT NOT NULL,
              input_payload TEXT NOT NULL,
              output_payload TEXT,
              status TEXT NOT NULL,
              current_step INTEGER NOT NULL DEFAULT 0,
              total_steps INTEGER,
              error_message TEXT,
              error_details TEXT,
              retry_count INTEGER NOT NULL DEFAULT 0,
              max_retries INTEGER NOT NULL DEFAULT 3,
              created_at REAL NOT NULL,
              started_at REAL,
              completed_at REAL,
              updated_at REAL NOT NULL,
              dispatch_job_id TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS run_messages (
              message_id TEXT PRIMARY KEY,
              run_id TEXT NOT NULL,
              step_number INTEGER,
              level TEXT NOT NULL,
              message TEXT NOT NULL,
              details TEXT,
              created_at REAL NOT NULL,
              FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_user_created ON runs(user_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_messages_run_ts ON run_messages(run_id, created_at);")

        # New databases start at schema_version=1, then migrate explicitly.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN;")
        try:
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Dispatch queue (jobs handed to worker processes) + listing indexes.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS dispatch_jobs (
              job_id TEXT PRIMARY KEY,
              run_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              status TEXT NOT NULL,
              locked_at REAL,
              locked_by TEXT,
              attempts INTEGER NOT NULL DEFAULT 0,
              ended_at REAL,
              error TEXT
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON dispatch_jobs(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_user_status ON runs(user_id, status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);")

    # --- Runs
    @_persistence
    def create_run(
        self,
        *,
        user_id: str,
        task_type: str,
        input_payload: dict[str, Any] | None = None,
        max_retries: int = 3,
    ) -> RunRecord:
        run_id = _new_id("run")
        ts = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO runs(
              run_id, user_id, task_type, input_payload, status, current_step,
              retry_count, max_retries, created_at, updated_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (run_id, user_id, task_type, _json_dumps(input_payload or {}), "pending", 0, 0, int(max_retries), ts, ts),
        )
        self._conn.commit()
        created = self.get_run(run_id=run_id)
        assert created is not None
        return created

    @_persistence
    def get_run(self, *, run_id: str) -> RunRecord | None:
        row = self._conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = ? LIMIT 1;",
            (run_id,),
        ).fetchone()
        return RunRecord.from_row(row) if row is not None else None

    @_persistence
    def get_run_for_user(self, *, run_id: str, user_id: str) -> RunRecord | None:
        row = self._conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = ? AND user_id = ? LIMIT 1;",
            (run_id, user_id),
        ).fetchone()
        return RunRecord.from_row(row) if row is not None else None

    @_persistence
    def get_run_status(self, *, run_id: str) -> str | None:
        row = self._conn.execute("SELECT status FROM runs WHERE run_id = ? LIMIT 1;", (run_id,)).fetchone()
        return str(row["status"]) if row is not None else None

    @staticmethod
    def _run_filters(user_id: str, status: str | None, task_type: str | None) -> tuple[str, list[Any]]:
        where = ["user_id = ?"]
        params: list[Any] = [user_id]
        if status:
            where.append("status = ?")
            params.append(status)
        if task_type:
            where.append("task_type = ?")
            params.append(task_type)
        return " AND ".join(where), params

    @_persistence
    def list_runs(
        self,
        *,
        user_id: str,
        status: str | None = None,
        task_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[RunRecord]:
        where_sql, params = self._run_filters(user_id, status, task_type)
        rows = self._conn.execute(
            f"""
            SELECT {_RUN_COLUMNS}
            FROM runs
            WHERE {where_sql}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?;
            """,
            (*params, int(limit), int(offset)),
        ).fetchall()
        return [RunRecord.from_row(r) for r in rows]

    @_persistence
    def count_runs(self, *, user_id: str, status: str | None = None, task_type: str | None = None) -> int:
        where_sql, params = self._run_filters(user_id, status, task_type)
        row = self._conn.execute(f"SELECT COUNT(*) AS n FROM runs WHERE {where_sql};", params).fetchone()
        return int(row["n"]) if row is not None else 0

    @_persistence
    def count_runs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM runs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    @staticmethod
    def _set_clause(fields: dict[str, Any]) -> tuple[str, list[Any]]:
        unknown = set(fields) - _RUN_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown run field(s): {sorted(unknown)}")

        assignments: list[str] = []
        values: list[Any] = []
        for key, value in fields.items():
            assignments.append(f"{key} = ?")
            if key in _RUN_JSON_COLUMNS and value is not None:
                values.append(_json_dumps(value))
            else:
                values.append(value)
        assignments.append("updated_at = ?")
        values.append(_utc_ts())
        return ", ".join(assignments), values

    @_persistence
    def update_run(self, run_id: str, **fields: Any) -> RunRecord | None:
        """Partial update; only the given fields change. Always stamps updated_at."""
        set_sql, values = self._set_clause(fields)
        self._conn.execute(f"UPDATE runs SET {set_sql} WHERE run_id = ?;", (*values, run_id))
        self._conn.commit()
        return self.get_run(run_id=run_id)

    def update_run_status(self, run_id: str, status: str, **fields: Any) -> RunRecord | None:
        return self.update_run(run_id, status=status, **fields)

    @_persistence
    def compare_and_set_status(
        self,
        run_id: str,
        *,
        expected: str | Iterable[str],
        status: str,
        **fields: Any,
    ) -> bool:
        """Set `status` (and `fields`) only while the run is in `expected`; False if it moved."""
        allowed = [expected] if isinstance(expected, str) else list(expected)
        set_sql, values = self._set_clause({"status": status, **fields})
        placeholders = ", ".join("?" for _ in allowed)
        updated = self._conn.execute(
            f"UPDATE runs SET {set_sql} WHERE run_id = ? AND status IN ({placeholders});",
            (*values, run_id, *allowed),
        )
        self._conn.commit()
        return updated.rowcount == 1

    # --- Reconcile (startup safety)
    @_persistence
    def reconcile_running_runs(
        self,
        *,
        reason: str = "worker_restarted",
        owner_alive: Callable[[str | None], bool] | None = None,
    ) -> int:
        """Mark 'running' runs whose executor is gone as failed.

        `owner_alive` receives the `locked_by` of the run's dispatch job (None
        when the run has no claimed job); runs it reports alive are left alone.
        Without it every 'running' run is treated as orphaned.

        Returns the number of runs reconciled.
        """
        ts = _utc_ts()
        rows = self._conn.execute(
            """
            SELECT r.run_id, j.locked_by
            FROM runs r
            LEFT JOIN dispatch_jobs j ON j.job_id = r.dispatch_job_id
            WHERE r.status = 'running';
            """
        ).fetchall()

        reconciled = 0
        for row in rows:
            if owner_alive is not None and owner_alive(row["locked_by"]):
                continue
            run_id = str(row["run_id"])
            updated = self._conn.execute(
                """
                UPDATE runs
                SET
                  status = 'failed',
                  completed_at = COALESCE(completed_at, ?),
                  error_message = COALESCE(error_message, ?),
                  updated_at = ?
                WHERE run_id = ? AND status = 'running';
                """,
                (ts, reason, ts, run_id),
            )
            if updated.rowcount != 1:
                continue
            self._conn.execute(
                """
                INSERT INTO run_messages(message_id, run_id, step_number, level, message, details, created_at)
                VALUES(?, ?, NULL, 'error', ?, ?, ?);
                """,
                (_new_id("msg"), run_id, f"Agent run failed: {reason}", _json_dumps({"reason": reason}), ts),
            )
            reconciled += 1

        self._conn.commit()
        return reconciled

    # --- Messages (append-only log)
    @_persistence
    def append_message(
        self,
        run_id: str,
        level: str,
        message: str,
        *,
        step_number: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> MessageRecord:
        if level not in MESSAGE_LEVELS:
            raise ValueError(f"Invalid message level: {level!r}")
        message_id = _new_id("msg")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO run_messages(message_id, run_id, step_number, level, message, details, created_at)
            VALUES(?, ?, ?, ?, ?, ?, ?);
            """,
            (
                message_id,
                run_id,
                step_number,
                level,
                message,
                _json_dumps(details) if details is not None else None,
                created_at,
            ),
        )
        self._conn.commit()
        return MessageRecord(
            message_id=message_id,
            run_id=run_id,
            step_number=step_number,
            level=level,
            message=message,
            details=details,
            created_at=created_at,
        )

    @_persistence
    def list_messages(self, *, run_id: str, since: float | None = None) -> list[MessageRecord]:
        where = ["run_id = ?"]
        params: list[Any] = [run_id]
        if since is not None:
            # Strictly after: pollers pass the created_at of the last message they saw.
            where.append("created_at > ?")
            params.append(float(since))
        rows = self._conn.execute(
            f"""
            SELECT message_id, run_id, step_number, level, message, details, created_at
            FROM run_messages
            WHERE {' AND '.join(where)}
            ORDER BY created_at ASC, rowid ASC;
            """,
            params,
        ).fetchall()
        return [MessageRecord.from_row(r) for r in rows]

    # --- Dispatch jobs
    @_persistence
    def create_dispatch_job(self, *, run_id: str) -> DispatchJob:
        job_id = _new_id("job")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO dispatch_jobs(job_id, run_id, created_at, status, attempts)
            VALUES(?, ?, ?, 'queued', 0);
            """,
            (job_id, run_id, created_at),
        )
        self._conn.commit()
        return DispatchJob(
            job_id=job_id,
            run_id=run_id,
            status="queued",
            created_at=created_at,
            locked_at=None,
            locked_by=None,
            attempts=0,
        )

    @_persistence
    def get_dispatch_job(self, *, job_id: str) -> DispatchJob | None:
        row = self._conn.execute(
            """
            SELECT job_id, run_id, status, created_at, locked_at, locked_by, attempts
            FROM dispatch_jobs
            WHERE job_id = ?
            LIMIT 1;
            """,
            (job_id,),
        ).fetchone()
        return DispatchJob.from_row(row) if row is not None else None

    @_persistence
    def claim_next_dispatch_job(self, *, worker_id: str) -> DispatchJob | None:
        """Atomically claim the oldest queued job and lock it to `worker_id`."""
        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                """
                SELECT job_id
                FROM dispatch_jobs
                WHERE status = 'queued' AND locked_at IS NULL
                ORDER BY created_at ASC, rowid ASC
                LIMIT 1;
                """
            ).fetchone()
            if row is None:
                return None

            job_id = str(row["job_id"])
            updated = self._conn.execute(
                """
                UPDATE dispatch_jobs
                SET
                  status = 'running',
                  locked_at = ?,
                  locked_by = ?,
                  attempts = attempts + 1
                WHERE job_id = ? AND status = 'queued' AND locked_at IS NULL;
                """,
                (_utc_ts(), worker_id, job_id),
            )
            if updated.rowcount != 1:
                return None

            row = self._conn.execute(
                """
                SELECT job_id, run_id, status, created_at, locked_at, locked_by, attempts
                FROM dispatch_jobs
                WHERE job_id = ?;
                """,
                (job_id,),
            ).fetchone()
            return DispatchJob.from_row(row)

    @_persistence
    def delete_unclaimed_dispatch_job(self, *, job_id: str) -> bool:
        deleted = self._conn.execute(
            "DELETE FROM dispatch_jobs WHERE job_id = ? AND locked_at IS NULL;",
            (job_id,),
        )
        self._conn.commit()
        return deleted.rowcount > 0

    @_persistence
    def finish_dispatch_job(self, job_id: str, status: str, *, error: str | None = None) -> None:
        if status not in {"completed", "failed"}:
            raise ValueError(f"Invalid dispatch job status: {status!r}")
        self._conn.execute(
            """
            UPDATE dispatch_jobs
            SET
              status = ?,
              ended_at = COALESCE(ended_at, ?),
              error = COALESCE(?, error)
            WHERE job_id = ?;
            """,
            (status, _utc_ts(), error, job_id),
        )
        self._conn.commit()

    @_persistence
    def count_dispatch_jobs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM dispatch_jobs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}
