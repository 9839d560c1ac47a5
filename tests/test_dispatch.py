from __future__ import annotations

import socket
import tempfile

import pytest

from agentrun.runtime.dispatch import SQLiteDispatch, owner_alive, worker_identity
from agentrun.runtime.service import RunService
from agentrun.storage.sqlite_store import SQLiteStore


def test_jobs_are_claimed_oldest_first_and_only_once() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            dispatch = SQLiteDispatch(store)
            first = dispatch.enqueue("run_1")
            second = dispatch.enqueue("run_2")

            job = dispatch.claim_next("w1")
            assert job is not None
            assert (job.job_id, job.run_id, job.status) == (first, "run_1", "running")
            assert job.locked_by == "w1"
            assert job.attempts == 1

            job2 = dispatch.claim_next("w2")
            assert job2 is not None and job2.job_id == second
            assert dispatch.claim_next("w3") is None
        finally:
            store.close()


def test_concurrent_stores_never_claim_the_same_job() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        a, b = SQLiteStore(db_path), SQLiteStore(db_path)
        try:
            SQLiteDispatch(a).enqueue("run_1")
            claimed = [SQLiteDispatch(a).claim_next("wa"), SQLiteDispatch(b).claim_next("wb")]
            assert len([j for j in claimed if j is not None]) == 1
        finally:
            a.close()
            b.close()


def test_cancel_if_unclaimed_only_removes_unlocked_jobs() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            dispatch = SQLiteDispatch(store)
            queued = dispatch.enqueue("run_1")
            assert dispatch.cancel_if_unclaimed(queued) is True
            assert dispatch.cancel_if_unclaimed(queued) is False

            claimed = dispatch.enqueue("run_2")
            assert dispatch.claim_next("w1") is not None
            assert dispatch.cancel_if_unclaimed(claimed) is False
            assert store.get_dispatch_job(job_id=claimed) is not None
        finally:
            store.close()


def test_finished_jobs_are_counted_by_status() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            dispatch = SQLiteDispatch(store)
            ok = dispatch.enqueue("run_ok")
            bad = dispatch.enqueue("run_bad")
            dispatch.enqueue("run_waiting")
            dispatch.claim_next("w1")
            dispatch.claim_next("w1")
            dispatch.complete(ok)
            dispatch.fail(bad, "boom")

            assert dispatch.count_by_status() == {"completed": 1, "failed": 1, "queued": 1}
            with pytest.raises(ValueError):
                store.finish_dispatch_job(ok, "queued")
        finally:
            store.close()


def test_owner_alive_checks_local_processes_only() -> None:
    host = socket.gethostname()
    assert owner_alive(worker_identity(0)) is True
    assert owner_alive(f"{host}:999999999:0") is False
    assert owner_alive(None) is False
    assert owner_alive("other-host:1:0") is True
    assert owner_alive("legacy-worker") is True


def test_reconcile_skips_runs_owned_by_live_workers() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            service = RunService(store)
            live = service.launch_run(user_id="u1", task_type="echo")
            dead = service.launch_run(user_id="u1", task_type="echo")
            unclaimed = store.create_run(user_id="u1", task_type="echo")
            store.claim_next_dispatch_job(worker_id=worker_identity(0))
            store.claim_next_dispatch_job(worker_id=f"{socket.gethostname()}:999999999:0")
            for run_id in (live.run_id, dead.run_id, unclaimed.run_id):
                store.update_run_status(run_id, "running")

            assert SQLiteDispatch(store).reconcile_orphaned_runs() == 2

            assert store.get_run_status(run_id=live.run_id) == "running"
            for run_id in (dead.run_id, unclaimed.run_id):
                final = store.get_run(run_id=run_id)
                assert final is not None
                assert final.status == "failed"
                assert final.error_message == "worker_restarted"
            assert SQLiteDispatch(store).reconcile_orphaned_runs() == 0
        finally:
            store.close()
