from __future__ import annotations

import time
import traceback
from typing import Any, Callable

from agentrun.agents.registry import TaskRegistry
from agentrun.agents.types import ExecutionContext, StepResult, TaskDefinition
from agentrun.llm.openai_compat import OpenAICompatibleChatClient
from agentrun.runtime.cancellation import finalize_cancelled, is_cancel_requested
from agentrun.runtime.errors import RunNotFound, StepExecutionError
from agentrun.runtime.messages import log_run_message
from agentrun.runtime.state import CANCEL_REQUESTED, COMPLETED, FAILED, RUNNING, is_terminal
from agentrun.storage.sqlite_store import RunRecord, SQLiteStore
from agentrun.utils.logging import get_logger


logger = get_logger(__name__)

# Statuses an executor may still settle; anything else was settled by another writer.
_ACTIVE = (RUNNING, CANCEL_REQUESTED)


class RunExecutor:
    """Drives one run's step pipeline to a terminal status.

    Cancellation is cooperative: the live status is re-read from the store
    before every step, never during one. Errors mark the run failed and are
    re-raised so the dispatch layer records the job as failed too.
    """

    def __init__(
        self,
        store: SQLiteStore,
        registry: TaskRegistry,
        *,
        llm_factory: Callable[[], OpenAICompatibleChatClient] | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._llm_factory = llm_factory

    def execute(self, run_id: str) -> None:
        run = self._store.get_run(run_id=run_id)
        if run is None:
            raise RunNotFound(run_id)

        # Cancelled before any worker picked the job up.
        if run.status == CANCEL_REQUESTED:
            finalize_cancelled(self._store, run_id)
            return
        if is_terminal(run.status):
            logger.warning("run_already_terminal", run_id=run_id, status=run.status)
            return

        if not self._store.compare_and_set_status(run_id, expected=run.status, status=RUNNING, started_at=time.time()):
            # A cancel request landed since the read above; handle the fresh status.
            return self.execute(run_id)
        self._log(run_id, "info", "Agent run started", {"task_type": run.task_type})

        context: ExecutionContext | None = None
        task: TaskDefinition | None = None
        step_name: str | None = None
        try:
            constructor = self._registry.resolve(run.task_type)
            context = self._build_context(run)
            task = constructor(context)
            task.initialize()

            steps = list(task.steps())
            self._store.update_run(run_id, total_steps=len(steps))

            last_output: Any = run.input_payload
            for i, step in enumerate(steps):
                context.current_step = i + 1
                step_name = step.name

                if self._should_stop(run_id):
                    return

                if step.should_skip is not None and step.should_skip(last_output, context):
                    context.log(f"Skipping step: {step.name}")
                    continue

                step_input = step.transform_input(last_output) if step.transform_input is not None else last_output

                context.log(f"Starting step: {step.name}", details={"kind": step.kind})
                result = step.execute(step_input, context)
                if not isinstance(result, StepResult):
                    raise StepExecutionError(
                        f"Step {step.name!r} returned {type(result).__name__}, expected StepResult"
                    )

                last_output = result.output
                context.step_outputs[step.name] = result.output
                context.log(f"Completed step: {step.name}", "debug", dict(result.metadata) or None)

                self._store.update_run(run_id, current_step=i + 1)

            step_name = None
            if self._store.compare_and_set_status(
                run_id,
                expected=_ACTIVE,
                status=COMPLETED,
                output_payload=last_output,
                completed_at=time.time(),
            ):
                self._log(run_id, "info", "Agent run completed")
            else:
                self._settled_elsewhere(run_id)
        except Exception as e:
            step_number = context.current_step if context is not None and context.current_step else None
            self._handle_error(run_id, e, step_name=step_name, step_number=step_number)
            raise
        finally:
            if task is not None:
                self._cleanup(run, task)

    def _should_stop(self, run_id: str) -> bool:
        """Step-boundary check of the live status."""
        status = self._store.get_run_status(run_id=run_id)
        if status == CANCEL_REQUESTED:
            finalize_cancelled(self._store, run_id)
            return True
        if status is None or is_terminal(status):
            self._settled_elsewhere(run_id, status)
            return True
        return False

    def _settled_elsewhere(self, run_id: str, status: str | None = None) -> None:
        if status is None:
            status = self._store.get_run_status(run_id=run_id)
        logger.warning("run_settled_elsewhere", run_id=run_id, status=status)

    def _cleanup(self, run: RunRecord, task: TaskDefinition) -> None:
        # The run outcome is already recorded; a failing cleanup must not replace it.
        try:
            task.cleanup()
        except Exception:
            logger.exception("task_cleanup_failed", run_id=run.run_id, task_type=run.task_type)

    def _build_context(self, run: RunRecord) -> ExecutionContext:
        run_id = run.run_id

        def log_fn(level: str, message: str, details: dict[str, Any] | None, step_number: int | None) -> None:
            self._log(run_id, level, message, details, step_number=step_number)

        return ExecutionContext(
            run_id=run_id,
            user_id=run.user_id,
            input=dict(run.input_payload),
            log_fn=log_fn,
            cancel_fn=lambda: is_cancel_requested(self._store, run_id),
            llm_factory=self._llm_factory,
        )

    def _handle_error(
        self,
        run_id: str,
        error: Exception,
        *,
        step_name: str | None,
        step_number: int | None,
    ) -> None:
        message = str(error) or type(error).__name__
        details: dict[str, Any] = {"type": type(error).__name__, "traceback": traceback.format_exc()}
        if step_name is not None:
            details["step"] = step_name
        if isinstance(error, StepExecutionError) and error.details:
            details["step_details"] = error.details

        if not self._store.compare_and_set_status(
            run_id,
            expected=_ACTIVE,
            status=FAILED,
            error_message=message,
            error_details=details,
            completed_at=time.time(),
        ):
            self._settled_elsewhere(run_id)
            return
        self._log(run_id, "error", f"Agent run failed: {message}", {"type": details["type"]}, step_number=step_number)

    def _log(
        self,
        run_id: str,
        level: str,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        step_number: int | None = None,
    ) -> None:
        log_run_message(self._store, run_id, level, message, details, step_number=step_number)
