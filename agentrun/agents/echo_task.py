from __future__ import annotations

from typing import TYPE_CHECKING, Any

from agentrun.agents.types import BaseTask, ExecutionContext, Step, StepResult
from agentrun.runtime.errors import StepExecutionError

if TYPE_CHECKING:
    from agentrun.agents.registry import TaskRegistry


def _normalize(input: Any, context: ExecutionContext) -> StepResult:
    if not isinstance(input, dict):
        raise StepExecutionError(f"echo input must be an object, got {type(input).__name__}")
    normalized = {k: (v.strip() if isinstance(v, str) else v) for k, v in input.items()}
    return StepResult(output=normalized, metadata={"keys": len(normalized)})


def _echo(input: Any, context: ExecutionContext) -> StepResult:
    return StepResult(output={"echo": input, "run_id": context.run_id})


def _skip_echo(previous_output: Any, context: ExecutionContext) -> bool:
    return isinstance(previous_output, dict) and bool(previous_output.get("skip_echo"))


class EchoTask(BaseTask):
    """Code-only dry-run pipeline; needs no LLM credentials."""

    name = "echo"

    def steps(self) -> list[Step]:
        return [
            Step(name="normalize", kind="code", execute=_normalize),
            Step(
                name="echo",
                kind="code",
                execute=_echo,
                transform_input=lambda prev: {k: v for k, v in prev.items() if k != "skip_echo"},
                should_skip=_skip_echo,
            ),
        ]


def register(registry: TaskRegistry) -> None:
    registry.register(EchoTask.name, EchoTask)
