from __future__ import annotations

from typing import TYPE_CHECKING, Any

from agentrun.agents.types import BaseTask, ExecutionContext, Step, StepResult
from agentrun.runtime.errors import StepExecutionError

if TYPE_CHECKING:
    from agentrun.agents.registry import TaskRegistry


def _llm_call(input: Any, context: ExecutionContext) -> StepResult:
    prompt = input.get("prompt") if isinstance(input, dict) else None
    if not isinstance(prompt, str) or not prompt.strip():
        raise StepExecutionError("Missing required input field: prompt")

    context.log("Starting LLM call")
    result = context.llm.chat(user=prompt)
    context.log(
        "LLM call completed",
        "info",
        {"input_tokens": result.input_tokens, "output_tokens": result.output_tokens},
    )
    return StepResult(
        output={"text": result.content},
        metadata={
            "model": result.model,
            "input_tokens": result.input_tokens,
            "output_tokens": result.output_tokens,
        },
    )


class SimpleTask(BaseTask):
    """Single LLM call: {"prompt": str} -> {"text": str}."""

    name = "simple"

    def steps(self) -> list[Step]:
        return [Step(name="llm_call", kind="llm", execute=_llm_call)]


def register(registry: TaskRegistry) -> None:
    registry.register(SimpleTask.name, SimpleTask)
