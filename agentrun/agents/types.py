from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Protocol

from agentrun.llm.openai_compat import OpenAICompatibleChatClient


StepKind = Literal["llm", "code", "external_api"]
MessageLevel = Literal["debug", "info", "warn", "error"]


@dataclass(frozen=True)
class StepResult:
    output: Any
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Step:
    """One unit of pipeline work.

    `kind` is only recorded for observability. Hooks receive the previous
    step's output (the run input for the first step).
    """

    name: str
    kind: StepKind
    execute: Callable[[Any, "ExecutionContext"], StepResult]
    transform_input: Callable[[Any], Any] | None = None
    should_skip: Callable[[Any, "ExecutionContext"], bool] | None = None


@dataclass
class ExecutionContext:
    """Per-run, per-attempt state shared by all steps of one execution.

    Never persisted: the run record and message log are its durable projection.
    """

    run_id: str
    user_id: str
    input: dict[str, Any]
    log_fn: Callable[[str, str, dict[str, Any] | None, int | None], None] = field(repr=False)
    cancel_fn: Callable[[], bool] = field(repr=False)
    llm_factory: Callable[[], OpenAICompatibleChatClient] | None = field(default=None, repr=False)
    current_step: int = 0
    step_outputs: dict[str, Any] = field(default_factory=dict)
    _llm: OpenAICompatibleChatClient | None = field(default=None, init=False, repr=False)

    def log(self, message: str, level: MessageLevel = "info", details: dict[str, Any] | None = None) -> None:
        self.log_fn(level, message, details, self.current_step or None)

    def check_cancellation(self) -> bool:
        """Re-read the live run status; True once cancellation was requested."""
        return self.cancel_fn()

    @property
    def llm(self) -> OpenAICompatibleChatClient:
        # Built on first use so code-only pipelines never need LLM credentials.
        if self._llm is None:
            if self.llm_factory is None:
                raise RuntimeError("No LLM client configured for this execution.")
            self._llm = self.llm_factory()
        return self._llm


class TaskDefinition(Protocol):
    def steps(self) -> list[Step]: ...

    def initialize(self) -> None: ...

    def cleanup(self) -> None: ...


TaskConstructor = Callable[[ExecutionContext], TaskDefinition]


class BaseTask:
    """Convenience base: stores the context and supplies no-op lifecycle hooks."""

    name = "base"

    def __init__(self, context: ExecutionContext) -> None:
        self.context = context

    def steps(self) -> list[Step]:
        raise NotImplementedError

    def initialize(self) -> None:
        return None

    def cleanup(self) -> None:
        return None
