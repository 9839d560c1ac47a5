from __future__ import annotations

from agentrun.agents.types import TaskConstructor
from agentrun.runtime.errors import UnknownTaskType


class TaskRegistry:
    """Task type name -> constructor of a step pipeline.

    Filled once at process start (see `build_registry`) and read-only while
    runs execute, so it needs no locking.
    """

    def __init__(self) -> None:
        self._constructors: dict[str, TaskConstructor] = {}

    def register(self, task_type: str, constructor: TaskConstructor) -> None:
        # Last registration wins.
        self._constructors[task_type] = constructor

    def resolve(self, task_type: str) -> TaskConstructor:
        constructor = self._constructors.get(task_type)
        if constructor is None:
            raise UnknownTaskType(task_type)
        return constructor

    def has(self, task_type: str) -> bool:
        return task_type in self._constructors

    def names(self) -> list[str]:
        return sorted(self._constructors)


def build_registry() -> TaskRegistry:
    """Registry with every built-in task type."""
    from agentrun.agents import echo_task, simple_task

    registry = TaskRegistry()
    for module in (simple_task, echo_task):
        module.register(registry)
    return registry
