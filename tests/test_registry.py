from __future__ import annotations

import pytest

from agentrun.agents.echo_task import EchoTask
from agentrun.agents.registry import TaskRegistry, build_registry
from agentrun.agents.simple_task import SimpleTask
from agentrun.runtime.errors import UnknownTaskType


def test_build_registry_contains_builtin_types() -> None:
    registry = build_registry()
    assert registry.names() == ["echo", "simple"]
    assert registry.resolve("simple") is SimpleTask
    assert registry.resolve("echo") is EchoTask


def test_resolve_unknown_type_raises() -> None:
    registry = TaskRegistry()
    assert registry.has("missing") is False
    with pytest.raises(UnknownTaskType) as exc:
        registry.resolve("missing")
    assert exc.value.task_type == "missing"


def test_last_registration_wins() -> None:
    registry = TaskRegistry()
    registry.register("t", SimpleTask)
    registry.register("t", EchoTask)
    assert registry.has("t")
    assert registry.resolve("t") is EchoTask
