from __future__ import annotations

import tempfile
from typing import Any

import pytest

from agentrun.agents.registry import build_registry
from agentrun.llm.openai_compat import ChatCompletionResult, LLMConfigError, OpenAICompatibleChatClient
from agentrun.runtime.errors import StepExecutionError
from agentrun.runtime.executor import RunExecutor
from agentrun.storage.sqlite_store import SQLiteStore


class _FakeLLM:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def chat(self, *, user: str, system: str | None = None, extra: dict[str, Any] | None = None) -> ChatCompletionResult:
        self.calls.append({"user": user, "system": system})
        return ChatCompletionResult(content=f"echo: {user}", model="fake-model", input_tokens=7, output_tokens=3)


def test_simple_task_calls_llm_and_records_usage() -> None:
    llm = _FakeLLM()
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run = store.create_run(user_id="u1", task_type="simple", input_payload={"prompt": "hello"})
            RunExecutor(store, build_registry(), llm_factory=lambda: llm).execute(run.run_id)  # type: ignore[arg-type,return-value]

            final = store.get_run(run_id=run.run_id)
            assert final is not None
            assert final.status == "completed"
            assert final.current_step == 1
            assert final.total_steps == 1
            assert final.output_payload == {"text": "echo: hello"}
            assert llm.calls == [{"user": "hello", "system": None}]

            msgs = {m.message: m for m in store.list_messages(run_id=run.run_id)}
            assert msgs["LLM call completed"].details == {"input_tokens": 7, "output_tokens": 3}
            assert msgs["LLM call completed"].step_number == 1
            assert msgs["Completed step: llm_call"].level == "debug"
            assert msgs["Completed step: llm_call"].details == {
                "model": "fake-model",
                "input_tokens": 7,
                "output_tokens": 3,
            }
        finally:
            store.close()


def test_missing_prompt_fails_before_llm_is_built() -> None:
    built: list[bool] = []

    def factory() -> Any:
        built.append(True)
        return _FakeLLM()

    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run = store.create_run(user_id="u1", task_type="simple", input_payload={"prompt": "   "})
            with pytest.raises(StepExecutionError):
                RunExecutor(store, build_registry(), llm_factory=factory).execute(run.run_id)
            assert built == []
            final = store.get_run(run_id=run.run_id)
            assert final is not None and final.status == "failed"
        finally:
            store.close()


def test_client_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(LLMConfigError):
        OpenAICompatibleChatClient(model="m")
