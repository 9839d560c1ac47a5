from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

from agentrun.config.load_config import LLMConfig


class LLMConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatCompletionResult:
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    raw: dict[str, Any] = field(default_factory=dict)


class OpenAICompatibleChatClient:
    """Minimal OpenAI-compatible chat client wrapper.

    Providers/models are swapped through OpenAI-compatible gateways
    (OPENAI_API_BASE + LLM_MODEL); steps only see content and token usage.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        timeout_s: float | None = None,
    ) -> None:
        self.base_url = (
            base_url
            or os.getenv("OPENAI_API_BASE")
            or os.getenv("OPENAI_BASE_URL")
            or "https://api.openai.com/v1"
        )
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("LLM_MODEL") or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        self.max_tokens = int(max_tokens)
        self.temperature = float(temperature)
        self.timeout_s = timeout_s

        if not self.api_key:
            raise LLMConfigError("Missing OPENAI_API_KEY (or provide api_key explicitly).")

        try:
            from openai import OpenAI  # type: ignore
        except Exception as e:
            raise LLMConfigError("Missing dependency: openai. Install it in the runtime environment.") from e

        self._client = OpenAI(base_url=self.base_url, api_key=self.api_key, timeout=self.timeout_s)

    @classmethod
    def from_config(cls, cfg: LLMConfig) -> "OpenAICompatibleChatClient":
        # LLM_MODEL in the environment still wins over the config file.
        return cls(
            model=os.getenv("LLM_MODEL") or cfg.model,
            max_tokens=cfg.max_tokens,
            temperature=cfg.temperature,
            timeout_s=cfg.timeout_s,
        )

    def chat(
        self,
        *,
        user: str,
        system: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> ChatCompletionResult:
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": user})
        return self.chat_messages(messages=messages, extra=extra)

    def chat_messages(
        self,
        *,
        messages: list[dict[str, Any]],
        extra: dict[str, Any] | None = None,
    ) -> ChatCompletionResult:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if extra:
            payload.update(extra)
        resp = self._client.chat.completions.create(**payload)
        raw = resp.model_dump()
        msg = resp.choices[0].message
        usage = resp.usage
        return ChatCompletionResult(
            content=(msg.content or "").strip(),
            model=str(resp.model or self.model),
            input_tokens=int(usage.prompt_tokens) if usage is not None else 0,
            output_tokens=int(usage.completion_tokens) if usage is not None else 0,
            raw=raw,
        )
