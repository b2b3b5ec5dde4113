from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol, Sequence, Union

from .clock import Clock
from .config import ServerConfig


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCall:
    call_id: str
    name: str
    arguments: dict[str, Any]


LLMEvent = Union[TextDelta, ToolCall]
ChatMessage = dict[str, Any]


class LLMClient(Protocol):
    def stream_chat(
        self,
        *,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[LLMEvent]:
        ...

    async def aclose(self) -> None:
        ...


class FakeLLMClient:
    """
    Scripted model for tests and keyless local runs.

    Each stream_chat() call plays the next round of the script (the last round repeats).
    Plain strings in a round become TextDelta events.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        rounds: Optional[Sequence[Sequence[Union[str, LLMEvent]]]] = None,
        token_delay_ms: int = 0,
        fail_with: Optional[BaseException] = None,
    ) -> None:
        self._clock = clock
        self._rounds = [list(r) for r in (rounds or [["Okay."]])]
        self._token_delay_ms = int(token_delay_ms)
        self._fail_with = fail_with
        self.calls: list[list[ChatMessage]] = []
        self.closed = False

    async def stream_chat(
        self,
        *,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[LLMEvent]:
        self.calls.append([dict(m) for m in messages])
        script = self._rounds[min(len(self.calls) - 1, len(self._rounds) - 1)]
        for item in script:
            if self._token_delay_ms > 0:
                await self._clock.sleep_ms(self._token_delay_ms)
            if self._fail_with is not None:
                raise self._fail_with
            yield TextDelta(text=item) if isinstance(item, str) else item
        if self._fail_with is not None:
            raise self._fail_with

    async def aclose(self) -> None:
        self.closed = True


class OpenAILLMClient:
    """
    OpenAI chat-completions streaming adapter with function calling.

    Notes:
    - Lazy-imports the `openai` package so deterministic tests can run without credentials.
    - Tool-call arguments arrive as string deltas keyed by index; a ToolCall is emitted
      once the stream ends and the arguments are complete.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        max_tokens: int = 200,
        timeout_ms: int = 8000,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.temperature = float(temperature)
        self.max_tokens = int(max_tokens)
        self.timeout_ms = int(timeout_ms)
        self._client: Any = None

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from openai import AsyncOpenAI  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError(
                "OpenAILLMClient requires the optional dependency 'openai'. "
                "Install with: python3 -m pip install -e '.[openai]'"
            ) from e
        self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    @staticmethod
    def _parse_arguments(raw: str) -> dict[str, Any]:
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    async def stream_chat(
        self,
        *,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[LLMEvent]:
        client = self._ensure_client()
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "frequency_penalty": 1,
            "timeout": max(1.0, self.timeout_ms / 1000.0),
        }
        if tools:
            kwargs["tools"] = tools
        stream = await client.chat.completions.create(**kwargs)

        pending: dict[int, dict[str, str]] = {}
        try:
            async for chunk in stream:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0], "delta", None)
                if delta is None:
                    continue
                for tc in getattr(delta, "tool_calls", None) or []:
                    slot = pending.setdefault(int(getattr(tc, "index", 0) or 0), {"id": "", "name": "", "arguments": ""})
                    if getattr(tc, "id", None):
                        slot["id"] = str(tc.id)
                    fn = getattr(tc, "function", None)
                    if fn is not None:
                        if getattr(fn, "name", None):
                            slot["name"] = str(fn.name)
                        if getattr(fn, "arguments", None):
                            slot["arguments"] += str(fn.arguments)
                content = getattr(delta, "content", None)
                if content:
                    yield TextDelta(text=str(content))
        finally:
            close_fn = getattr(stream, "close", None)
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res

        for idx in sorted(pending):
            slot = pending[idx]
            if not slot["name"]:
                continue
            yield ToolCall(
                call_id=slot["id"] or f"call_{idx}",
                name=slot["name"],
                arguments=self._parse_arguments(slot["arguments"]),
            )

    async def aclose(self) -> None:
        if self._client is not None:
            close_fn = getattr(self._client, "close", None)
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res
            self._client = None


def build_llm_client(cfg: ServerConfig, *, clock: Clock) -> LLMClient:
    if cfg.llm_provider == "openai":
        return OpenAILLMClient(
            api_key=cfg.openai_api_key or None,
            model=cfg.openai_model,
            temperature=cfg.openai_temperature,
            max_tokens=cfg.openai_max_tokens,
            timeout_ms=cfg.model_timeout_ms,
        )
    return FakeLLMClient(
        clock=clock,
        rounds=[["I hear you.", " Tell me a little more about that."]],
    )
