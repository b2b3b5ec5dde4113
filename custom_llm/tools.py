from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .clock import Clock
from .logs import log_event
from .metrics import M, Metrics


logger = logging.getLogger(__name__)

ToolFn = Callable[[dict[str, Any]], Awaitable[str]]

END_CALL_TOOL = "end_call"


@dataclass(frozen=True, slots=True)
class ToolCallRecord:
    tool_call_id: str
    name: str
    arguments: dict[str, Any]
    started_at_ms: int
    completed_at_ms: int
    ok: bool
    content: str


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    fn: Optional[ToolFn] = None
    # Terminal tools end the turn (and the call) instead of feeding a result back.
    terminal: bool = False

    def declaration(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


END_CALL_SPEC = ToolSpec(
    name=END_CALL_TOOL,
    description="End the call only when the user explicitly asks to end it or says goodbye.",
    parameters={
        "type": "object",
        "properties": {
            "message": {
                "type": "string",
                "description": "The message you will say before ending the call with the user.",
            }
        },
        "required": ["message"],
    },
    terminal=True,
)


class ToolRegistry:
    def __init__(
        self,
        *,
        clock: Clock,
        metrics: Metrics | None = None,
        timeout_ms: int = 1500,
        include_end_call: bool = True,
    ) -> None:
        self._clock = clock
        self._metrics = metrics
        self._timeout_ms = int(timeout_ms)
        self._tools: dict[str, ToolSpec] = {}
        if include_end_call:
            self.register(END_CALL_SPEC)

    def register(self, spec: ToolSpec) -> None:
        if not spec.terminal and spec.fn is None:
            raise ValueError(f"non-terminal tool {spec.name!r} needs a callable")
        self._tools[spec.name] = spec

    def register_function(
        self,
        name: str,
        fn: ToolFn,
        *,
        description: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> None:
        self.register(
            ToolSpec(
                name=name,
                description=description,
                parameters=parameters or {"type": "object", "properties": {}},
                fn=fn,
            )
        )

    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(str(name or "").strip())

    def is_terminal(self, name: str) -> bool:
        spec = self.get(name)
        return bool(spec is not None and spec.terminal)

    def declarations(self) -> list[dict[str, Any]]:
        return [spec.declaration() for spec in self._tools.values()]

    def _inc(self, key: str) -> None:
        if self._metrics is not None:
            self._metrics.inc(M[key], 1)

    async def invoke(self, *, name: str, arguments: dict[str, Any], tool_call_id: str) -> ToolCallRecord:
        """
        Run a non-terminal tool with a deadline. Failures come back as a record with
        ok=False so the model can recover in its next round.
        """
        started = self._clock.now_ms()
        self._inc("tool_calls_total")
        spec = self.get(name)
        if spec is None or spec.fn is None:
            self._inc("tool_failures_total")
            return ToolCallRecord(
                tool_call_id=tool_call_id,
                name=name,
                arguments=dict(arguments),
                started_at_ms=started,
                completed_at_ms=self._clock.now_ms(),
                ok=False,
                content=f"tool_error:unknown_tool:{name}",
            )

        ok = True
        try:
            content = str(await self._clock.run_with_timeout(spec.fn(dict(arguments)), self._timeout_ms))
        except asyncio.CancelledError:
            raise
        except TimeoutError:
            ok, content = False, "tool_timeout"
        except Exception as e:
            ok, content = False, f"tool_error:{type(e).__name__}"

        if not ok:
            self._inc("tool_failures_total")
            log_event(
                logger,
                "tool_failed",
                component="tools",
                level=logging.WARNING,
                tool=name,
                tool_call_id=tool_call_id,
                result=content,
            )
        return ToolCallRecord(
            tool_call_id=tool_call_id,
            name=name,
            arguments=dict(arguments),
            started_at_ms=started,
            completed_at_ms=self._clock.now_ms(),
            ok=ok,
            content=content,
        )
