from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Sequence

from .clock import Clock
from .config import PromptConfig
from .llm_client import ChatMessage, LLMClient, LLMEvent, TextDelta, ToolCall
from .logs import log_event
from .metrics import M, Metrics
from .protocol import TranscriptUtterance
from .state import CancelToken
from .tools import ToolRegistry


logger = logging.getLogger(__name__)

_SYSTEM_PREAMBLE = (
    "## Objective\n"
    "You are a voice AI agent in a live, human-like phone conversation with the user. "
    "Reply based on your instruction and the transcript so far, and sound as human as possible.\n\n"
    "## Style Guardrails\n"
    "- Be concise: keep replies short and address one topic at a time.\n"
    "- Do not repeat yourself; rephrase if you need to say something again.\n"
    "- Be conversational: use everyday language, like talking to a friend.\n"
    "- Reply with emotion and empathy where it fits.\n"
    "- Be proactive: lead the conversation and usually end with a question or a next step.\n\n"
    "## Response Guideline\n"
    "- The transcript comes from speech recognition and may contain errors. Guess what the "
    "user meant; if you must ask, use phrases like \"didn't catch that\" or \"pardon\".\n"
    "- Never mention transcription errors.\n"
    "- Stay in your role and steer back to your goal if the conversation drifts.\n"
    "- Keep the conversation flowing; do not sound like you are reading."
)

_REMINDER_NUDGE = "(The user has not responded in a while. Gently check in or prompt them to continue.)"


@dataclass(frozen=True, slots=True)
class Fragment:
    content: str
    final: bool
    end_call: bool = False


def build_system_prompt(agent_prompt: str) -> str:
    return f"{_SYSTEM_PREAMBLE}\n\n## Role\n{agent_prompt}"


class ResponseGenerator:
    """
    Turns a transcript snapshot into a stream of reply fragments for one call.

    One instance per call: it carries the prompt snapshot taken when the call connected.
    """

    def __init__(
        self,
        *,
        call_id: str,
        llm: LLMClient,
        tools: ToolRegistry,
        clock: Clock,
        metrics: Metrics,
        prompts: PromptConfig,
        model_timeout_ms: int = 8000,
        max_tool_rounds: int = 2,
        apology_text: str = "Sorry, I'm having trouble right now. Could you say that again?",
    ) -> None:
        self._call_id = call_id
        self._llm = llm
        self._tools = tools
        self._clock = clock
        self._metrics = metrics
        self._prompts = prompts
        self._model_timeout_ms = int(model_timeout_ms)
        self._max_tool_rounds = max(0, int(max_tool_rounds))
        self._apology_text = apology_text

    def begin_message(self) -> Fragment:
        return Fragment(content=self._prompts.begin_sentence, final=True)

    def build_messages(self, transcript: Sequence[TranscriptUtterance], *, reminder: bool) -> list[ChatMessage]:
        messages: list[ChatMessage] = [
            {"role": "system", "content": build_system_prompt(self._prompts.agent_prompt)}
        ]
        for u in transcript:
            messages.append(
                {"role": "assistant" if u.role == "agent" else "user", "content": u.content}
            )
        if reminder:
            messages.append({"role": "user", "content": _REMINDER_NUDGE})
        return messages

    async def _model_events(self, messages: list[ChatMessage], token: CancelToken) -> AsyncIterator[LLMEvent]:
        stream = self._llm.stream_chat(messages=list(messages), tools=self._tools.declarations())
        try:
            while not token.cancelled:
                try:
                    ev = await self._clock.run_with_timeout(stream.__anext__(), self._model_timeout_ms)
                except StopAsyncIteration:
                    return
                yield ev
        finally:
            await stream.aclose()

    @staticmethod
    def _assistant_tool_message(tool_calls: list[ToolCall], text: str) -> ChatMessage:
        return {
            "role": "assistant",
            "content": text or None,
            "tool_calls": [
                {
                    "id": tc.call_id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                }
                for tc in tool_calls
            ],
        }

    async def stream(
        self,
        transcript: Sequence[TranscriptUtterance],
        *,
        reminder: bool = False,
        token: CancelToken,
    ) -> AsyncIterator[Fragment]:
        """
        Yield fragments as the model produces them; the last one has final=True.

        Nothing is yielded and no tool runs once token is cancelled. A model failure or
        timeout ends the turn with the apology fragment instead of leaving it open.
        """
        messages = self.build_messages(transcript, reminder=reminder)
        try:
            for round_idx in range(self._max_tool_rounds + 1):
                tool_calls: list[ToolCall] = []
                spoken: list[str] = []
                async with aclosing(self._model_events(messages, token)) as events:
                    async for ev in events:
                        if token.cancelled:
                            return
                        if isinstance(ev, TextDelta):
                            if ev.text:
                                spoken.append(ev.text)
                                yield Fragment(content=ev.text, final=False)
                        else:
                            tool_calls.append(ev)
                if token.cancelled:
                    return

                terminal = next((tc for tc in tool_calls if self._tools.is_terminal(tc.name)), None)
                if terminal is not None:
                    self._metrics.inc(M["end_call_total"], 1)
                    log_event(
                        logger,
                        "end_call_requested",
                        component="generator",
                        call_id=self._call_id,
                        tool_call_id=terminal.call_id,
                    )
                    yield Fragment(
                        content=str(terminal.arguments.get("message", "") or ""),
                        final=True,
                        end_call=True,
                    )
                    return

                if not tool_calls or round_idx >= self._max_tool_rounds:
                    break

                # Tool results only feed the next model round; they are never spoken.
                messages.append(self._assistant_tool_message(tool_calls, "".join(spoken)))
                for tc in tool_calls:
                    if token.cancelled:
                        return
                    record = await self._tools.invoke(
                        name=tc.name,
                        arguments=tc.arguments,
                        tool_call_id=tc.call_id,
                    )
                    messages.append({"role": "tool", "tool_call_id": tc.call_id, "content": record.content})

            yield Fragment(content="", final=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if token.cancelled:
                return
            self._metrics.inc(M["generation_error_total"], 1)
            log_event(
                logger,
                "generation_failed",
                component="generator",
                level=logging.ERROR,
                call_id=self._call_id,
                error=f"{type(e).__name__}: {e}",
                timeout=isinstance(e, TimeoutError),
            )
            yield Fragment(content=self._apology_text, final=True)
