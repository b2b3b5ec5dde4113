from __future__ import annotations

import asyncio
from typing import Any

from custom_llm.clock import FakeClock
from custom_llm.config import ServerConfig
from custom_llm.llm_client import FakeLLMClient, ToolCall
from custom_llm.metrics import M
from custom_llm.protocol import OutboundResponse

from tests.harness.transport_harness import HarnessSession, response_required


def _responses(out: list) -> list[OutboundResponse]:
    return [m for m in out if isinstance(m, OutboundResponse)]


def test_end_call_tool_speaks_message_and_flags_end_call() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(
            clock=clock,
            rounds=[
                [
                    "Take care of yourself.",
                    ToolCall(call_id="call_1", name="end_call", arguments={"message": "Goodbye for now."}),
                ]
            ],
        )
        session = await HarnessSession.start(llm=llm, clock=clock)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "That's all, bye.")))
            out = _responses(await session.collect_until_final(1))

            assert [(m.content, m.content_complete, m.end_call) for m in out] == [
                ("Take care of yourself.", False, None),
                ("Goodbye for now.", True, True),
            ]
            assert session.metrics.get(M["end_call_total"]) == 1
            # end_call is a flag for the platform; the socket stays up until it hangs up.
            assert session.orch.state.value == "OPEN"
            assert len(llm.calls) == 1
        finally:
            await session.stop()

    asyncio.run(_run())


def test_end_call_is_declared_to_the_model() -> None:
    async def _run() -> None:
        session = await HarnessSession.start()
        try:
            declared = [d["function"]["name"] for d in session.tools.declarations()]
            assert "end_call" in declared
        finally:
            await session.stop()

    asyncio.run(_run())


def test_tool_result_feeds_next_model_round_and_is_not_spoken() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(
            clock=clock,
            rounds=[
                [ToolCall(call_id="call_7", name="lookup_hours", arguments={"day": "monday"})],
                ["We're open nine to five on Monday."],
            ],
        )
        session = await HarnessSession.start(llm=llm, clock=clock)
        seen: list[dict[str, Any]] = []

        async def lookup_hours(args: dict[str, Any]) -> str:
            seen.append(args)
            return "09:00-17:00"

        session.tools.register_function(lookup_hours.__name__, lookup_hours, description="Office hours by day.")
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "When are you open Monday?")))
            out = _responses(await session.collect_until_final(1))

            assert "".join(m.content for m in out) == "We're open nine to five on Monday."
            assert "09:00-17:00" not in "".join(m.content for m in out)
            assert seen == [{"day": "monday"}]

            second_round = llm.calls[1]
            assistant = second_round[-2]
            assert assistant["role"] == "assistant"
            assert assistant["tool_calls"][0]["function"]["name"] == "lookup_hours"
            assert second_round[-1] == {"role": "tool", "tool_call_id": "call_7", "content": "09:00-17:00"}
            assert session.metrics.get(M["tool_calls_total"]) == 1
        finally:
            await session.stop()

    asyncio.run(_run())


def test_tool_rounds_are_capped() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(
            clock=clock,
            rounds=[[ToolCall(call_id="loop", name="lookup_hours", arguments={})]],
        )
        session = await HarnessSession.start(cfg=ServerConfig(max_tool_rounds=2), llm=llm, clock=clock)

        async def lookup_hours(args: dict[str, Any]) -> str:
            return "closed"

        session.tools.register_function("lookup_hours", lookup_hours, description="Office hours.")
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "hours?")))
            out = _responses(await session.collect_until_final(1))

            assert len(llm.calls) == 3
            assert [(m.content, m.content_complete) for m in out] == [("", True)]
            assert session.metrics.get(M["tool_calls_total"]) == 2
        finally:
            await session.stop()

    asyncio.run(_run())


def test_unknown_tool_is_reported_back_to_the_model() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(
            clock=clock,
            rounds=[
                [ToolCall(call_id="x1", name="book_flight", arguments={})],
                ["I can't do that, sorry."],
            ],
        )
        session = await HarnessSession.start(llm=llm, clock=clock)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "book me a flight")))
            out = _responses(await session.collect_until_final(1))

            assert "".join(m.content for m in out) == "I can't do that, sorry."
            assert llm.calls[1][-1]["content"] == "tool_error:unknown_tool:book_flight"
            assert session.metrics.get(M["tool_failures_total"]) == 1
        finally:
            await session.stop()

    asyncio.run(_run())
