from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from custom_llm.clock import FakeClock
from custom_llm.config import ServerConfig
from custom_llm.llm_client import FakeLLMClient, LLMEvent, TextDelta
from custom_llm.metrics import M
from custom_llm.protocol import OutboundResponse

from tests.harness.transport_harness import HarnessSession, response_required


class _BreaksMidStream:
    def __init__(self) -> None:
        self.calls: list[list[dict[str, Any]]] = []

    async def stream_chat(self, *, messages, tools) -> AsyncIterator[LLMEvent]:
        self.calls.append(list(messages))
        yield TextDelta(text="Hmm,")
        raise RuntimeError("upstream reset")

    async def aclose(self) -> None:
        return


def _finals(out: list) -> list[OutboundResponse]:
    return [m for m in out if isinstance(m, OutboundResponse) and m.content_complete]


def test_model_timeout_ends_turn_with_one_apology(caplog) -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(clock=clock, rounds=[["too late"]], token_delay_ms=10_000)
        cfg = ServerConfig(model_timeout_ms=8000, apology_text="Sorry, say that again?")
        session = await HarnessSession.start(cfg=cfg, llm=llm, clock=clock)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "hello")))
            await session.advance(8000)

            out = await session.collect_until_final(1)
            await session.advance(5000)
            out += await session.drain_outbound()

            responses = [m for m in out if isinstance(m, OutboundResponse)]
            assert [(m.content, m.content_complete) for m in responses] == [("Sorry, say that again?", True)]
            assert session.metrics.get(M["generation_error_total"]) == 1
            assert session.orch.state.value == "OPEN"
        finally:
            await session.stop()

    with caplog.at_level(logging.ERROR, logger="custom_llm.generator"):
        asyncio.run(_run())
    failures = [r for r in caplog.records if "generation_failed" in r.getMessage()]
    assert len(failures) == 1
    assert '"timeout":true' in failures[0].getMessage()


def test_failure_after_partial_output_still_completes_the_turn() -> None:
    async def _run() -> None:
        session = await HarnessSession.start(
            cfg=ServerConfig(apology_text="Sorry, could you repeat that?"),
            llm=_BreaksMidStream(),
        )
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "hello")))
            out = await session.collect_until_final(1)

            responses = [m for m in out if isinstance(m, OutboundResponse)]
            assert [(m.content, m.content_complete) for m in responses] == [
                ("Hmm,", False),
                ("Sorry, could you repeat that?", True),
            ]
            assert session.metrics.get(M["generation_error_total"]) == 1
        finally:
            await session.stop()

    asyncio.run(_run())


def test_session_survives_failure_and_serves_next_turn() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(clock=clock, rounds=[["never"]], fail_with=ConnectionError("boom"))
        session = await HarnessSession.start(llm=llm, clock=clock)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "hello")))
            first = await session.collect_until_final(1)
            assert len(_finals(first)) == 1

            await session.send_inbound_obj(response_required(2, ("user", "hello"), ("user", "still there?")))
            second = await session.collect_until_final(2)
            assert len(_finals(second)) == 1
            assert session.metrics.get(M["generation_error_total"]) == 2
            assert session.orch.state.value == "OPEN"
        finally:
            await session.stop()

    asyncio.run(_run())


def test_superseded_slow_turn_does_not_count_as_failure() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(clock=clock, rounds=[["slow"], ["fast"]], token_delay_ms=5000)
        session = await HarnessSession.start(cfg=ServerConfig(model_timeout_ms=8000), llm=llm, clock=clock)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "a")))
            await session.advance(1000)
            await session.send_inbound_obj(response_required(2, ("user", "a"), ("user", "b")))

            out = await session.collect_until_final(2, step_ms=1000)
            assert [m.response_id for m in out if isinstance(m, OutboundResponse)] == [2, 2]
            assert session.metrics.get(M["generation_error_total"]) == 0
        finally:
            await session.stop()

    asyncio.run(_run())
