from __future__ import annotations

import asyncio

from custom_llm.clock import FakeClock
from custom_llm.llm_client import FakeLLMClient
from custom_llm.metrics import M
from custom_llm.protocol import OutboundConfig, OutboundResponse

from tests.harness.transport_harness import HarnessSession, response_required


def _responses(msgs, response_id=None):
    return [
        m
        for m in msgs
        if isinstance(m, OutboundResponse) and (response_id is None or m.response_id == response_id)
    ]


def test_newer_response_id_cancels_older_generation() -> None:
    async def _run() -> None:
        clock = FakeClock()
        # Each token waits 10ms of fake time, so id=1 is still streaming when id=2 lands.
        llm = FakeLLMClient(
            clock=clock,
            rounds=[["Take a breath.", " What's on your mind?"]],
            token_delay_ms=10,
        )
        session = await HarnessSession.start(llm=llm, clock=clock)
        try:
            first = await session.recv_outbound()
            assert isinstance(first, OutboundConfig)

            await session.send_inbound_obj(response_required(1, ("user", "I feel anxious")))
            await session.advance(5)
            await session.send_inbound_obj(
                response_required(2, ("user", "I feel anxious"), ("user", "actually never mind"))
            )

            out = await session.collect_until_final(2)
            assert _responses(out, 1) == []
            fragments = _responses(out, 2)
            assert len(fragments) >= 1
            assert fragments[-1].content_complete is True
            assert all(not f.content_complete for f in fragments[:-1])
            assert "".join(f.content for f in fragments) == "Take a breath. What's on your mind?"
            assert session.metrics.get(M["turn_superseded_total"]) == 1
        finally:
            await session.stop()

    asyncio.run(_run())


def test_burst_of_increasing_ids_only_streams_the_last() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(clock=clock, rounds=[["one", " two", " three"]], token_delay_ms=10)
        session = await HarnessSession.start(llm=llm, clock=clock)
        try:
            await session.recv_outbound()
            for rid in range(1, 6):
                await session.send_inbound_obj(response_required(rid, ("user", f"message {rid}")))
                await session.advance(3)

            out = await session.collect_until_final(5)
            for rid in range(1, 5):
                assert _responses(out, rid) == []
            assert _responses(out, 5)[-1].content_complete is True
            assert session.metrics.get(M["turn_superseded_total"]) == 4
            # Nothing else is still running once the last turn completes.
            await session.pump()
            assert session.session.active is None
        finally:
            await session.stop()

    asyncio.run(_run())


def test_queued_fragments_of_superseded_turn_are_never_written() -> None:
    async def _run() -> None:
        session = await HarnessSession.start()
        try:
            await session.recv_outbound()

            # Block the socket so id=1's fragments pile up in the outbound queue.
            session.transport.send_allowed.clear()
            await session.send_inbound_obj(response_required(1, ("user", "hello")))
            assert session.outbound_q.qsize() >= 1

            await session.send_inbound_obj(response_required(2, ("user", "hello"), ("user", "wait")))
            session.transport.send_allowed.set()

            out = await session.collect_until_final(2)
            assert _responses(out, 1) == []
            assert _responses(out, 2)[-1].content_complete is True
            assert session.metrics.get(M["stale_fragment_dropped_total"]) >= 1
        finally:
            await session.stop()

    asyncio.run(_run())


def test_older_response_id_is_ignored_as_stale() -> None:
    async def _run() -> None:
        session = await HarnessSession.start()
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(3, ("user", "first")))
            out = await session.collect_until_final(3)

            await session.send_inbound_obj(response_required(2, ("user", "first"), ("user", "late")))
            await session.advance(10)
            out += await session.drain_outbound()

            assert _responses(out, 2) == []
            assert session.metrics.get(M["turn_stale_request_total"]) == 1
            # The stale event still updates the transcript.
            assert [u.content for u in session.session.transcript.snapshot()] == ["first", "late"]
        finally:
            await session.stop()

    asyncio.run(_run())


def test_reminder_is_tagged_and_supersedes_like_a_response() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(clock=clock, rounds=[["Are you still there?"]], token_delay_ms=10)
        session = await HarnessSession.start(llm=llm, clock=clock)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(4, ("user", "hmm")))
            await session.send_inbound_obj(
                response_required(5, ("user", "hmm"), kind="reminder_required")
            )

            out = await session.collect_until_final(5)
            assert _responses(out, 4) == []
            reminder = _responses(out, 5)
            assert {m.response_type for m in reminder} == {"reminder"}
            assert reminder[-1].content_complete is True

            # The last prompt message tells the model the user went quiet.
            last_call = llm.calls[-1]
            assert last_call[-1]["role"] == "user"
            assert "not responded" in last_call[-1]["content"]
        finally:
            await session.stop()

    asyncio.run(_run())


def test_equal_response_id_restarts_without_interleaving() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(clock=clock, rounds=[["x", "y"], ["fresh reply"]], token_delay_ms=10)
        session = await HarnessSession.start(llm=llm, clock=clock)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(7, ("user", "hi")))
            await session.advance(10)
            await session.send_inbound_obj(
                response_required(7, ("user", "hi"), kind="reminder_required")
            )

            out = await session.collect_until_final(7)
            fragments = _responses(out, 7)
            # Anything the first generation got out before the restart precedes the new turn.
            reminder_idx = [i for i, m in enumerate(fragments) if m.response_type == "reminder"]
            assert reminder_idx, "expected reminder fragments"
            assert all(m.response_type == "reminder" for m in fragments[reminder_idx[0]:])
            assert fragments[-1].content_complete is True
            assert "".join(m.content for m in fragments[reminder_idx[0]:]) == "fresh reply"
        finally:
            await session.stop()

    asyncio.run(_run())


def test_close_cancels_active_generation() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(clock=clock, rounds=[["never", " finished"]], token_delay_ms=1000)
        session = await HarnessSession.start(llm=llm, clock=clock)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "hi")))
            handle = session.session.active
            assert handle is not None and handle.active

            await session.transport.disconnect()
            await session.pump()

            assert session.orch.state.value == "CLOSED"
            assert session.orch.close_code == 1000
            assert handle.token.cancelled
            assert session.session.active is None
        finally:
            await session.stop()

    asyncio.run(_run())
