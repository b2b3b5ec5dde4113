from __future__ import annotations

import asyncio
from typing import Sequence

from custom_llm.config import PromptConfig
from custom_llm.metrics import M
from custom_llm.protocol import OutboundResponse, TranscriptUtterance
from custom_llm.transcript_log import InMemoryTranscriptLog

from tests.harness.transport_harness import HarnessSession, response_required, update_only


class _FailingTranscriptLog:
    def __init__(self) -> None:
        self.attempts = 0

    async def append(self, call_id: str, utterances: Sequence[TranscriptUtterance]) -> None:
        self.attempts += 1
        raise ConnectionError("transcript store unavailable")

    async def aclose(self) -> None:
        return


def _call_details() -> dict:
    return {
        "interaction_type": "call_details",
        "call": {"call_id": "call-1", "agent_id": "ag_1", "call_type": "web_call"},
    }


def test_call_details_sends_greeting_once() -> None:
    async def _run() -> None:
        prompts = PromptConfig(begin_sentence="Hi, I'm here to listen.", agent_prompt="Be kind.")
        session = await HarnessSession.start(prompts=prompts)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(_call_details())
            await session.send_inbound_obj(_call_details())

            out = await session.drain_outbound()
            assert len(out) == 1
            greeting = out[0]
            assert isinstance(greeting, OutboundResponse)
            assert greeting.response_type == "response"
            assert greeting.response_id == 0
            assert greeting.content == "Hi, I'm here to listen."
            assert greeting.content_complete is True
            assert greeting.end_call is None
            # The greeting is not model output.
            assert session.llm.calls == []
        finally:
            await session.stop()

    asyncio.run(_run())


def test_greeting_skipped_once_a_turn_has_started() -> None:
    async def _run() -> None:
        session = await HarnessSession.start()
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "hello")))
            await session.collect_until_final(1)
            await session.send_inbound_obj(_call_details())

            out = await session.drain_outbound()
            assert not any(isinstance(m, OutboundResponse) and m.response_id == 0 for m in out)
            assert session.trace.of_type("greeting_skipped")
        finally:
            await session.stop()

    asyncio.run(_run())


def test_update_only_is_silent_and_records_transcript() -> None:
    async def _run() -> None:
        log = InMemoryTranscriptLog()
        session = await HarnessSession.start(transcript_log=log)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(update_only(("user", "I had a rough")))
            await session.send_inbound_obj(update_only(("user", "I had a rough day")))
            await session.send_inbound_obj(update_only(("user", "I had a rough day")))
            await session.pump()

            assert await session.drain_outbound() == []
            assert session.llm.calls == []
            assert [u.content for u in session.session.transcript.snapshot()] == ["I had a rough day"]
            # An identical snapshot is not a new batch.
            batches = log.for_call("call-1")
            assert [[u.content for u in b] for b in batches] == [["I had a rough"], ["I had a rough day"]]
        finally:
            await session.stop()

    asyncio.run(_run())


def test_transcript_is_sent_to_the_model_with_agent_as_assistant() -> None:
    async def _run() -> None:
        prompts = PromptConfig(begin_sentence="Hello.", agent_prompt="You are a calm listener.")
        session = await HarnessSession.start(prompts=prompts)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(
                response_required(
                    1,
                    ("agent", "Hello."),
                    ("user", "I can't sleep."),
                )
            )
            await session.collect_until_final(1)

            assert len(session.metrics.get_hist(M["first_fragment_latency_ms"])) == 1
            messages = session.llm.calls[0]
            assert messages[0]["role"] == "system"
            assert "You are a calm listener." in messages[0]["content"]
            assert [(m["role"], m["content"]) for m in messages[1:]] == [
                ("assistant", "Hello."),
                ("user", "I can't sleep."),
            ]
        finally:
            await session.stop()

    asyncio.run(_run())


def test_transcript_log_failure_does_not_block_reply() -> None:
    async def _run() -> None:
        log = _FailingTranscriptLog()
        session = await HarnessSession.start(transcript_log=log)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "are you there?")))
            out = await session.collect_until_final(1)

            assert "".join(m.content for m in out if isinstance(m, OutboundResponse)) == "I hear you. Go on."
            await session.pump()
            assert log.attempts == 1
            assert session.metrics.get(M["transcript_log_error_total"]) == 1
            assert session.orch.state.value == "OPEN"
        finally:
            await session.stop()

    asyncio.run(_run())


def test_transcript_batches_follow_turn_requests() -> None:
    async def _run() -> None:
        log = InMemoryTranscriptLog()
        session = await HarnessSession.start(transcript_log=log)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(response_required(1, ("user", "hi")))
            await session.collect_until_final(1)
            await session.send_inbound_obj(
                response_required(2, ("user", "hi"), ("agent", "I hear you. Go on."), ("user", "work stress"))
            )
            await session.collect_until_final(2)
            await session.pump()

            batches = [[(u.role, u.content) for u in b] for b in log.for_call("call-1")]
            assert batches == [
                [("user", "hi")],
                [("agent", "I hear you. Go on."), ("user", "work stress")],
            ]
            assert session.metrics.get(M["transcript_log_append_total"]) == 2
        finally:
            await session.stop()

    asyncio.run(_run())
