from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .clock import Clock
from .config import ServerConfig
from .generator import Fragment, ResponseGenerator
from .logs import log_event
from .metrics import M, Metrics
from .protocol import (
    BEGIN_RESPONSE_ID,
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    InboundCallDetails,
    InboundPingPong,
    InboundReminderRequired,
    InboundResponseRequired,
    InboundUpdateOnly,
    OutboundConfig,
    OutboundEvent,
    OutboundPingPong,
    OutboundResponse,
    PlatformConfig,
    TranscriptUtterance,
    TurnRequest,
)
from .state import CallSession, GenerationHandle, SessionState, TurnKind
from .trace import TraceSink
from .transport_ws import InboundItem, OutboundEnvelope, ResponseGate, TransportClosed


logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Per-connection turn state machine: AWAITING_CONFIG -> OPEN -> CLOSED.

    The only owner of its CallSession. Inbound events are handled one at a time; each
    turn's generation runs as its own task and at most one is active.
    """

    def __init__(
        self,
        *,
        call_id: str,
        config: ServerConfig,
        clock: Clock,
        metrics: Metrics,
        trace: TraceSink,
        inbound_q: BoundedDequeQueue[InboundItem],
        outbound_q: BoundedDequeQueue[OutboundEnvelope],
        shutdown_evt: asyncio.Event,
        gate: ResponseGate,
        generator: ResponseGenerator,
        session: CallSession,
    ) -> None:
        self._call_id = call_id
        self._config = config
        self._clock = clock
        self._metrics = metrics
        self._trace = trace
        self._inbound_q = inbound_q
        self._outbound_q = outbound_q
        self._shutdown_evt = shutdown_evt
        self._gate = gate
        self._generator = generator
        self._session = session

        self._state = SessionState.AWAITING_CONFIG
        self._greeted = False
        self.close_code: int = CLOSE_NORMAL
        self.close_reason: str = ""

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> CallSession:
        return self._session

    async def _set_state(self, new_state: SessionState, *, reason: str) -> None:
        if self._state == new_state:
            return
        self._state = new_state
        await self._trace_event("session_state_transition", {"new": new_state.value, "reason": reason})

    async def _trace_event(self, event_type: str, payload: Optional[dict[str, Any]] = None) -> None:
        await self._trace.emit(
            t_ms=self._clock.now_ms(),
            call_id=self._call_id,
            response_id=self._gate.response_id,
            session_state=self._state.value,
            event_type=event_type,
            payload=payload,
        )

    # ---------------------------------------------------------------------
    # Session lifecycle
    # ---------------------------------------------------------------------

    async def start(self) -> None:
        cfg = PlatformConfig(
            auto_reconnect=self._config.auto_reconnect,
            call_details=self._config.call_details,
        )
        await self._enqueue_outbound(OutboundConfig(response_type="config", config=cfg))
        await self._set_state(SessionState.OPEN, reason="config_sent")

    async def run(self) -> None:
        try:
            await self.start()
            while not self._shutdown_evt.is_set():
                try:
                    item = await self._inbound_q.get_prefer(self._is_control_inbound)
                except QueueClosed:
                    await self.end_session(reason="queue_closed")
                    return
                if isinstance(item, TransportClosed):
                    await self.end_session(reason=item.reason, code=item.code)
                    return
                await self._handle_inbound_event(item)
            await self.end_session(reason="shutdown")
        except asyncio.CancelledError:
            await self.end_session(reason="orchestrator_cancelled")
            raise
        except Exception as e:
            log_event(
                logger,
                "orchestrator_failed",
                component="orchestrator",
                level=logging.ERROR,
                exc_info=True,
                call_id=self._call_id,
                error=f"{type(e).__name__}: {e}",
            )
            await self.end_session(reason="internal_error", code=CLOSE_INTERNAL_ERROR)

    async def end_session(self, *, reason: str, code: int = CLOSE_NORMAL) -> None:
        if self._state == SessionState.CLOSED:
            return
        self.close_code = int(code)
        self.close_reason = str(reason)
        safe_reason = "".join(ch if (ch.isalnum() or ch in "._-") else "_" for ch in str(reason))
        self._metrics.inc(f"{M['ws_close_reason_total']}.{safe_reason}", 1)
        log_event(
            logger,
            "session_closed",
            component="orchestrator",
            call_id=self._call_id,
            reason=reason,
            code=self.close_code,
            transcript_len=len(self._session.transcript),
        )

        await self._set_state(SessionState.CLOSED, reason=reason)
        await self._session.close()

        # Close queues (unblock reader/writer).
        await self._inbound_q.close()
        await self._outbound_q.close()
        self._shutdown_evt.set()

    # ---------------------------------------------------------------------
    # Inbound handling
    # ---------------------------------------------------------------------

    def _is_control_inbound(self, item: InboundItem) -> bool:
        return isinstance(item, (TransportClosed, InboundPingPong))

    async def _handle_inbound_event(self, ev: Any) -> None:
        if self._state != SessionState.OPEN:
            return

        if isinstance(ev, InboundPingPong):
            await self._enqueue_outbound(OutboundPingPong(response_type="ping_pong", timestamp=ev.timestamp))
            return

        if isinstance(ev, InboundCallDetails):
            await self._on_call_details(ev)
            return

        if isinstance(ev, InboundUpdateOnly):
            self._session.append_and_get_snapshot(ev)
            return

        if isinstance(ev, (InboundResponseRequired, InboundReminderRequired)):
            await self._on_turn_request(ev)
            return

    async def _on_call_details(self, ev: InboundCallDetails) -> None:
        call = ev.call
        log_event(
            logger,
            "call_details",
            component="orchestrator",
            call_id=self._call_id,
            agent_id=str(call.get("agent_id", "")),
            call_type=str(call.get("call_type", "")),
            from_number=str(call.get("from_number", "")),
            to_number=str(call.get("to_number", "")),
        )
        if self._greeted:
            return
        self._greeted = True
        if self._gate.response_id > BEGIN_RESPONSE_ID or self._session.active is not None:
            # A turn already started; the greeting would only be dropped by the gate.
            await self._trace_event("greeting_skipped", {"reason": "turn_in_progress"})
            return
        await self._emit_fragment(
            response_id=BEGIN_RESPONSE_ID,
            kind="response",
            generation=self._gate.generation,
            fragment=self._generator.begin_message(),
        )
        await self._trace_event("greeting_sent")

    async def _on_turn_request(self, ev: TurnRequest) -> None:
        kind: TurnKind = "reminder" if isinstance(ev, InboundReminderRequired) else "response"
        response_id = int(ev.response_id)
        # The transcript is recorded even for a stale request; the platform's snapshot is authoritative.
        snapshot = self._session.append_and_get_snapshot(ev)

        if response_id < self._gate.response_id:
            self._metrics.inc(M["turn_stale_request_total"], 1)
            log_event(
                logger,
                "turn_request_stale",
                component="orchestrator",
                call_id=self._call_id,
                kind=kind,
                response_id=response_id,
                current_response_id=self._gate.response_id,
            )
            return

        previous = self._session.active
        superseded = previous is not None and previous.active
        generation = self._gate.advance(response_id)
        dropped = await self._outbound_q.drop_where(lambda env: not self._gate.admits(env))
        if dropped:
            self._metrics.inc(M["stale_fragment_dropped_total"], dropped)

        handle = GenerationHandle(response_id=response_id, kind=kind)
        self._session.install(handle)
        if superseded and previous is not None:
            self._metrics.inc(M["turn_superseded_total"], 1)
            await self._trace_event(
                "turn_superseded",
                {"old_response_id": previous.response_id, "new_response_id": response_id},
            )

        self._metrics.inc(M["turn_started_total"], 1)
        await self._trace_event("turn_started", {"kind": kind, "transcript_len": len(snapshot)})
        handle.task = asyncio.create_task(self._run_generation(handle, generation, snapshot))

    async def _run_generation(
        self,
        handle: GenerationHandle,
        generation: int,
        snapshot: list[TranscriptUtterance],
    ) -> None:
        started_ms = self._clock.now_ms()
        first = True
        stream = self._generator.stream(snapshot, reminder=handle.kind == "reminder", token=handle.token)
        try:
            async for fragment in stream:
                if handle.token.cancelled:
                    break
                if first:
                    first = False
                    self._metrics.observe(M["first_fragment_latency_ms"], self._clock.now_ms() - started_ms)
                await self._emit_fragment(
                    response_id=handle.response_id,
                    kind=handle.kind,
                    generation=generation,
                    fragment=fragment,
                )
                if fragment.final:
                    await self._trace_event(
                        "turn_completed",
                        {"kind": handle.kind, "end_call": fragment.end_call},
                    )
                    break
        finally:
            await stream.aclose()
            self._session.release(handle)

    # ---------------------------------------------------------------------
    # Outbound helpers
    # ---------------------------------------------------------------------

    async def _emit_fragment(
        self,
        *,
        response_id: int,
        kind: TurnKind,
        generation: int,
        fragment: Fragment,
    ) -> None:
        msg = OutboundResponse(
            response_type=kind,
            response_id=response_id,
            content=fragment.content,
            content_complete=fragment.final,
            end_call=True if fragment.end_call else None,
        )
        await self._enqueue_outbound(msg, generation=generation)

    async def _enqueue_outbound(self, msg: OutboundEvent, *, generation: Optional[int] = None) -> None:
        if self._shutdown_evt.is_set():
            return
        env = OutboundEnvelope(msg=msg, generation=generation)

        def evict(existing: OutboundEnvelope) -> bool:
            # Only fragments the gate would drop anyway are safe to evict.
            return not self._gate.admits(existing)

        ok = await self._outbound_q.put(env, evict=evict)
        if not ok and generation is None:
            # Control replies (ping echoes) outrank speech: displace the oldest fragment.
            ok = await self._outbound_q.put(env, evict=lambda existing: existing.generation is not None)
            if ok:
                self._metrics.inc(M["outbound_queue_dropped_total"], 1)
        if not ok:
            self._metrics.inc(M["outbound_queue_dropped_total"], 1)
            log_event(
                logger,
                "outbound_dropped",
                component="orchestrator",
                level=logging.WARNING,
                call_id=self._call_id,
                response_type=str(getattr(msg, "response_type", "")),
            )
