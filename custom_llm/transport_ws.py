from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Optional, Protocol, Union

from pydantic import ValidationError

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .clock import Clock
from .logs import log_event
from .metrics import M, Metrics
from .protocol import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    CLOSE_PROTOCOL_ERROR,
    CLOSE_UNSUPPORTED_DATA,
    InboundCallDetails,
    InboundEvent,
    InboundPingPong,
    InboundReminderRequired,
    InboundResponseRequired,
    InboundUpdateOnly,
    OutboundEvent,
    dumps_outbound,
    parse_inbound_obj,
)


logger = logging.getLogger(__name__)


class TransportDisconnected(Exception):
    """Raised by Transport.recv() once the remote side has closed the socket."""

    def __init__(self, code: int = CLOSE_NORMAL) -> None:
        super().__init__(f"websocket disconnected (code={code})")
        self.code = int(code)


class Transport(Protocol):
    async def recv(self) -> Union[str, bytes]: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self, *, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


@dataclass(frozen=True, slots=True)
class TransportClosed:
    reason: str
    code: int = CLOSE_NORMAL


InboundItem = Union[InboundEvent, TransportClosed]


@dataclass(frozen=True, slots=True)
class OutboundEnvelope:
    """
    Internal-only wrapper carrying the generation a message belongs to.

    Only `msg` is serialized onto the wire. Envelopes with generation=None (config,
    ping_pong) are never gated.
    """

    msg: OutboundEvent
    generation: Optional[int] = None


class ResponseGate:
    """
    The response id and generation the writer is currently allowed to send.

    Advanced synchronously by the orchestrator before a new generation starts, so the
    writer drops anything older even if it was produced before the supersession. The
    changed event also interrupts a speech send that is still blocked on the socket.
    """

    def __init__(self, *, response_id: int = 0, generation: int = 0) -> None:
        self.response_id = int(response_id)
        self.generation = int(generation)
        self._changed_evt = asyncio.Event()

    def advance(self, response_id: int) -> int:
        self.response_id = int(response_id)
        self.generation += 1
        # Wake any in-flight writer send, then swap the event to keep it edge-triggered.
        self._changed_evt.set()
        self._changed_evt = asyncio.Event()
        return self.generation

    def changed_event(self) -> asyncio.Event:
        return self._changed_evt

    def admits(self, env: OutboundEnvelope) -> bool:
        return env.generation is None or env.generation == self.generation


async def socket_reader(
    *,
    transport: Transport,
    inbound_q: BoundedDequeQueue[InboundItem],
    metrics: Metrics,
    shutdown_evt: asyncio.Event,
    max_frame_bytes: int = 262_144,
    structured_logs: bool = True,
    call_id: str = "",
) -> None:
    """
    Reads WS frames -> JSON decode -> protocol validation -> inbound bounded queue.

    Any frame that is not a known text message ends the session: the reader queues a
    TransportClosed carrying the close code and stops reading.
    """

    def _log(event: str, level: int = logging.INFO, **payload: object) -> None:
        if structured_logs:
            log_event(logger, event, component="ws_inbound", level=level, call_id=call_id, **payload)

    async def _close(reason: str, code: int) -> None:
        await inbound_q.put(TransportClosed(reason=reason, code=code))

    try:
        while not shutdown_evt.is_set():
            raw = await transport.recv()
            if isinstance(raw, (bytes, bytearray)):
                _log("frame_rejected", logging.WARNING, reason="BINARY_FRAME", size_bytes=len(raw))
                await _close("BINARY_FRAME", CLOSE_UNSUPPORTED_DATA)
                return

            size_bytes = len(raw.encode("utf-8"))
            if int(max_frame_bytes) > 0 and size_bytes > int(max_frame_bytes):
                _log("frame_rejected", logging.WARNING, reason="FRAME_TOO_LARGE", size_bytes=size_bytes)
                await _close("FRAME_TOO_LARGE", CLOSE_PROTOCOL_ERROR)
                return

            try:
                obj = json.loads(raw)
            except JSONDecodeError:
                _log("frame_rejected", logging.WARNING, reason="BAD_JSON", size_bytes=size_bytes)
                await _close("BAD_JSON", CLOSE_PROTOCOL_ERROR)
                return

            try:
                ev = parse_inbound_obj(obj)
            except ValidationError as e:
                interaction_type = str(obj.get("interaction_type", "")) if isinstance(obj, dict) else ""
                _log(
                    "frame_rejected",
                    logging.WARNING,
                    reason="BAD_SCHEMA",
                    interaction_type=interaction_type,
                    errors=e.error_count(),
                )
                await _close("BAD_SCHEMA", CLOSE_PROTOCOL_ERROR)
                return

            _log("frame_accepted", logging.DEBUG, interaction_type=ev.interaction_type, size_bytes=size_bytes)

            # Inbound overflow policy (bounded):
            # - update_only: only the newest snapshot matters, drop older queued ones first
            # - turn requests: evict update_only/ping/call_details before giving up
            # - ping_pong/call_details: evict update_only
            if isinstance(ev, InboundUpdateOnly):
                await inbound_q.drop_where(lambda x: isinstance(x, InboundUpdateOnly))
                ok = await inbound_q.put(ev)
            elif isinstance(ev, (InboundResponseRequired, InboundReminderRequired)):
                ok = await inbound_q.put(
                    ev,
                    evict=lambda x: isinstance(x, (InboundUpdateOnly, InboundPingPong, InboundCallDetails)),
                )
                if not ok:
                    ok = await inbound_q.put(
                        ev,
                        evict=lambda x: isinstance(x, (InboundResponseRequired, InboundReminderRequired))
                        and x.response_id < ev.response_id,
                    )
            else:
                ok = await inbound_q.put(ev, evict=lambda x: isinstance(x, InboundUpdateOnly))
            if not ok:
                metrics.inc(M["inbound_queue_dropped_total"], 1)
                _log("frame_dropped", logging.WARNING, reason="INBOUND_QUEUE_FULL", interaction_type=ev.interaction_type)
    except TransportDisconnected as e:
        _log("remote_closed", code=e.code)
        await _close("REMOTE_CLOSED", CLOSE_NORMAL)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        _log("read_failed", logging.ERROR, error=f"{type(e).__name__}: {e}")
        await _close("TRANSPORT_READ_ERROR", CLOSE_INTERNAL_ERROR)


async def socket_writer(
    *,
    transport: Transport,
    outbound_q: BoundedDequeQueue[OutboundEnvelope],
    metrics: Metrics,
    shutdown_evt: asyncio.Event,
    gate: ResponseGate,
    clock: Clock,
    inbound_q: Optional[BoundedDequeQueue[InboundItem]] = None,
    ws_write_timeout_ms: int = 400,
    ws_max_consecutive_write_timeouts: int = 2,
    call_id: str = "",
) -> None:
    """
    Single-writer rule: the only task that writes to the WS.

    Messages leave in the order they were queued. Speech envelopes from a generation the
    gate no longer admits are dropped instead of sent.
    """

    async def _signal_fatal(reason: str, code: int) -> None:
        if inbound_q is not None:
            await inbound_q.put(TransportClosed(reason=reason, code=code))

    consecutive_write_timeouts = 0
    fatal = False

    async def _send_payload(env: OutboundEnvelope) -> bool:
        nonlocal consecutive_write_timeouts, fatal
        try:
            await clock.run_with_timeout(
                transport.send_text(dumps_outbound(env.msg)),
                timeout_ms=max(1, int(ws_write_timeout_ms)),
            )
            consecutive_write_timeouts = 0
            return True
        except TimeoutError:
            metrics.inc(M["ws_write_timeout_total"], 1)
            consecutive_write_timeouts += 1
            log_event(
                logger,
                "write_timeout",
                component="ws_outbound",
                level=logging.WARNING,
                call_id=call_id,
                response_type=str(getattr(env.msg, "response_type", "")),
                consecutive=consecutive_write_timeouts,
            )
            if consecutive_write_timeouts >= max(1, int(ws_max_consecutive_write_timeouts)):
                await _signal_fatal("WRITE_TIMEOUT_BACKPRESSURE", CLOSE_INTERNAL_ERROR)
                fatal = True
            return False

    try:
        while not shutdown_evt.is_set() and not fatal:
            try:
                env = await outbound_q.get()
            except QueueClosed:
                return

            if not gate.admits(env):
                metrics.inc(M["stale_fragment_dropped_total"], 1)
                continue

            if env.generation is None:
                await _send_payload(env)
                continue

            # Speech sends race the gate: a supersession while the socket is blocked drops the fragment.
            send_task = asyncio.create_task(_send_payload(env))
            gate_task = asyncio.create_task(gate.changed_event().wait())
            done, _ = await asyncio.wait({send_task, gate_task}, return_when=asyncio.FIRST_COMPLETED)
            if send_task not in done:
                send_task.cancel()
                gate_task.cancel()
                await asyncio.gather(send_task, gate_task, return_exceptions=True)
                metrics.inc(M["stale_fragment_dropped_total"], 1)
                continue
            gate_task.cancel()
            await asyncio.gather(gate_task, return_exceptions=True)
            send_task.result()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log_event(
            logger,
            "write_failed",
            component="ws_outbound",
            level=logging.ERROR,
            call_id=call_id,
            error=f"{type(e).__name__}: {e}",
        )
        await _signal_fatal("TRANSPORT_WRITE_ERROR", CLOSE_INTERNAL_ERROR)
