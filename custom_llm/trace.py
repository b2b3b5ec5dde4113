from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class TraceEvent:
    seq: int
    t_ms: int
    call_id: str
    response_id: int
    session_state: str
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)


class TraceSink:
    """In-memory, per-session record of orchestrator transitions."""

    def __init__(self, *, max_events: int = 20000) -> None:
        self._seq = 0
        self._events: deque[TraceEvent] = deque(maxlen=int(max_events))

    def of_type(self, event_type: str) -> list[TraceEvent]:
        return [ev for ev in self._events if ev.event_type == event_type]

    async def emit(
        self,
        *,
        t_ms: int,
        call_id: str,
        response_id: int,
        session_state: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self._seq += 1
        ev = TraceEvent(
            seq=self._seq,
            t_ms=int(t_ms),
            call_id=call_id,
            response_id=int(response_id),
            session_state=session_state,
            event_type=event_type,
            payload=dict(payload or {}),
        )
        self._events.append(ev)

