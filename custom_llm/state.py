from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional, Sequence, Union

from .logs import log_event
from .metrics import M, Metrics
from .protocol import (
    InboundReminderRequired,
    InboundResponseRequired,
    InboundUpdateOnly,
    TranscriptUtterance,
)
from .transcript_log import TranscriptLog


logger = logging.getLogger(__name__)

TurnKind = Literal["response", "reminder"]
TranscriptEvent = Union[InboundResponseRequired, InboundReminderRequired, InboundUpdateOnly]


class SessionState(str, Enum):
    AWAITING_CONFIG = "AWAITING_CONFIG"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class CancelToken:
    """Cooperative cancellation flag checked between upstream reads and fragment yields."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


@dataclass(eq=False)
class GenerationHandle:
    response_id: int
    kind: TurnKind
    token: CancelToken = field(default_factory=CancelToken)
    task: Optional[asyncio.Task[None]] = None
    finished: bool = False

    @property
    def active(self) -> bool:
        return not self.finished and not self.token.cancelled

    def cancel(self) -> None:
        self.token.cancel()
        if self.task is not None and not self.task.done():
            self.task.cancel()

    def mark_finished(self) -> None:
        self.finished = True


class Transcript:
    """
    Call-ordered utterances as last reported by the platform.

    The platform resends the whole transcript-so-far on every event; observe() keeps
    that snapshot and reports the suffix that differs from what was held before.
    """

    def __init__(self) -> None:
        self._utterances: list[TranscriptUtterance] = []

    def __len__(self) -> int:
        return len(self._utterances)

    def snapshot(self) -> list[TranscriptUtterance]:
        return list(self._utterances)

    def observe(self, utterances: Sequence[TranscriptUtterance]) -> list[TranscriptUtterance]:
        incoming = list(utterances)
        first_diff = 0
        for held, new in zip(self._utterances, incoming):
            if held != new:
                break
            first_diff += 1
        self._utterances = incoming
        return incoming[first_diff:]


class CallSession:
    """
    Per-connection conversation state, owned by exactly one orchestrator.
    """

    def __init__(
        self,
        *,
        call_id: str,
        transcript_log: TranscriptLog,
        metrics: Metrics,
        log_close_timeout_ms: int = 1000,
    ) -> None:
        self.call_id = call_id
        self.transcript = Transcript()
        self.active: Optional[GenerationHandle] = None
        self._transcript_log = transcript_log
        self._metrics = metrics
        self._log_close_timeout_ms = int(log_close_timeout_ms)
        self._log_tasks: set[asyncio.Task[None]] = set()

    @property
    def pending_log_appends(self) -> int:
        return len(self._log_tasks)

    def append_and_get_snapshot(self, event: TranscriptEvent) -> list[TranscriptUtterance]:
        batch = self.transcript.observe(event.transcript)
        if batch:
            self._dispatch_log_append(batch)
        return self.transcript.snapshot()

    def _dispatch_log_append(self, batch: list[TranscriptUtterance]) -> None:
        task = asyncio.create_task(self._append_log(batch))
        self._log_tasks.add(task)
        task.add_done_callback(self._log_tasks.discard)

    async def _append_log(self, batch: list[TranscriptUtterance]) -> None:
        try:
            await self._transcript_log.append(self.call_id, batch)
            self._metrics.inc(M["transcript_log_append_total"], 1)
        except Exception as e:
            self._metrics.inc(M["transcript_log_error_total"], 1)
            log_event(
                logger,
                "transcript_log_append_failed",
                component="call_session",
                level=logging.WARNING,
                call_id=self.call_id,
                batch_size=len(batch),
                error=f"{type(e).__name__}: {e}",
            )

    def install(self, handle: GenerationHandle) -> Optional[GenerationHandle]:
        """Make handle the only active generation, cancelling whichever was running."""
        previous = self.active
        if previous is not None and previous.active:
            previous.cancel()
        self.active = handle
        return previous

    def release(self, handle: GenerationHandle) -> None:
        handle.mark_finished()
        if self.active is handle:
            self.active = None

    async def close(self) -> None:
        if self.active is not None:
            self.active.cancel()
            self.active = None
        if self._log_tasks:
            await asyncio.wait(set(self._log_tasks), timeout=max(0, self._log_close_timeout_ms) / 1000.0)
