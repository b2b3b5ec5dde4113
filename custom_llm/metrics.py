from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Metrics:
    counters: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, list[int]] = field(default_factory=dict)

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + value

    def observe(self, name: str, value: int) -> None:
        self.histograms.setdefault(name, []).append(int(value))

    def get(self, name: str) -> int:
        return int(self.counters.get(name, 0))

    def get_hist(self, name: str) -> list[int]:
        return list(self.histograms.get(name, []))

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "histograms": {k: list(v) for k, v in self.histograms.items()},
        }


M = {
    # Turn taking
    "turn_started_total": "turn.started_total",
    "turn_superseded_total": "turn.superseded_total",
    "turn_stale_request_total": "turn.stale_request_total",
    "stale_fragment_dropped_total": "turn.stale_fragment_dropped_total",
    "first_fragment_latency_ms": "turn.first_fragment_latency_ms",
    # Generation
    "generation_error_total": "generation.error_total",
    "tool_calls_total": "generation.tool_calls_total",
    "tool_failures_total": "generation.tool_failures_total",
    "end_call_total": "generation.end_call_total",
    # Transcript log
    "transcript_log_append_total": "transcript_log.append_total",
    "transcript_log_error_total": "transcript_log.error_total",
    # Transport
    "inbound_queue_dropped_total": "inbound.queue_dropped_total",
    "outbound_queue_dropped_total": "outbound.queue_dropped_total",
    "ws_write_timeout_total": "ws.write_timeout_total",
    "ws_close_reason_total": "ws.close_reason_total",
}
