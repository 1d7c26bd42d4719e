from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Metrics:
    """
    Per-call counters, gauges and latency samples.

    One instance is shared by everything a session owns; the archived CallRecord
    carries `call_summary()`.
    """

    counters: dict[str, int] = field(default_factory=dict)
    gauges: dict[str, int] = field(default_factory=dict)
    samples: dict[str, list[int]] = field(default_factory=dict)

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + int(value)

    def set(self, name: str, value: int) -> None:
        self.gauges[name] = int(value)

    def observe(self, name: str, value: int) -> None:
        self.samples.setdefault(name, []).append(max(0, int(value)))

    def get(self, name: str) -> int:
        return self.counters.get(name, 0)

    def get_gauge(self, name: str) -> int:
        return self.gauges.get(name, 0)

    def latency(self, name: str) -> dict[str, int]:
        # Nearest-rank percentiles; empty when nothing was observed.
        values = sorted(self.samples.get(name, ()))
        if not values:
            return {}
        last = len(values) - 1
        return {
            "count": len(values),
            "p50": values[round(0.5 * last)],
            "p95": values[round(0.95 * last)],
            "max": values[-1],
        }

    def call_summary(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(sorted(self.counters.items()))
        out.update(sorted(self.gauges.items()))
        for name in sorted(self.samples):
            out[name] = self.latency(name)
        return out


M = {
    # Inbound events
    "events_received_total": "events.received_total",
    "events_dropped_total": "events.dropped_total",
    "events_unknown_type_total": "events.unknown_type_total",
    "frames_bad_json_total": "frames.bad_json_total",
    "frames_too_large_total": "frames.too_large_total",
    "queue_dropped_total": "session.queue_dropped_total",
    "queue_high_water": "session.queue_high_water",
    # Store
    "items_created_total": "store.items_created_total",
    "unknown_item_total": "store.unknown_item_total",
    "status_regression_blocked_total": "lifecycle.status_regression_blocked_total",
    "guardrail_default_pass_total": "lifecycle.guardrail_default_pass_total",
    "guardrail_tripped_total": "lifecycle.guardrail_tripped_total",
    "items_current": "store.items_current",
    # Side effects
    "synthesis_dispatched_total": "synthesis.dispatched_total",
    "synthesis_skipped_duplicate_total": "synthesis.skipped_duplicate_total",
    "synthesis_skipped_empty_total": "synthesis.skipped_empty_total",
    "synthesis_unavailable_total": "synthesis.unavailable_total",
    "synthesis_failed_total": "synthesis.failed_total",
    "synthesis_discarded_total": "synthesis.discarded_total",
    "synthesis_latency_ms": "synthesis.latency_ms",
    "tool_calls_total": "tools.calls_total",
    "handoffs_total": "agents.handoffs_total",
    "handoffs_unknown_target_total": "agents.handoffs_unknown_target_total",
    # Teardown
    "archive_saved_total": "archive.saved_total",
    "archive_failed_total": "archive.failed_total",
}
