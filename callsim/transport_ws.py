from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Any, Optional, Protocol, Union

from .bounded_queue import BoundedDequeQueue
from .clock import Clock, RealClock
from .dispatcher import SynthesisResult
from .logs import log_event
from .metrics import M, Metrics

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def recv_text(self) -> str: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self, *, code: int = 1000, reason: str = "") -> None: ...


@dataclass(frozen=True, slots=True)
class RawEvent:
    payload: Any
    received_ms: int = 0


@dataclass(frozen=True, slots=True)
class SynthesisCompleted:
    result: SynthesisResult


@dataclass(frozen=True, slots=True)
class TransportClosed:
    reason: str


InboundItem = Union[RawEvent, SynthesisCompleted, TransportClosed]


async def signal_closed(inbound_q: BoundedDequeQueue[InboundItem], reason: str) -> None:
    """Deliver the close marker; a full queue is closed instead so the loop drains and exits."""
    ok = await inbound_q.put(TransportClosed(reason=reason))
    if not ok:
        await inbound_q.close()


async def socket_reader(
    *,
    transport: Transport,
    inbound_q: BoundedDequeQueue[InboundItem],
    metrics: Metrics,
    shutdown_evt: asyncio.Event,
    clock: Optional[Clock] = None,
    max_frame_bytes: int = 262_144,
    call_id: str | None = None,
) -> None:
    """
    Reads WS text frames -> JSON decode -> session queue.

    Oversized and non-JSON frames are dropped and counted; they never end the session.
    Schema validation happens later in the normalizer so unknown event types stay cheap.
    Never blocks on a full queue: the frame is dropped and counted.
    """
    clock = clock or RealClock()
    reason = "shutdown"
    try:
        while not shutdown_evt.is_set():
            raw = await transport.recv_text()
            size = len(raw.encode("utf-8"))
            if int(max_frame_bytes) > 0 and size > int(max_frame_bytes):
                metrics.inc(M["frames_too_large_total"], 1)
                log_event(
                    logger,
                    "frame_dropped",
                    level=logging.WARNING,
                    call_id=call_id or "",
                    reason="frame_too_large",
                    size_bytes=size,
                )
                continue
            try:
                obj = json.loads(raw)
            except JSONDecodeError:
                metrics.inc(M["frames_bad_json_total"], 1)
                log_event(logger, "frame_dropped", level=logging.WARNING, call_id=call_id or "", reason="bad_json")
                continue

            ok = await inbound_q.put(RawEvent(payload=obj, received_ms=clock.now_ms()))
            if not ok:
                metrics.inc(M["queue_dropped_total"], 1)
                event_type = obj.get("type") if isinstance(obj, dict) else None
                log_event(
                    logger,
                    "frame_dropped",
                    level=logging.WARNING,
                    call_id=call_id or "",
                    reason="queue_full",
                    event_type=str(event_type),
                )
    except asyncio.CancelledError:
        raise
    except Exception as e:
        # Starlette raises WebSocketDisconnect here on a normal client hangup.
        reason = "disconnect"
        log_event(logger, "transport_closed", call_id=call_id or "", error=type(e).__name__)
    await signal_closed(inbound_q, reason)
