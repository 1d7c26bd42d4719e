from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .clock import Clock
from .dispatcher import SynthesisResult
from .engine import ReconciliationEngine
from .logs import log_event
from .metrics import M, Metrics
from .persistence import ArchiveError, CallRecord, LocalCallArchive
from .transcript import ItemKind
from .transport_ws import InboundItem, RawEvent, SynthesisCompleted, TransportClosed

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionResult:
    call_id: str
    close_reason: str
    record: CallRecord
    saved: bool = False
    error: Optional[str] = None


class CallSession:
    """
    One simulated call: a single consumer over the session queue.

    Raw events, synthesis completions and the close marker all arrive on the same queue,
    so every store mutation happens on this loop in delivery order. On close, in-flight
    synthesis gets `drain_timeout_ms` to finish, then the call is archived once.
    """

    def __init__(
        self,
        *,
        call_id: str,
        engine: ReconciliationEngine,
        inbound_q: BoundedDequeQueue[InboundItem],
        clock: Clock,
        metrics: Metrics,
        archive: Optional[LocalCallArchive] = None,
        scenario: Optional[str] = None,
        drain_timeout_ms: int = 0,
    ) -> None:
        self.call_id = call_id
        self._engine = engine
        self._q = inbound_q
        self._clock = clock
        self._metrics = metrics
        self._archive = archive
        self._scenario = scenario
        self._drain_timeout_ms = int(drain_timeout_ms)
        self._stopped = False
        self._started_ms = 0
        engine.dispatcher.set_result_sink(self._post_result)

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine

    async def run(self) -> SessionResult:
        self._started_ms = self._clock.now_ms()
        self._engine.start()
        log_event(logger, "session_started", call_id=self.call_id, agent=self._engine.active_agent or "")

        close_reason = "queue_closed"
        while True:
            try:
                item = await self._q.get()
            except QueueClosed:
                break
            if isinstance(item, TransportClosed):
                close_reason = item.reason
                break
            if isinstance(item, SynthesisCompleted):
                self._engine.on_synthesis_result(item.result)
                continue
            if isinstance(item, RawEvent):
                self._handle(item)

        return await self._teardown(close_reason)

    def _handle(self, item: RawEvent) -> None:
        try:
            self._engine.handle_event(item.payload)
        except Exception:
            # One bad event must not end the call.
            self._metrics.inc(M["events_dropped_total"], 1)
            logger.exception("event_failed call_id=%s", self.call_id)

    async def _post_result(self, result: SynthesisResult) -> None:
        if self._stopped:
            # Loop has exited; teardown is draining, nothing else touches the store.
            self._engine.on_synthesis_result(result)
            return
        ok = await self._q.put(SynthesisCompleted(result=result))
        if ok:
            return
        if self._stopped or self._q.closed():
            self._engine.on_synthesis_result(result)
            return
        self._metrics.inc(M["queue_dropped_total"], 1)
        log_event(logger, "synthesis_result_dropped", level=logging.WARNING, item_id=result.item_id)

    def build_record(self) -> CallRecord:
        store = self._engine.store
        dispatcher = self._engine.dispatcher
        ended_ms = self._clock.now_ms()
        has_messages = any(item.kind == ItemKind.MESSAGE for item in store)
        return CallRecord(
            call_id=self.call_id,
            call_status="completed" if has_messages else "cancelled",
            scenario=self._scenario,
            agents=list(dispatcher.roster),
            active_agent=dispatcher.active_agent,
            start_time_ms=self._started_ms,
            end_time_ms=ended_ms,
            duration_s=max(0, ended_ms - self._started_ms) // 1000,
            items=store.snapshot(),
            metrics=self._metrics.call_summary(),
        )

    async def _teardown(self, close_reason: str) -> SessionResult:
        self._stopped = True
        await self._q.close()
        await self._engine.dispatcher.drain(self._drain_timeout_ms)
        self._metrics.set(M["queue_high_water"], self._q.high_water)

        record = self.build_record()
        log_event(
            logger,
            "session_closed",
            call_id=self.call_id,
            reason=close_reason,
            items=len(self._engine.store),
            audio_chunks=len(self._engine.dispatcher.audio),
            queue_high_water=self._q.high_water,
            queue_refused=self._q.refused,
            queue_evicted=self._q.evicted,
        )
        if self._archive is None:
            return SessionResult(call_id=self.call_id, close_reason=close_reason, record=record)

        try:
            saved = self._archive.save(
                record,
                self._engine.store.transcript_text(),
                [audio for _, audio in self._engine.dispatcher.audio],
            )
        except ArchiveError as e:
            self._metrics.inc(M["archive_failed_total"], 1)
            log_event(logger, "archive_failed", level=logging.ERROR, call_id=self.call_id, error=str(e)[:200])
            return SessionResult(
                call_id=self.call_id,
                close_reason=close_reason,
                record=record,
                error=str(e),
            )
        self._metrics.inc(M["archive_saved_total"], 1)
        return SessionResult(call_id=self.call_id, close_reason=close_reason, record=saved, saved=True)
