from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from .clock import Clock
from .logs import log_event
from .metrics import M, Metrics
from .tts import Synthesizer
from .voices import VoiceResolver

logger = logging.getLogger(__name__)

_HANDOFF_PAT = re.compile(r"^transfer_to_(.+)$")


def handoff_target(tool_name: str) -> Optional[str]:
    m = _HANDOFF_PAT.match(str(tool_name or "").strip())
    if m is None:
        return None
    return m.group(1)


def match_roster(target: str, roster: Sequence[str]) -> Optional[str]:
    want = target.strip().lower()
    for name in roster:
        if name.strip().lower() == want:
            return name
    return None


@dataclass(frozen=True, slots=True)
class SynthesisResult:
    item_id: str
    voice_id: str
    audio: bytes = b""
    ok: bool = True
    error: str = ""
    latency_ms: int = 0

    @property
    def unavailable(self) -> bool:
        return self.ok and not self.audio


@dataclass(frozen=True, slots=True)
class ToolCallDecision:
    first_seen: bool
    handoff_to: Optional[str] = None


ResultSink = Callable[[SynthesisResult], Awaitable[None]]


class SideEffectDispatcher:
    """
    Exactly-once external actions for one session.

    Synthesis:
    - at most one synthesize() call per item id for the session lifetime;
    - the id is recorded as dispatched before the task is scheduled, so two events for
      the same id in one tick cannot both pass the check;
    - results are handed to `on_result` (the session posts them back onto its event
      queue); without a sink they are recorded directly.

    Tool calls:
    - each tool-call id is decided once (own seen-set, independent of synthesis);
    - transfer_to_<name> switches the active agent when <name> is a roster member
      (case-insensitive) other than the current one.
    """

    def __init__(
        self,
        *,
        synthesizer: Optional[Synthesizer],
        voices: VoiceResolver,
        roster: Sequence[str],
        clock: Clock,
        metrics: Optional[Metrics] = None,
        active_agent: Optional[str] = None,
        timeout_ms: int = 15000,
        on_result: Optional[ResultSink] = None,
    ) -> None:
        self._synth = synthesizer
        self._voices = voices
        self._roster = tuple(roster)
        self._clock = clock
        self._metrics = metrics if metrics is not None else Metrics()
        self._active_agent = active_agent if active_agent is not None else (self._roster[0] if self._roster else None)
        self._root_agent = self._active_agent
        self._timeout_ms = int(timeout_ms)
        self._on_result = on_result

        self._dispatched: set[str] = set()
        self._seen_tool_calls: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._audio: list[tuple[str, bytes]] = []
        self._closed = False

    @property
    def active_agent(self) -> Optional[str]:
        return self._active_agent

    @property
    def root_agent(self) -> Optional[str]:
        # Voice follows the agent the session started with, not later handoffs.
        return self._root_agent

    @property
    def roster(self) -> tuple[str, ...]:
        return self._roster

    @property
    def dispatched_ids(self) -> frozenset[str]:
        return frozenset(self._dispatched)

    @property
    def audio(self) -> list[tuple[str, bytes]]:
        return list(self._audio)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def set_result_sink(self, sink: Optional[ResultSink]) -> None:
        self._on_result = sink

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    def request_synthesis(self, item_id: str, text: str) -> bool:
        if self._closed:
            return False
        if item_id in self._dispatched:
            self._metrics.inc(M["synthesis_skipped_duplicate_total"], 1)
            return False
        synth = self._synth
        if synth is None:
            return False
        spoken = (text or "").strip()
        if not spoken:
            # Not marked: a later record for the same id may still carry text.
            self._metrics.inc(M["synthesis_skipped_empty_total"], 1)
            log_event(logger, "synthesis_skipped", level=logging.DEBUG, item_id=item_id, reason="empty_text")
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log_event(logger, "synthesis_skipped", level=logging.WARNING, item_id=item_id, reason="no_event_loop")
            return False

        voice_id = self._voices.resolve(self._root_agent)
        self._dispatched.add(item_id)
        task = loop.create_task(self._run(synth, item_id, spoken, voice_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._metrics.inc(M["synthesis_dispatched_total"], 1)
        log_event(logger, "synthesis_dispatched", item_id=item_id, voice_id=voice_id, chars=len(spoken))
        return True

    async def _run(self, synth: Synthesizer, item_id: str, text: str, voice_id: str) -> None:
        started = self._clock.now_ms()
        try:
            audio = await self._clock.run_with_timeout(synth.synthesize(text, voice_id), self._timeout_ms)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Speech is best-effort; the transcript is already correct without it.
            result = SynthesisResult(item_id=item_id, voice_id=voice_id, ok=False, error=type(e).__name__)
            log_event(
                logger,
                "synthesis_failed",
                level=logging.WARNING,
                item_id=item_id,
                error=type(e).__name__,
                detail=str(e)[:200],
            )
        else:
            result = SynthesisResult(
                item_id=item_id,
                voice_id=voice_id,
                audio=bytes(audio or b""),
                latency_ms=max(0, self._clock.now_ms() - started),
            )
        if self._on_result is not None:
            await self._on_result(result)
        else:
            self.record_result(result)

    def record_result(self, result: SynthesisResult) -> None:
        """Apply a finished synthesis to session state; runs on the session's event path."""
        if self._closed:
            self._metrics.inc(M["synthesis_discarded_total"], 1)
            return
        if not result.ok:
            self._metrics.inc(M["synthesis_failed_total"], 1)
            return
        if result.unavailable:
            self._metrics.inc(M["synthesis_unavailable_total"], 1)
            log_event(logger, "synthesis_unavailable", item_id=result.item_id)
            return
        self._metrics.observe(M["synthesis_latency_ms"], result.latency_ms)
        self._audio.append((result.item_id, result.audio))

    async def drain(self, timeout_ms: int = 0) -> None:
        """Wait for in-flight synthesis; anything still running after timeout_ms is cancelled."""
        pending = set(self._tasks)
        if pending and timeout_ms > 0:
            try:
                await self._clock.run_with_timeout(
                    asyncio.gather(*pending, return_exceptions=True),
                    timeout_ms,
                )
            except TimeoutError:
                pass
        await self.close()

    async def close(self) -> None:
        self._closed = True
        pending = [t for t in self._tasks if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Tool calls / handoff
    # ------------------------------------------------------------------

    def handle_tool_call(self, item_id: str, tool_name: str) -> ToolCallDecision:
        if item_id in self._seen_tool_calls:
            return ToolCallDecision(first_seen=False)
        self._seen_tool_calls.add(item_id)
        self._metrics.inc(M["tool_calls_total"], 1)

        target = handoff_target(tool_name)
        if target is None:
            return ToolCallDecision(first_seen=True)
        match = match_roster(target, self._roster)
        if match is None:
            self._metrics.inc(M["handoffs_unknown_target_total"], 1)
            log_event(logger, "handoff_ignored", level=logging.WARNING, tool=tool_name, reason="unknown_target")
            return ToolCallDecision(first_seen=True)
        if match == self._active_agent:
            return ToolCallDecision(first_seen=True)

        previous = self._active_agent
        self._active_agent = match
        self._metrics.inc(M["handoffs_total"], 1)
        log_event(logger, "agent_handoff", previous=previous, active=match, item_id=item_id)
        return ToolCallDecision(first_seen=True, handoff_to=match)
