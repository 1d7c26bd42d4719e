from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from .breadcrumbs import BreadcrumbEmitter
from .clock import Clock
from .config import TRANSCRIBING_PLACEHOLDER
from .dispatcher import SideEffectDispatcher, SynthesisResult
from .lifecycle import advance_status, is_regression, merge_guardrail, pending_guardrail
from .logs import log_event
from .metrics import M, Metrics
from .normalizer import (
    AppendDelta,
    DetectedToolCall,
    EmitBreadcrumb,
    EventNormalizer,
    Op,
    ReplaceFinal,
    RequestSynthesis,
    SetGuardrail,
    SetStatus,
    StartItem,
)
from .transcript import ItemKind, ItemStatus, Role, TranscriptItem, TranscriptStore
from .tts import Synthesizer
from .voices import VoiceResolver

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """
    Applies normalized operations to the transcript store, in arrival order.

    Ordering and idempotence rules:
    - the first sighting of an id creates the item (implicit seed), whatever op it is;
    - a placeholder seed is replaced by the first real text, never concatenated;
    - status only advances; guardrail verdicts follow merge_guardrail();
    - new messages start IN_PROGRESS;
    - SetStatus/SetGuardrail without an id target their first known candidate, else the
      latest assistant message; guardrail verdicts only land on assistant messages;
    - side effects go through the dispatcher, which owns the exactly-once bookkeeping.
    """

    def __init__(
        self,
        *,
        store: TranscriptStore,
        normalizer: EventNormalizer,
        dispatcher: SideEffectDispatcher,
        breadcrumbs: BreadcrumbEmitter,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self._store = store
        self._normalizer = normalizer
        self._dispatcher = dispatcher
        self._breadcrumbs = breadcrumbs
        self._metrics = metrics if metrics is not None else Metrics()
        # Ids whose content is still the placeholder seed.
        self._placeholders: set[str] = set()

    @classmethod
    def create(
        cls,
        *,
        session_id: str,
        clock: Clock,
        roster: Sequence[str],
        synthesizer: Optional[Synthesizer] = None,
        voices: Optional[VoiceResolver] = None,
        placeholder: str = TRANSCRIBING_PLACEHOLDER,
        synthesis_timeout_ms: int = 15000,
        metrics: Optional[Metrics] = None,
    ) -> "ReconciliationEngine":
        metrics = metrics if metrics is not None else Metrics()
        store = TranscriptStore(clock=clock, metrics=metrics)
        return cls(
            store=store,
            normalizer=EventNormalizer(placeholder=placeholder, metrics=metrics),
            dispatcher=SideEffectDispatcher(
                synthesizer=synthesizer,
                voices=voices or VoiceResolver(),
                roster=roster,
                clock=clock,
                metrics=metrics,
                timeout_ms=synthesis_timeout_ms,
            ),
            breadcrumbs=BreadcrumbEmitter(store=store, session_id=session_id),
            metrics=metrics,
        )

    @property
    def store(self) -> TranscriptStore:
        return self._store

    @property
    def dispatcher(self) -> SideEffectDispatcher:
        return self._dispatcher

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def active_agent(self) -> Optional[str]:
        return self._dispatcher.active_agent

    def start(self) -> None:
        agent = self._dispatcher.active_agent
        if agent:
            self._breadcrumbs.agent(agent, reason="session_start")

    def handle_event(self, raw: Any) -> list[Op]:
        ops = self._normalizer.normalize(raw)
        for op in ops:
            self.apply(op)
        return ops

    def on_synthesis_result(self, result: SynthesisResult) -> None:
        self._dispatcher.record_result(result)

    def apply(self, op: Op) -> None:
        if isinstance(op, StartItem):
            self._start_item(op)
        elif isinstance(op, AppendDelta):
            self._append_delta(op)
        elif isinstance(op, ReplaceFinal):
            self._replace_final(op)
        elif isinstance(op, SetStatus):
            self._set_status(op)
        elif isinstance(op, SetGuardrail):
            self._set_guardrail(op)
        elif isinstance(op, RequestSynthesis):
            self._dispatcher.request_synthesis(op.item_id, op.text)
        elif isinstance(op, DetectedToolCall):
            self._tool_call(op)
        elif isinstance(op, EmitBreadcrumb):
            self._breadcrumbs.emit(op.title, op.payload)
        else:
            raise TypeError(f"unsupported op: {type(op).__name__}")

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def _seed(self, item_id: str, *, role: Role, text: str, placeholder: bool) -> tuple[TranscriptItem, bool]:
        item, created = self._store.upsert(
            item_id,
            kind=ItemKind.MESSAGE,
            role=role,
            content=text,
            status=ItemStatus.IN_PROGRESS,
            guardrail=pending_guardrail() if role == "assistant" else None,
        )
        if created and placeholder:
            self._placeholders.add(item_id)
        return item, created

    def _start_item(self, op: StartItem) -> None:
        self._seed(op.item_id, role=op.role, text=op.initial_text, placeholder=op.placeholder)

    def _append_delta(self, op: AppendDelta) -> None:
        self._seed(op.item_id, role=op.role, text=op.seed_text, placeholder=op.seed_is_placeholder)
        if op.item_id in self._placeholders:
            self._placeholders.discard(op.item_id)
            self._store.replace_content(op.item_id, op.delta)
            return
        self._store.append_content(op.item_id, op.delta)

    def _replace_final(self, op: ReplaceFinal) -> None:
        _, created = self._seed(op.item_id, role=op.role, text=op.final_text, placeholder=False)
        self._placeholders.discard(op.item_id)
        if not created:
            self._store.replace_content(op.item_id, op.final_text)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _target(self, item_id: Optional[str], *, op: str, candidates: Sequence[str] = ()) -> Optional[TranscriptItem]:
        if item_id is None:
            # First known candidate wins; none known means the turn streamed under another id.
            for cid in candidates:
                found = self._store.get(cid)
                if found is not None:
                    return found
            item = self._store.latest(role="assistant")
            if item is None:
                log_event(logger, "no_target", level=logging.DEBUG, op=op, reason="no_assistant_message")
            return item
        item = self._store.get(item_id)
        if item is None:
            self._metrics.inc(M["unknown_item_total"], 1)
            log_event(logger, "unknown_item", level=logging.WARNING, op=op, item_id=item_id)
        return item

    def _set_status(self, op: SetStatus) -> None:
        item = self._target(op.item_id, op="set_status", candidates=op.candidates)
        if item is None:
            return
        if is_regression(item.status, op.status):
            self._metrics.inc(M["status_regression_blocked_total"], 1)
            log_event(
                logger,
                "status_regression_blocked",
                level=logging.DEBUG,
                item_id=item.item_id,
                current=item.status.value,
                requested=op.status.value,
            )
            return
        nxt = advance_status(item.status, op.status)
        if nxt != item.status:
            self._store.patch(item.item_id, status=nxt)

    def _set_guardrail(self, op: SetGuardrail) -> None:
        item = self._target(op.item_id, op="set_guardrail", candidates=op.candidates)
        if item is None:
            return
        if item.role != "assistant":
            log_event(logger, "guardrail_ignored", level=logging.DEBUG, item_id=item.item_id, reason="not_assistant")
            return
        merged = merge_guardrail(item.guardrail, op.result, only_if_pending=op.only_if_pending)
        if merged is None:
            return
        self._store.patch(item.item_id, guardrail=merged)
        if merged.passed is False:
            self._metrics.inc(M["guardrail_tripped_total"], 1)
            log_event(
                logger,
                "guardrail_tripped",
                level=logging.WARNING,
                item_id=item.item_id,
                category=merged.category,
            )
        elif op.only_if_pending and merged.passed:
            self._metrics.inc(M["guardrail_default_pass_total"], 1)

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def _tool_call(self, op: DetectedToolCall) -> None:
        decision = self._dispatcher.handle_tool_call(op.item_id, op.tool_name)
        if not decision.first_seen:
            self._breadcrumbs.attach(op.item_id, arguments=op.arguments, output=op.output)
            return
        self._breadcrumbs.tool_call(op.item_id, name=op.tool_name, arguments=op.arguments, output=op.output)
        if decision.handoff_to is not None:
            self._breadcrumbs.agent(decision.handoff_to, reason="handoff")
