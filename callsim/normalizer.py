from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import ValidationError

from .config import TRANSCRIBING_PLACEHOLDER
from .identity import (
    HISTORY_ITEM_ID_ALIASES,
    RESPONSE_ID_ALIASES,
    fallback_item_id,
    first_present,
    resolve_item_id,
)
from .lifecycle import default_pass, status_from_history, violation
from .logs import log_event
from .metrics import M, Metrics
from .protocol import (
    KNOWN_EVENT_TYPES,
    AgentSelected,
    AssistantDelta,
    GuardrailTripped,
    HistoryAdded,
    HistoryFunctionCall,
    HistoryMessage,
    HistoryUpdated,
    ResponseDone,
    SpeechStarted,
    TranscriptionCompleted,
    UserTranscriptionDelta,
    message_text,
    parse_event_obj,
    parse_history_obj,
)
from .transcript import GUARDRAIL_OFF_BRAND, GuardrailResult, ItemStatus, Role

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal operations (closed vocabulary)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StartItem:
    item_id: str
    role: Role
    initial_text: str = ""
    placeholder: bool = False


@dataclass(frozen=True, slots=True)
class AppendDelta:
    item_id: str
    delta: str
    # Seed used when the delta is the first sighting of item_id.
    role: Role = "assistant"
    seed_text: str = ""
    seed_is_placeholder: bool = False


@dataclass(frozen=True, slots=True)
class ReplaceFinal:
    item_id: str
    final_text: str
    role: Role = "assistant"


@dataclass(frozen=True, slots=True)
class SetStatus:
    # None targets the first known candidate, else the most recent assistant message.
    item_id: Optional[str]
    status: ItemStatus
    candidates: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class SetGuardrail:
    # Same targeting as SetStatus.
    item_id: Optional[str]
    result: GuardrailResult
    only_if_pending: bool = False
    candidates: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class EmitBreadcrumb:
    title: str
    payload: Optional[dict[str, Any]] = None


@dataclass(frozen=True, slots=True)
class DetectedToolCall:
    item_id: str
    tool_name: str
    arguments: Any = None
    output: Any = None


@dataclass(frozen=True, slots=True)
class RequestSynthesis:
    item_id: str
    text: str = ""


Op = Union[
    StartItem,
    AppendDelta,
    ReplaceFinal,
    SetStatus,
    SetGuardrail,
    EmitBreadcrumb,
    DetectedToolCall,
    RequestSynthesis,
]


@dataclass
class EventNormalizer:
    """
    Inbound session event -> list of internal operations.

    Never raises: unknown types, schema failures and events missing their required
    fields yield an empty list plus a diagnostic log line and a drop counter.
    """

    placeholder: str = TRANSCRIBING_PLACEHOLDER
    metrics: Metrics = field(default_factory=Metrics)

    def normalize(self, raw: Any) -> list[Op]:
        self.metrics.inc(M["events_received_total"], 1)
        event_type = raw.get("type") if isinstance(raw, dict) else None
        if not isinstance(event_type, str) or event_type not in KNOWN_EVENT_TYPES:
            self.metrics.inc(M["events_unknown_type_total"], 1)
            log_event(logger, "event_ignored", level=logging.DEBUG, reason="unknown_type", event_type=str(event_type))
            return []
        try:
            ev = parse_event_obj(raw)
        except ValidationError as e:
            return self._drop(str(event_type), reason="bad_schema", errors=e.error_count())

        if isinstance(ev, AssistantDelta):
            return self._assistant_delta(ev)
        if isinstance(ev, UserTranscriptionDelta):
            return self._user_delta(ev)
        if isinstance(ev, SpeechStarted):
            return [
                StartItem(item_id=ev.item_id, role="user", initial_text=self.placeholder, placeholder=True),
                SetStatus(item_id=ev.item_id, status=ItemStatus.IN_PROGRESS),
            ]
        if isinstance(ev, TranscriptionCompleted):
            return [
                ReplaceFinal(item_id=ev.item_id, final_text=ev.transcript.strip(), role="user"),
                SetStatus(item_id=ev.item_id, status=ItemStatus.DONE),
            ]
        if isinstance(ev, HistoryAdded):
            return self._history_record(ev.item)
        if isinstance(ev, HistoryUpdated):
            ops: list[Op] = []
            for record in ev.history:
                ops.extend(self._history_record(record))
            return ops
        if isinstance(ev, GuardrailTripped):
            return self._guardrail_tripped(ev)
        if isinstance(ev, ResponseDone):
            return self._response_done(ev)
        if isinstance(ev, AgentSelected):
            name = ev.agent_name.strip()
            return [EmitBreadcrumb(title=f"Agent: {name}", payload={"agent": name})]
        return []

    # ------------------------------------------------------------------

    def _assistant_delta(self, ev: AssistantDelta) -> list[Op]:
        item_id = resolve_item_id(item_id=ev.item_id, response_id=ev.response_id)
        if item_id is None:
            return self._drop(ev.type, reason="missing_item_id")
        if not ev.delta:
            return self._drop(ev.type, reason="empty_delta")
        return [
            AppendDelta(item_id=item_id, delta=ev.delta, role="assistant"),
            SetStatus(item_id=item_id, status=ItemStatus.IN_PROGRESS),
        ]

    def _user_delta(self, ev: UserTranscriptionDelta) -> list[Op]:
        if not ev.delta:
            # Still surface the placeholder so the operator sees the turn start.
            return [
                StartItem(item_id=ev.item_id, role="user", initial_text=self.placeholder, placeholder=True),
                SetStatus(item_id=ev.item_id, status=ItemStatus.IN_PROGRESS),
            ]
        return [
            AppendDelta(
                item_id=ev.item_id,
                delta=ev.delta,
                role="user",
                seed_text=self.placeholder,
                seed_is_placeholder=True,
            ),
            SetStatus(item_id=ev.item_id, status=ItemStatus.IN_PROGRESS),
        ]

    def _history_record(self, record: Any) -> list[Op]:
        rec_type = record.get("type") if isinstance(record, dict) else None
        if not isinstance(rec_type, str) or rec_type not in {"message", "function_call"}:
            log_event(logger, "history_record_ignored", level=logging.DEBUG, record_type=str(rec_type))
            return []
        try:
            rec = parse_history_obj(record)
        except ValidationError as e:
            return self._drop(f"history:{rec_type}", reason="bad_schema", errors=e.error_count())

        if isinstance(rec, HistoryFunctionCall):
            return [
                DetectedToolCall(
                    item_id=rec.item_id,
                    tool_name=rec.name,
                    arguments=rec.arguments,
                    output=rec.output,
                )
            ]
        return self._history_message(rec)

    def _history_message(self, rec: HistoryMessage) -> list[Op]:
        text = message_text(rec.content)
        if not text:
            return []
        ops: list[Op] = [
            StartItem(item_id=rec.item_id, role=rec.role, initial_text=text),
            ReplaceFinal(item_id=rec.item_id, final_text=text, role=rec.role),
        ]
        if rec.status is not None:
            ops.append(SetStatus(item_id=rec.item_id, status=status_from_history(rec.status)))
        if rec.role == "assistant" and str(rec.status or "").lower() == "in_progress":
            ops.append(RequestSynthesis(item_id=rec.item_id, text=text))
        return ops

    def _guardrail_tripped(self, ev: GuardrailTripped) -> list[Op]:
        result = violation(
            (ev.category or "").strip().upper() or GUARDRAIL_OFF_BRAND,
            rationale=ev.rationale or "Guardrail triggered",
            test_text=ev.test_text or "",
        )
        target = (ev.item_id or "").strip() or None
        return [SetGuardrail(item_id=target, result=result)]

    def _response_done(self, ev: ResponseDone) -> list[Op]:
        response = ev.response or {}
        ids: list[str] = []
        output = response.get("output")
        if isinstance(output, list):
            for entry in output:
                if not isinstance(entry, dict):
                    continue
                if entry.get("type", "message") != "message" or entry.get("role", "assistant") != "assistant":
                    continue
                item_id = first_present(entry, HISTORY_ITEM_ID_ALIASES)
                if isinstance(item_id, str) and item_id.strip():
                    ids.append(item_id.strip())
        # Deltas without an item id streamed under the response-scoped key.
        response_id = first_present(response, ("id", *RESPONSE_ID_ALIASES))
        tail: tuple[str, ...] = ()
        if isinstance(response_id, str) and response_id.strip():
            tail = (fallback_item_id(response_id.strip()),)

        # An unseen listed id resolves to the fallback key, else the latest assistant message.
        groups = [(item_id, *tail) for item_id in ids] or [tail]
        ops: list[Op] = []
        for candidates in groups:
            ops.append(SetStatus(item_id=None, status=ItemStatus.DONE, candidates=candidates))
            ops.append(SetGuardrail(item_id=None, result=default_pass(), only_if_pending=True, candidates=candidates))
        return ops

    def _drop(self, event_type: str, *, reason: str, **fields: object) -> list[Op]:
        self.metrics.inc(M["events_dropped_total"], 1)
        log_event(logger, "event_dropped", level=logging.WARNING, event_type=event_type, reason=reason, **fields)
        return []
