from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from .identity import (
    DELTA_ALIASES,
    HISTORY_ITEM_ID_ALIASES,
    ITEM_ID_ALIASES,
    RESPONSE_ID_ALIASES,
    TRANSCRIPT_ALIASES,
)


def _aliases(names: tuple[str, ...]) -> AliasChoices:
    return AliasChoices(*names)


class InboundModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def drop_null_fields(cls, data: Any) -> Any:
        # AliasChoices takes the first key present; a null one must not shadow the next alias.
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


# ---------------------------------------------------------------------------
# Inbound session events
# ---------------------------------------------------------------------------

ASSISTANT_DELTA_TYPES = (
    "response.text.delta",
    "response.audio_transcript.delta",
    "response.output_text.delta",
    "response.output_audio_transcript.delta",
)
USER_DELTA_TYPES = (
    "conversation.item.input_audio_transcription.delta",
    "conversation.input_audio_transcription.delta",
)


class AssistantDelta(InboundModel):
    type: Literal[
        "response.text.delta",
        "response.audio_transcript.delta",
        "response.output_text.delta",
        "response.output_audio_transcript.delta",
    ]
    item_id: Optional[str] = Field(default=None, validation_alias=_aliases(ITEM_ID_ALIASES))
    response_id: Optional[str] = Field(default=None, validation_alias=_aliases(RESPONSE_ID_ALIASES))
    delta: str = Field(default="", validation_alias=_aliases(DELTA_ALIASES))


class UserTranscriptionDelta(InboundModel):
    type: Literal[
        "conversation.item.input_audio_transcription.delta",
        "conversation.input_audio_transcription.delta",
    ]
    item_id: str = Field(min_length=1, validation_alias=_aliases(ITEM_ID_ALIASES))
    delta: str = Field(default="", validation_alias=_aliases(DELTA_ALIASES))


class SpeechStarted(InboundModel):
    type: Literal["input_audio_buffer.speech_started"]
    item_id: str = Field(min_length=1, validation_alias=_aliases(ITEM_ID_ALIASES))


class TranscriptionCompleted(InboundModel):
    type: Literal["conversation.item.input_audio_transcription.completed"]
    item_id: str = Field(min_length=1, validation_alias=_aliases(ITEM_ID_ALIASES))
    transcript: str = Field(validation_alias=_aliases(TRANSCRIPT_ALIASES))


class HistoryAdded(InboundModel):
    type: Literal["history_added"]
    item: dict[str, Any]


class HistoryUpdated(InboundModel):
    type: Literal["history_updated"]
    history: list[Any] = Field(validation_alias=AliasChoices("history", "items"))


class GuardrailTripped(InboundModel):
    type: Literal["guardrail_tripped"]
    item_id: Optional[str] = Field(default=None, validation_alias=_aliases(ITEM_ID_ALIASES))
    category: Optional[str] = None
    rationale: Optional[str] = None
    test_text: Optional[str] = Field(default=None, validation_alias=AliasChoices("test_text", "testText"))


class ResponseDone(InboundModel):
    type: Literal["response.done"]
    response: Optional[dict[str, Any]] = None


class AgentSelected(InboundModel):
    type: Literal["agent_selected"]
    agent_name: str = Field(min_length=1, validation_alias=AliasChoices("agent_name", "agentName", "name"))


SessionEvent = Annotated[
    Union[
        AssistantDelta,
        UserTranscriptionDelta,
        SpeechStarted,
        TranscriptionCompleted,
        HistoryAdded,
        HistoryUpdated,
        GuardrailTripped,
        ResponseDone,
        AgentSelected,
    ],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(SessionEvent)

KNOWN_EVENT_TYPES = frozenset(
    {
        *ASSISTANT_DELTA_TYPES,
        *USER_DELTA_TYPES,
        "input_audio_buffer.speech_started",
        "conversation.item.input_audio_transcription.completed",
        "history_added",
        "history_updated",
        "guardrail_tripped",
        "response.done",
        "agent_selected",
    }
)


# ---------------------------------------------------------------------------
# History records (finalized items carried by history_added / history_updated)
# ---------------------------------------------------------------------------


class ContentPart(InboundModel):
    type: str = ""
    text: Optional[str] = None
    transcript: Optional[str] = None


class HistoryMessage(InboundModel):
    type: Literal["message"]
    item_id: str = Field(min_length=1, validation_alias=_aliases(HISTORY_ITEM_ID_ALIASES))
    role: Literal["user", "assistant"]
    status: Optional[str] = None
    content: list[ContentPart] = Field(default_factory=list)


class HistoryFunctionCall(InboundModel):
    type: Literal["function_call"]
    item_id: str = Field(min_length=1, validation_alias=_aliases(HISTORY_ITEM_ID_ALIASES))
    name: str = ""
    arguments: Optional[Any] = None
    output: Optional[Any] = None
    status: Optional[str] = None


HistoryRecord = Annotated[
    Union[HistoryMessage, HistoryFunctionCall],
    Field(discriminator="type"),
]

_history_adapter = TypeAdapter(HistoryRecord)


def message_text(parts: list[ContentPart]) -> str:
    """Plain text of a history message: text parts verbatim, audio parts by transcript."""
    out: list[str] = []
    for part in parts:
        if part.type in {"text", "input_text", "output_text"}:
            piece = part.text
        elif part.type in {"audio", "input_audio", "output_audio"}:
            piece = part.transcript
        else:
            continue
        if piece:
            out.append(piece)
    return " ".join(out).strip()


def parse_event_json(raw_text: str) -> SessionEvent:
    return parse_event_obj(json.loads(raw_text))


def parse_event_obj(obj: Any) -> SessionEvent:
    return _event_adapter.validate_python(obj)


def parse_history_obj(obj: Any) -> HistoryMessage | HistoryFunctionCall:
    return _history_adapter.validate_python(obj)
