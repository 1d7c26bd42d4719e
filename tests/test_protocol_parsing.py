from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from callsim.protocol import (
    AgentSelected,
    AssistantDelta,
    ContentPart,
    GuardrailTripped,
    HistoryAdded,
    HistoryFunctionCall,
    HistoryMessage,
    HistoryUpdated,
    ResponseDone,
    TranscriptionCompleted,
    UserTranscriptionDelta,
    message_text,
    parse_event_json,
    parse_event_obj,
    parse_history_obj,
)


FIX = Path(__file__).parent / "fixtures"


def _load(name: str) -> str:
    return (FIX / name).read_text(encoding="utf-8").strip()


def test_event_parsing() -> None:
    assert isinstance(parse_event_json(_load("ev_assistant_delta.json")), AssistantDelta)
    assert isinstance(parse_event_json(_load("ev_user_delta.json")), UserTranscriptionDelta)
    assert isinstance(parse_event_json(_load("ev_transcription_completed.json")), TranscriptionCompleted)
    assert isinstance(parse_event_json(_load("ev_history_added_assistant.json")), HistoryAdded)
    assert isinstance(parse_event_json(_load("ev_history_updated.json")), HistoryUpdated)
    assert isinstance(parse_event_json(_load("ev_guardrail_tripped.json")), GuardrailTripped)
    assert isinstance(parse_event_json(_load("ev_response_done.json")), ResponseDone)


def test_field_aliases() -> None:
    ev = parse_event_obj({"type": "response.text.delta", "itemId": "i1", "responseId": "r1", "text": "hi"})
    assert isinstance(ev, AssistantDelta)
    assert (ev.item_id, ev.response_id, ev.delta) == ("i1", "r1", "hi")

    g = parse_event_json(_load("ev_guardrail_tripped.json"))
    assert isinstance(g, GuardrailTripped)
    assert g.item_id == "item_a1"
    assert g.test_text == "As an AI model"

    a = parse_event_obj({"type": "agent_selected", "agentName": "Rachel"})
    assert isinstance(a, AgentSelected)
    assert a.agent_name == "Rachel"


def test_null_aliases_do_not_shadow_later_ones() -> None:
    ev = parse_event_obj({"type": "response.text.delta", "item_id": None, "itemId": "a1", "delta": None, "text": "hi"})
    assert (ev.item_id, ev.delta) == ("a1", "hi")

    u = parse_event_obj(
        {"type": "conversation.item.input_audio_transcription.delta", "item_id": None, "itemId": "u1", "delta": "x"}
    )
    assert isinstance(u, UserTranscriptionDelta)
    assert u.item_id == "u1"

    h = parse_history_obj({"type": "message", "item_id": None, "itemId": None, "id": "m1", "role": "user"})
    assert isinstance(h, HistoryMessage)
    assert h.item_id == "m1"
    assert h.content == []


def test_assistant_delta_ids_are_optional() -> None:
    ev = parse_event_obj({"type": "response.output_text.delta", "delta": "x"})
    assert isinstance(ev, AssistantDelta)
    assert ev.item_id is None
    assert ev.response_id is None


def test_unknown_type_and_missing_fields_fail_validation() -> None:
    with pytest.raises(ValidationError):
        parse_event_obj({"type": "session.created"})
    with pytest.raises(ValidationError):
        parse_event_obj({"type": "input_audio_buffer.speech_started"})
    with pytest.raises(ValidationError):
        parse_event_obj({"type": "conversation.item.input_audio_transcription.completed", "item_id": "u1"})


def test_history_records() -> None:
    updated = json.loads(_load("ev_history_updated.json"))
    msg = parse_history_obj(updated["history"][0])
    assert isinstance(msg, HistoryMessage)
    assert msg.item_id == "item_u1"
    assert msg.role == "user"

    call = parse_history_obj(updated["history"][2])
    assert isinstance(call, HistoryFunctionCall)
    assert call.name == "transfer_to_Arnold"

    with pytest.raises(ValidationError):
        parse_history_obj(updated["history"][3])


def test_message_text_joins_text_and_transcripts() -> None:
    parts = [
        ContentPart(type="input_text", text="Hello"),
        ContentPart(type="output_audio", transcript="there"),
        ContentPart(type="input_audio", transcript=None),
        ContentPart(type="image", text="ignored"),
        ContentPart(type="text", text=""),
    ]
    assert message_text(parts) == "Hello there"
    assert message_text([]) == ""
