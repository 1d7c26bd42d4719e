from __future__ import annotations

import asyncio

from callsim.clock import FakeClock
from callsim.engine import ReconciliationEngine
from callsim.lifecycle import violation
from callsim.metrics import M
from callsim.normalizer import AppendDelta, ReplaceFinal, SetGuardrail, StartItem
from callsim.transcript import GUARDRAIL_PASS, GuardrailStatus, ItemKind, ItemStatus
from callsim.tts import FakeSynthesizer


def _engine(**kwargs) -> ReconciliationEngine:
    clock = kwargs.pop("clock", None) or FakeClock(start_ms=0)
    return ReconciliationEngine.create(
        session_id="c1",
        clock=clock,
        roster=kwargs.pop("roster", ("Rachel", "Arnold", "Josh")),
        **kwargs,
    )


def _messages(engine: ReconciliationEngine) -> list:
    return [i for i in engine.store if i.kind == ItemKind.MESSAGE]


def test_deltas_for_new_id_concatenate_into_one_item() -> None:
    e = _engine()
    for piece in ("Please ", "send ", "help."):
        e.handle_event({"type": "response.audio_transcript.delta", "item_id": "a1", "delta": piece})
    msgs = _messages(e)
    assert len(msgs) == 1
    assert msgs[0].content == "Please send help."
    assert msgs[0].role == "assistant"
    assert msgs[0].status == ItemStatus.IN_PROGRESS
    assert msgs[0].guardrail.status == GuardrailStatus.IN_PROGRESS


def test_start_append_replace_sequence() -> None:
    e = _engine()
    e.apply(StartItem(item_id="u1", role="user", initial_text=""))
    e.apply(AppendDelta(item_id="u1", delta="Hel", role="user"))
    e.apply(AppendDelta(item_id="u1", delta="lo", role="user"))
    assert e.store.get("u1").content == "Hello"
    e.apply(ReplaceFinal(item_id="u1", final_text="Hello.", role="user"))
    assert e.store.get("u1").content == "Hello."
    assert len(e.store) == 1


def test_placeholder_is_replaced_not_concatenated() -> None:
    e = _engine()
    e.handle_event({"type": "input_audio_buffer.speech_started", "item_id": "u1"})
    assert e.store.get("u1").content == "Transcribing…"
    assert e.store.get("u1").status == ItemStatus.IN_PROGRESS
    e.handle_event({"type": "conversation.item.input_audio_transcription.delta", "item_id": "u1", "delta": "911"})
    e.handle_event({"type": "conversation.item.input_audio_transcription.delta", "item_id": "u1", "delta": ", what"})
    assert e.store.get("u1").content == "911, what"


def test_user_delta_first_sighting_replaces_its_own_seed() -> None:
    e = _engine()
    e.handle_event({"type": "conversation.item.input_audio_transcription.delta", "item_id": "u1", "delta": "Hi"})
    assert e.store.get("u1").content == "Hi"


def test_completed_transcription_for_unseen_id_creates_done_message() -> None:
    e = _engine()
    e.handle_event(
        {"type": "conversation.item.input_audio_transcription.completed", "item_id": "u9", "transcript": "Where are you?"}
    )
    item = e.store.get("u9")
    assert item is not None
    assert item.kind == ItemKind.MESSAGE
    assert item.role == "user"
    assert item.status == ItemStatus.DONE
    assert item.content == "Where are you?"


def test_completed_transcription_replaces_placeholder() -> None:
    e = _engine()
    e.handle_event({"type": "input_audio_buffer.speech_started", "item_id": "u1"})
    e.handle_event(
        {"type": "conversation.item.input_audio_transcription.completed", "item_id": "u1", "transcript": "Hello."}
    )
    assert e.store.get("u1").content == "Hello."
    assert e.store.get("u1").status == ItemStatus.DONE


def test_status_is_monotonic() -> None:
    e = _engine()
    e.handle_event(
        {"type": "conversation.item.input_audio_transcription.completed", "item_id": "u1", "transcript": "Done."}
    )
    e.handle_event({"type": "conversation.item.input_audio_transcription.delta", "item_id": "u1", "delta": "!"})
    assert e.store.get("u1").status == ItemStatus.DONE
    assert e.metrics.get(M["status_regression_blocked_total"]) == 1


def test_guardrail_without_target_applies_to_latest_assistant() -> None:
    e = _engine()
    e.handle_event({"type": "response.text.delta", "item_id": "a1", "delta": "one"})
    e.handle_event({"type": "response.text.delta", "item_id": "a2", "delta": "two"})
    e.handle_event({"type": "conversation.item.input_audio_transcription.delta", "item_id": "u1", "delta": "hey"})
    e.handle_event({"type": "guardrail_tripped", "category": "off_brand"})
    assert e.store.get("a2").guardrail.category == "OFF_BRAND"
    assert e.store.get("a1").guardrail.status == GuardrailStatus.IN_PROGRESS
    assert e.store.get("u1").guardrail is None
    assert e.metrics.get(M["guardrail_tripped_total"]) == 1


def test_guardrail_without_any_assistant_is_a_no_op() -> None:
    e = _engine()
    e.handle_event({"type": "conversation.item.input_audio_transcription.delta", "item_id": "u1", "delta": "hey"})
    before = e.store.snapshot()
    e.handle_event({"type": "guardrail_tripped"})
    assert e.store.snapshot() == before


def test_guardrail_for_unknown_id_is_logged_no_op() -> None:
    e = _engine()
    e.apply(SetGuardrail(item_id="ghost", result=violation("OFF_BRAND")))
    assert len(e.store) == 0
    assert e.metrics.get(M["unknown_item_total"]) == 1


def test_response_done_default_pass_and_violation_is_terminal() -> None:
    e = _engine()
    e.handle_event({"type": "response.text.delta", "item_id": "a1", "delta": "fine"})
    e.handle_event({"type": "response.done", "response": {"output": [{"type": "message", "id": "a1", "role": "assistant"}]}})
    item = e.store.get("a1")
    assert item.status == ItemStatus.DONE
    assert item.guardrail.status == GuardrailStatus.DONE
    assert item.guardrail.category == GUARDRAIL_PASS

    e.handle_event({"type": "response.text.delta", "item_id": "a2", "delta": "off script"})
    e.handle_event({"type": "guardrail_tripped", "item_id": "a2", "category": "OFF_BRAND"})
    e.handle_event({"type": "response.done"})
    assert e.store.get("a2").guardrail.category == "OFF_BRAND"
    assert e.store.get("a2").status == ItemStatus.DONE
    assert e.metrics.get(M["guardrail_default_pass_total"]) == 1


def test_late_violation_overrides_default_pass() -> None:
    e = _engine()
    e.handle_event({"type": "response.text.delta", "item_id": "a1", "delta": "text"})
    e.handle_event({"type": "response.done"})
    e.handle_event({"type": "guardrail_tripped", "item_id": "a1", "category": "off_brand", "rationale": "late"})
    g = e.store.get("a1").guardrail
    assert g.category == "OFF_BRAND"
    assert g.rationale == "late"


def test_history_update_finalizes_streamed_item() -> None:
    e = _engine()
    e.handle_event({"type": "response.audio_transcript.delta", "item_id": "a1", "delta": "Please hur"})
    e.handle_event(
        {
            "type": "history_updated",
            "history": [
                {
                    "type": "message",
                    "itemId": "a1",
                    "role": "assistant",
                    "status": "completed",
                    "content": [{"type": "output_audio", "transcript": "Please hurry."}],
                }
            ],
        }
    )
    item = e.store.get("a1")
    assert item.content == "Please hurry."
    assert item.status == ItemStatus.DONE
    assert len(_messages(e)) == 1


def test_start_emits_agent_breadcrumb() -> None:
    e = _engine()
    e.start()
    crumbs = [i for i in e.store if i.kind == ItemKind.BREADCRUMB]
    assert [c.content for c in crumbs] == ["Agent: Rachel"]
    assert crumbs[0].status == ItemStatus.DONE


def test_agent_selected_event_emits_breadcrumb() -> None:
    e = _engine()
    e.handle_event({"type": "agent_selected", "agent_name": "Josh"})
    crumbs = [i for i in e.store if i.kind == ItemKind.BREADCRUMB]
    assert crumbs[0].content == "Agent: Josh"
    assert crumbs[0].annotation == {"agent": "Josh"}


def test_duplicate_in_progress_history_synthesizes_once() -> None:
    async def _run() -> None:
        synth = FakeSynthesizer()
        e = _engine(synthesizer=synth)
        record = {
            "type": "history_added",
            "item": {
                "type": "message",
                "itemId": "a1",
                "role": "assistant",
                "status": "in_progress",
                "content": [{"type": "output_text", "text": "Help me"}],
            },
        }
        e.handle_event(record)
        e.handle_event(record)
        e.handle_event({"type": "history_updated", "history": [record["item"]]})
        for _ in range(20):
            await asyncio.sleep(0)
        assert synth.calls == [("Help me", "21m00Tcm4TlvDq8ikWAM")]
        assert e.dispatcher.audio == [("a1", b"audio:21m00Tcm4TlvDq8ikWAM:Help me")]
        assert e.metrics.get(M["synthesis_skipped_duplicate_total"]) == 2

    asyncio.run(_run())


def test_status_less_history_message_enters_in_progress() -> None:
    e = _engine()
    e.handle_event(
        {
            "type": "history_added",
            "item": {"type": "message", "itemId": "a1", "role": "assistant", "content": [{"type": "text", "text": "Hi"}]},
        }
    )
    e.apply(StartItem(item_id="u1", role="user", initial_text="Hello"))
    assert e.store.get("a1").status == ItemStatus.IN_PROGRESS
    assert e.store.get("u1").status == ItemStatus.IN_PROGRESS


def test_response_done_with_unseen_output_id_completes_the_streamed_turn() -> None:
    e = _engine()
    e.handle_event({"type": "response.text.delta", "response_id": "R1", "delta": "Send someone"})
    e.handle_event(
        {
            "type": "response.done",
            "response": {"id": "R1", "output": [{"type": "message", "id": "item_9", "role": "assistant"}]},
        }
    )
    item = e.store.get("resp:R1")
    assert item.status == ItemStatus.DONE
    assert item.guardrail.status == GuardrailStatus.DONE
    assert item.guardrail.category == GUARDRAIL_PASS
    assert "item_9" not in e.store
    assert e.metrics.get(M["unknown_item_total"]) == 0


def test_response_done_with_unseen_ids_and_no_response_id_uses_latest_assistant() -> None:
    e = _engine()
    e.handle_event({"type": "response.text.delta", "item_id": "a1", "delta": "first"})
    e.handle_event({"type": "response.text.delta", "item_id": "a2", "delta": "second"})
    e.handle_event({"type": "response.done", "response": {"output": [{"type": "message", "id": "ghost"}]}})
    assert e.store.get("a2").status == ItemStatus.DONE
    assert e.store.get("a1").status == ItemStatus.IN_PROGRESS


def test_guardrail_verdict_is_not_attached_to_user_messages() -> None:
    e = _engine()
    e.handle_event({"type": "conversation.item.input_audio_transcription.delta", "item_id": "u1", "delta": "hey"})
    e.handle_event({"type": "guardrail_tripped", "item_id": "u1", "category": "OFF_BRAND"})
    assert e.store.get("u1").guardrail is None
    assert e.metrics.get(M["guardrail_tripped_total"]) == 0
