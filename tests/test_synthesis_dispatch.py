from __future__ import annotations

import asyncio

from callsim.clock import FakeClock
from callsim.dispatcher import SideEffectDispatcher, SynthesisResult
from callsim.metrics import M, Metrics
from callsim.tts import FakeSynthesizer
from callsim.voices import VoiceResolver


RACHEL = "21m00Tcm4TlvDq8ikWAM"


def _dispatcher(synth, *, clock=None, voices=None, roster=("Rachel", "Arnold"), timeout_ms=15000):
    metrics = Metrics()
    d = SideEffectDispatcher(
        synthesizer=synth,
        voices=voices or VoiceResolver(),
        roster=roster,
        clock=clock or FakeClock(),
        metrics=metrics,
        timeout_ms=timeout_ms,
    )
    return d, metrics


async def _ticks(n: int = 20) -> None:
    for _ in range(n):
        await asyncio.sleep(0)


def test_marks_before_scheduling_so_same_tick_duplicates_are_skipped() -> None:
    async def _run() -> None:
        synth = FakeSynthesizer()
        d, metrics = _dispatcher(synth)
        assert d.request_synthesis("a1", "Help") is True
        # The task has not run yet, but the id is already taken.
        assert "a1" in d.dispatched_ids
        assert synth.calls == []
        assert d.request_synthesis("a1", "Help") is False
        await _ticks()
        assert synth.calls == [("Help", RACHEL)]
        assert metrics.get(M["synthesis_dispatched_total"]) == 1
        assert metrics.get(M["synthesis_skipped_duplicate_total"]) == 1

    asyncio.run(_run())


def test_empty_text_is_skipped_without_marking() -> None:
    async def _run() -> None:
        synth = FakeSynthesizer()
        d, metrics = _dispatcher(synth)
        assert d.request_synthesis("a1", "   ") is False
        assert "a1" not in d.dispatched_ids
        assert d.request_synthesis("a1", "Now with text") is True
        await _ticks()
        assert synth.calls == [("Now with text", RACHEL)]
        assert metrics.get(M["synthesis_skipped_empty_total"]) == 1

    asyncio.run(_run())


def test_failure_is_contained_and_never_retried() -> None:
    async def _run() -> None:
        synth = FakeSynthesizer(fail=True)
        d, metrics = _dispatcher(synth)
        d.request_synthesis("a1", "Help")
        await _ticks()
        assert d.audio == []
        assert metrics.get(M["synthesis_failed_total"]) == 1
        assert d.request_synthesis("a1", "Help") is False
        assert len(synth.calls) == 1

    asyncio.run(_run())


def test_unavailable_provider_skips_audio() -> None:
    async def _run() -> None:
        synth = FakeSynthesizer(unavailable=True)
        d, metrics = _dispatcher(synth)
        d.request_synthesis("a1", "Help")
        await _ticks()
        assert d.audio == []
        assert metrics.get(M["synthesis_unavailable_total"]) == 1
        assert metrics.get(M["synthesis_failed_total"]) == 0

    asyncio.run(_run())


def test_timeout_counts_as_failure() -> None:
    async def _run() -> None:
        clock = FakeClock()
        synth = FakeSynthesizer(clock=clock, delay_ms=20_000)
        d, metrics = _dispatcher(synth, clock=clock, timeout_ms=1_000)
        d.request_synthesis("a1", "Help")
        await _ticks()
        await clock.advance(1_000)
        await _ticks()
        assert d.pending == 0
        assert d.audio == []
        assert metrics.get(M["synthesis_failed_total"]) == 1

    asyncio.run(_run())


def test_results_go_through_the_sink_when_set() -> None:
    async def _run() -> None:
        delivered: list[SynthesisResult] = []

        async def sink(result: SynthesisResult) -> None:
            delivered.append(result)

        d, _ = _dispatcher(FakeSynthesizer())
        d.set_result_sink(sink)
        d.request_synthesis("a1", "Help")
        await _ticks()
        assert [r.item_id for r in delivered] == ["a1"]
        # Sink owns recording.
        assert d.audio == []
        d.record_result(delivered[0])
        assert d.audio == [("a1", b"audio:%s:Help" % RACHEL.encode())]

    asyncio.run(_run())


def test_voice_prefers_scenario_override_then_root_agent() -> None:
    async def _run() -> None:
        synth = FakeSynthesizer()
        voices = VoiceResolver(scenario_key="elderly_fall", scenario_voices={"elderly_fall": "VOICE_X"})
        d, _ = _dispatcher(synth, voices=voices)
        d.request_synthesis("a1", "one")

        synth2 = FakeSynthesizer()
        d2, _ = _dispatcher(synth2, roster=("Arnold - worried father",))
        d2.request_synthesis("a1", "two")

        synth3 = FakeSynthesizer()
        d3, _ = _dispatcher(synth3, roster=("Zed",))
        d3.request_synthesis("a1", "three")
        await _ticks()
        assert synth.calls == [("one", "VOICE_X")]
        assert synth2.calls == [("two", "ErXwobaYiN019PkySvjV")]
        assert synth3.calls == [("three", "EXAVITQu4vr4xnSDxMaL")]

    asyncio.run(_run())


def test_voice_stays_with_root_agent_after_handoff() -> None:
    async def _run() -> None:
        synth = FakeSynthesizer()
        d, _ = _dispatcher(synth)
        d.handle_tool_call("call_1", "transfer_to_Arnold")
        assert d.active_agent == "Arnold"
        d.request_synthesis("a1", "Help")
        await _ticks()
        assert synth.calls == [("Help", RACHEL)]

    asyncio.run(_run())


def test_close_cancels_in_flight_and_discards_late_results() -> None:
    async def _run() -> None:
        clock = FakeClock()
        synth = FakeSynthesizer(clock=clock, delay_ms=5_000)
        d, metrics = _dispatcher(synth, clock=clock)
        d.request_synthesis("a1", "Help")
        await _ticks()
        await d.close()
        assert d.pending == 0
        assert d.request_synthesis("a2", "More") is False
        d.record_result(SynthesisResult(item_id="a3", voice_id=RACHEL, audio=b"x"))
        assert d.audio == []
        assert metrics.get(M["synthesis_discarded_total"]) == 1

    asyncio.run(_run())


def test_no_synthesizer_means_no_dispatch() -> None:
    async def _run() -> None:
        d, metrics = _dispatcher(None)
        assert d.request_synthesis("a1", "Help") is False
        assert metrics.get(M["synthesis_dispatched_total"]) == 0

    asyncio.run(_run())
