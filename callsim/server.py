from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from .analysis import AnalysisError, TranscriptAnalyzer, build_analyzer, process_call_transcript
from .bounded_queue import BoundedDequeQueue
from .clock import Clock, RealClock
from .config import SimConfig
from .engine import ReconciliationEngine
from .logs import configure_logging, log_event
from .metrics import Metrics
from .persistence import ArchiveError, LocalCallArchive
from .session import CallSession
from .transport_ws import InboundItem, Transport, socket_reader
from .tts import SynthesisError, Synthesizer, build_synthesizer
from .voices import VoiceResolver, load_scenario_voices

logger = logging.getLogger(__name__)

DEFAULT_ROSTER = ("Rachel", "Josh", "Arnold")
_NO_STORE = {"Cache-Control": "no-store, must-revalidate", "Pragma": "no-cache", "Expires": "0"}


class StarletteTransport(Transport):
    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws

    async def recv_text(self) -> str:
        return await self._ws.receive_text()

    async def send_text(self, text: str) -> None:
        await self._ws.send_text(text)

    async def close(self, *, code: int = 1000, reason: str = "") -> None:
        try:
            await self._ws.close(code=code, reason=reason)
        except (RuntimeError, WebSocketDisconnect):
            # Already closed by the client.
            return


def parse_roster(raw: Optional[str]) -> tuple[str, ...]:
    names = [part.strip() for part in str(raw or "").split(",")]
    return tuple(n for n in names if n) or DEFAULT_ROSTER


def create_app(
    cfg: Optional[SimConfig] = None,
    *,
    synthesizer: Optional[Synthesizer] = None,
    analyzer: Optional[TranscriptAnalyzer] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    cfg = cfg or SimConfig.from_env()
    configure_logging(level=cfg.log_level, structured=cfg.structured_logging)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        synth = app.state.synthesizer
        if synth is not None:
            await synth.aclose()
        if app.state.analyzer is not None:
            await app.state.analyzer.aclose()

    app = FastAPI(lifespan=lifespan)
    app.state.cfg = cfg
    app.state.clock = clock or RealClock()
    app.state.archive = LocalCallArchive(cfg.call_archive_dir)
    app.state.synthesizer = synthesizer if synthesizer is not None else build_synthesizer(cfg)
    app.state.analyzer = analyzer if analyzer is not None else build_analyzer(cfg)
    app.state.scenario_voices = load_scenario_voices(cfg.scenario_voices_path)

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/api/calls")
    async def list_calls() -> JSONResponse:
        records = app.state.archive.list()
        return JSONResponse([r.model_dump() for r in records], headers=_NO_STORE)

    @app.get("/api/calls/latest")
    async def latest_call() -> JSONResponse:
        record = app.state.archive.latest()
        if record is None:
            return JSONResponse({"success": False, "error": "No calls found"}, status_code=404)
        return JSONResponse({"success": True, "call": record.model_dump()}, headers=_NO_STORE)

    @app.get("/api/calls/{call_id}")
    async def get_call(call_id: str) -> JSONResponse:
        try:
            record = app.state.archive.get(call_id)
        except ArchiveError as e:
            return JSONResponse({"error": str(e)}, status_code=400 if "invalid call id" in str(e) else 500)
        if record is None:
            return JSONResponse({"error": "Call not found"}, status_code=404)
        return JSONResponse(record.model_dump(), headers=_NO_STORE)

    @app.post("/api/calls/{call_id}/process-transcript")
    async def process_transcript(call_id: str) -> JSONResponse:
        analyzer = app.state.analyzer
        if analyzer is None:
            return JSONResponse({"error": "Transcript analysis disabled"}, status_code=503)
        try:
            if app.state.archive.get(call_id) is None:
                return JSONResponse({"error": "Call not found"}, status_code=404)
            record = await process_call_transcript(archive=app.state.archive, analyzer=analyzer, call_id=call_id)
        except (AnalysisError, ArchiveError) as e:
            log_event(logger, "analysis_failed", level=logging.ERROR, call_id=call_id, error=str(e)[:200])
            return JSONResponse(
                {"error": "Failed to process transcript", "details": str(e)},
                status_code=500,
            )
        return JSONResponse({"success": True, "call": record.model_dump()})

    @app.post("/api/tts")
    async def tts(request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or not str(body.get("text") or "").strip():
            return JSONResponse({"error": "Missing text"}, status_code=400)
        synth = app.state.synthesizer
        if synth is None:
            return JSONResponse({"error": "TTS disabled"}, status_code=503)
        voice_id = body.get("voiceId") or body.get("voice_id") or cfg.tts_default_voice_id
        try:
            audio = await synth.synthesize(str(body["text"]), str(voice_id))
        except SynthesisError as e:
            log_event(logger, "tts_failed", level=logging.WARNING, error=str(e)[:200])
            return JSONResponse({"error": "TTS provider error", "details": str(e)}, status_code=502)
        if not audio:
            return JSONResponse(
                {
                    "error": "TTS temporarily unavailable",
                    "message": "Calls will work without voice synthesis.",
                },
                status_code=503,
            )
        return Response(content=audio, media_type="audio/mpeg", headers={"Cache-Control": "no-store"})

    @app.websocket("/session/{call_id}")
    async def session_ws(ws: WebSocket, call_id: str) -> None:
        await _run_session(app, ws, call_id)

    return app


async def _run_session(app: FastAPI, ws: WebSocket, call_id: str) -> None:
    cfg: SimConfig = app.state.cfg
    clock: Clock = app.state.clock
    roster = parse_roster(ws.query_params.get("agents"))
    scenario = (ws.query_params.get("scenario") or "").strip() or None

    await ws.accept()
    log_event(logger, "ws_connect", call_id=call_id, agents=",".join(roster), scenario=scenario or "")

    metrics = Metrics()
    engine = ReconciliationEngine.create(
        session_id=call_id,
        clock=clock,
        roster=roster,
        synthesizer=app.state.synthesizer,
        voices=VoiceResolver(
            scenario_key=scenario,
            scenario_voices=app.state.scenario_voices,
            default_voice_id=cfg.tts_default_voice_id,
        ),
        placeholder=cfg.transcribing_placeholder,
        synthesis_timeout_ms=cfg.tts_timeout_ms,
        metrics=metrics,
    )
    inbound_q: BoundedDequeQueue[InboundItem] = BoundedDequeQueue(maxsize=cfg.session_queue_max)
    shutdown_evt = asyncio.Event()
    transport = StarletteTransport(ws)
    session = CallSession(
        call_id=call_id,
        engine=engine,
        inbound_q=inbound_q,
        clock=clock,
        metrics=metrics,
        archive=app.state.archive,
        scenario=scenario,
        drain_timeout_ms=cfg.tts_timeout_ms,
    )

    reader_task = asyncio.create_task(
        socket_reader(
            transport=transport,
            inbound_q=inbound_q,
            metrics=metrics,
            shutdown_evt=shutdown_evt,
            clock=clock,
            max_frame_bytes=cfg.ws_max_frame_bytes,
            call_id=call_id,
        )
    )
    try:
        result = await session.run()
    finally:
        shutdown_evt.set()
        reader_task.cancel()
        await asyncio.gather(reader_task, return_exceptions=True)
        await transport.close()

    log_event(
        logger,
        "ws_disconnect",
        call_id=call_id,
        reason=result.close_reason,
        saved=result.saved,
        error=result.error or "",
    )


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run("callsim.server:app", host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
