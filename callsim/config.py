from __future__ import annotations

import os
from dataclasses import dataclass


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _getenv_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


DEFAULT_VOICE_ID = "EXAVITQu4vr4xnSDxMaL"
TRANSCRIBING_PLACEHOLDER = "Transcribing…"


@dataclass(frozen=True, slots=True)
class SimConfig:
    # Speech synthesis (ElevenLabs)
    tts_enabled: bool = True
    elevenlabs_api_key: str = ""
    elevenlabs_base_url: str = "https://api.elevenlabs.io"
    elevenlabs_model_id: str = "eleven_multilingual_v2"
    tts_default_voice_id: str = DEFAULT_VOICE_ID
    tts_timeout_ms: int = 15000
    # Provider rejects bursts; requests are serialized with this spacing.
    tts_request_spacing_ms: int = 100

    # Transcript behavior
    transcribing_placeholder: str = TRANSCRIBING_PLACEHOLDER

    # Session runtime
    session_queue_max: int = 1024
    ws_max_frame_bytes: int = 262_144

    # Persistence
    call_archive_dir: str = "data/calls"
    # JSON object: scenario key -> ElevenLabs voice id
    scenario_voices_path: str = ""

    # Post-call analysis
    analysis_provider: str = "off"  # off | openai
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_timeout_ms: int = 20000

    # Logging
    structured_logging: bool = False
    log_level: str = "INFO"

    @staticmethod
    def from_env() -> "SimConfig":
        analysis_provider = _getenv_str("ANALYSIS_PROVIDER", "off").strip().lower()
        if analysis_provider not in {"off", "openai"}:
            analysis_provider = "off"
        log_level = _getenv_str("LOG_LEVEL", "INFO").strip().upper()
        if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            log_level = "INFO"
        base_url = _getenv_str("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io").strip().rstrip("/")

        return SimConfig(
            tts_enabled=_getenv_bool("TTS_ENABLED", True),
            elevenlabs_api_key=_getenv_str("ELEVENLABS_API_KEY", ""),
            elevenlabs_base_url=base_url,
            elevenlabs_model_id=_getenv_str("ELEVENLABS_MODEL_ID", "eleven_multilingual_v2"),
            tts_default_voice_id=_getenv_str("TTS_DEFAULT_VOICE_ID", DEFAULT_VOICE_ID),
            tts_timeout_ms=max(0, _getenv_int("TTS_TIMEOUT_MS", 15000)),
            tts_request_spacing_ms=max(0, _getenv_int("TTS_REQUEST_SPACING_MS", 100)),
            transcribing_placeholder=_getenv_str("TRANSCRIBING_PLACEHOLDER", TRANSCRIBING_PLACEHOLDER),
            session_queue_max=max(1, _getenv_int("SESSION_QUEUE_MAX", 1024)),
            ws_max_frame_bytes=_getenv_int("WS_MAX_FRAME_BYTES", 262_144),
            call_archive_dir=_getenv_str("CALL_ARCHIVE_DIR", "data/calls"),
            scenario_voices_path=_getenv_str("SCENARIO_VOICES_FILE", ""),
            analysis_provider=analysis_provider,
            openai_api_key=_getenv_str("OPENAI_API_KEY", ""),
            openai_model=_getenv_str("OPENAI_MODEL", "gpt-4o-mini"),
            openai_timeout_ms=_getenv_int("OPENAI_TIMEOUT_MS", 20000),
            structured_logging=_getenv_bool("STRUCTURED_LOGGING", False),
            log_level=log_level,
        )
