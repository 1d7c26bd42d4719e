from __future__ import annotations

from callsim.config import DEFAULT_VOICE_ID, SimConfig


def test_defaults() -> None:
    cfg = SimConfig()
    assert cfg.tts_enabled is True
    assert cfg.tts_default_voice_id == DEFAULT_VOICE_ID
    assert cfg.transcribing_placeholder == "Transcribing…"
    assert cfg.analysis_provider == "off"


def test_from_env_reads_values(monkeypatch) -> None:
    monkeypatch.setenv("TTS_ENABLED", "no")
    monkeypatch.setenv("ELEVENLABS_BASE_URL", "https://tts.example/")
    monkeypatch.setenv("TTS_TIMEOUT_MS", "2500")
    monkeypatch.setenv("CALL_ARCHIVE_DIR", "/tmp/calls")
    monkeypatch.setenv("ANALYSIS_PROVIDER", "OpenAI")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    cfg = SimConfig.from_env()
    assert cfg.tts_enabled is False
    assert cfg.elevenlabs_base_url == "https://tts.example"
    assert cfg.tts_timeout_ms == 2500
    assert cfg.call_archive_dir == "/tmp/calls"
    assert cfg.analysis_provider == "openai"
    assert cfg.log_level == "DEBUG"


def test_from_env_invalid_values_fall_back(monkeypatch) -> None:
    monkeypatch.setenv("TTS_TIMEOUT_MS", "soon")
    monkeypatch.setenv("SESSION_QUEUE_MAX", "0")
    monkeypatch.setenv("ANALYSIS_PROVIDER", "gemini")
    monkeypatch.setenv("LOG_LEVEL", "chatty")
    monkeypatch.setenv("TRANSCRIBING_PLACEHOLDER", "   ")
    cfg = SimConfig.from_env()
    assert cfg.tts_timeout_ms == 15000
    assert cfg.session_queue_max == 1
    assert cfg.analysis_provider == "off"
    assert cfg.log_level == "INFO"
    assert cfg.transcribing_placeholder == "Transcribing…"
