from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from .clock import Clock, RealClock
from .config import DEFAULT_VOICE_ID, SimConfig
from .logs import log_event

logger = logging.getLogger(__name__)

# Provider statuses that mean "no audio right now" rather than a broken request.
UNAVAILABLE_STATUSES = frozenset({401, 429, 503})


class SynthesisError(Exception):
    """Hard synthesis failure (bad request, provider error, transport failure)."""


class Synthesizer(Protocol):
    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> bytes:
        """Audio bytes, or b"" when the provider is unavailable."""
        ...

    async def aclose(self) -> None:
        ...


@dataclass
class FakeSynthesizer:
    """
    Deterministic synthesizer for tests.

    - Records every call in `calls`.
    - `delay_ms` parks each call on the clock so tests can interleave events.
    - `fail` raises SynthesisError; `unavailable` returns b"".
    """

    clock: Clock = field(default_factory=RealClock)
    delay_ms: int = 0
    fail: bool = False
    unavailable: bool = False
    calls: list[tuple[str, Optional[str]]] = field(default_factory=list)

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> bytes:
        self.calls.append((text, voice_id))
        if self.delay_ms > 0:
            await self.clock.sleep_ms(self.delay_ms)
        if self.fail:
            raise SynthesisError("fake synthesis failure")
        if self.unavailable:
            return b""
        return f"audio:{voice_id}:{text}".encode("utf-8")

    async def aclose(self) -> None:
        return


class ElevenLabsSynthesizer:
    """
    ElevenLabs text-to-speech over HTTP.

    Requests are serialized through one lock with a short spacing delay; the provider
    rejects concurrent bursts on lower tiers. A missing API key, 401, 429 and 503 all
    mean "unavailable" and return b"" so callers keep the transcript and skip audio.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.elevenlabs.io",
        model_id: str = "eleven_multilingual_v2",
        default_voice_id: str = DEFAULT_VOICE_ID,
        timeout_ms: int = 15000,
        request_spacing_ms: int = 100,
        clock: Optional[Clock] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model_id = model_id
        self._default_voice_id = default_voice_id
        self._timeout_s = max(1.0, timeout_ms / 1000.0)
        self._spacing_ms = int(request_spacing_ms)
        self._clock = clock or RealClock()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, cfg: SimConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ElevenLabsSynthesizer":
        return cls(
            api_key=cfg.elevenlabs_api_key,
            base_url=cfg.elevenlabs_base_url,
            model_id=cfg.elevenlabs_model_id,
            default_voice_id=cfg.tts_default_voice_id,
            timeout_ms=cfg.tts_timeout_ms,
            request_spacing_ms=cfg.tts_request_spacing_ms,
            transport=transport,
        )

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout_s,
                transport=self._transport,
            )
        return self._client

    def _payload(self, text: str) -> dict[str, Any]:
        return {
            "text": text,
            "model_id": self._model_id,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.8,
                "style": 0.7,
                "use_speaker_boost": True,
            },
        }

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> bytes:
        if not text.strip():
            raise SynthesisError("missing text")
        if not self._api_key:
            log_event(logger, "tts_unavailable", reason="no_api_key")
            return b""

        used_voice = voice_id or self._default_voice_id
        async with self._lock:
            try:
                return await self._request(text, used_voice)
            finally:
                if self._spacing_ms > 0:
                    await self._clock.sleep_ms(self._spacing_ms)

    async def _request(self, text: str, voice_id: str) -> bytes:
        client = self._ensure_client()
        try:
            resp = await client.post(
                f"/v1/text-to-speech/{voice_id}",
                json=self._payload(text),
                headers={
                    "xi-api-key": self._api_key,
                    "Accept": "audio/mpeg",
                },
            )
        except httpx.TimeoutException as e:
            raise SynthesisError("tts request timed out") from e
        except httpx.HTTPError as e:
            raise SynthesisError(f"tts transport error: {type(e).__name__}") from e

        if resp.status_code in UNAVAILABLE_STATUSES:
            log_event(logger, "tts_unavailable", reason="provider_status", status=resp.status_code)
            return b""
        if resp.status_code >= 400:
            raise SynthesisError(f"tts provider error {resp.status_code}: {resp.text[:200]}")
        return resp.content

    async def aclose(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None


def build_synthesizer(cfg: SimConfig) -> Optional[Synthesizer]:
    if not cfg.tts_enabled:
        return None
    return ElevenLabsSynthesizer.from_config(cfg)
