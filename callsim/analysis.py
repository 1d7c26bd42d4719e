from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, ValidationError

from .config import SimConfig
from .logs import log_event
from .persistence import ArchiveError, CallRecord, LocalCallArchive

logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    """Transcript analysis failed (provider error, non-JSON reply, missing transcript)."""


class TranscriptAnalysis(BaseModel):
    model_config = ConfigDict(extra="ignore")

    caller_name: Optional[str] = None
    caller_address: Optional[str] = None
    caller_phone: Optional[str] = None
    description: Optional[str] = None


SYSTEM_PROMPT = (
    "You are a helpful assistant that extracts structured information from call transcripts. "
    "Always respond with valid JSON only."
)


def build_prompt(transcript: str) -> str:
    return (
        "Analyze this call transcript and extract:\n"
        '1. Full caller name (if provided) in "First Last" format\n'
        "2. Complete address (if mentioned)\n"
        "3. Phone number (convert to XXX-XXX-XXXX format if provided)\n"
        "4. Brief description (4-5 words maximum)\n\n"
        "Return ONLY a valid JSON object with NULL for missing fields. Example:\n"
        "{\n"
        '  "caller_name": null,\n'
        '  "caller_address": "123 Main St",\n'
        '  "caller_phone": "555-123-4567",\n'
        '  "description": "Abandoned vehicle on street"\n'
        "}\n\n"
        f"Transcript:\n{transcript}"
    )


_FENCE_PAT = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.S)


def parse_analysis(raw: str) -> TranscriptAnalysis:
    text = (raw or "").strip()
    m = _FENCE_PAT.match(text)
    if m is not None:
        text = m.group(1)
    try:
        obj = json.loads(text)
    except ValueError as e:
        raise AnalysisError("analysis reply was not valid JSON") from e
    if not isinstance(obj, dict):
        raise AnalysisError("analysis reply was not a JSON object")
    try:
        return TranscriptAnalysis.model_validate(obj)
    except ValidationError as e:
        raise AnalysisError(f"analysis reply had unexpected fields: {e.error_count()} errors") from e


class TranscriptAnalyzer(Protocol):
    async def analyze(self, transcript: str) -> TranscriptAnalysis: ...

    async def aclose(self) -> None: ...


@dataclass
class FakeTranscriptAnalyzer:
    result: TranscriptAnalysis = field(default_factory=TranscriptAnalysis)
    fail: bool = False
    calls: list[str] = field(default_factory=list)

    async def analyze(self, transcript: str) -> TranscriptAnalysis:
        self.calls.append(transcript)
        if self.fail:
            raise AnalysisError("fake analysis failure")
        return self.result

    async def aclose(self) -> None:
        return


class OpenAITranscriptAnalyzer:
    """
    Chat-completions extraction of caller details.

    Lazy-imports the `openai` package so the simulator runs without it when analysis is off.
    """

    def __init__(self, *, api_key: Optional[str] = None, model: str = "gpt-4o-mini", timeout_ms: int = 20000) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_ms = int(timeout_ms)
        self._client: Any = None

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from openai import AsyncOpenAI  # type: ignore[import-not-found]
        except Exception as e:
            raise AnalysisError(
                "OpenAITranscriptAnalyzer requires the optional dependency 'openai'. "
                "Install with: python3 -m pip install -e '.[openai]'"
            ) from e
        self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def analyze(self, transcript: str) -> TranscriptAnalysis:
        if not transcript.strip():
            raise AnalysisError("empty transcript")
        client = self._ensure_client()
        try:
            completion = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(transcript)},
                ],
                timeout=max(1.0, self.timeout_ms / 1000.0),
            )
        except Exception as e:
            raise AnalysisError(f"analysis provider error: {type(e).__name__}") from e

        try:
            content = completion.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise AnalysisError("analysis reply had no choices") from e
        if not content:
            raise AnalysisError("empty analysis reply")
        return parse_analysis(str(content))

    async def aclose(self) -> None:
        if self._client is not None:
            close_fn = getattr(self._client, "close", None)
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res
            self._client = None


def build_analyzer(cfg: SimConfig) -> Optional[TranscriptAnalyzer]:
    if cfg.analysis_provider != "openai":
        return None
    return OpenAITranscriptAnalyzer(
        api_key=cfg.openai_api_key or None,
        model=cfg.openai_model,
        timeout_ms=cfg.openai_timeout_ms,
    )


async def process_call_transcript(
    *,
    archive: LocalCallArchive,
    analyzer: TranscriptAnalyzer,
    call_id: str,
) -> CallRecord:
    """Analyze an archived call's transcript and write the extracted caller details back."""
    record = archive.get(call_id)
    if record is None:
        raise ArchiveError(f"call not found: {call_id}")
    transcript = archive.transcript(call_id)
    if not transcript:
        raise AnalysisError(f"missing transcript for call {call_id}")

    analysis = await analyzer.analyze(transcript)
    updated = archive.update(call_id, **analysis.model_dump())
    log_event(
        logger,
        "call_analyzed",
        call_id=call_id,
        has_name=analysis.caller_name is not None,
        has_address=analysis.caller_address is not None,
        has_phone=analysis.caller_phone is not None,
    )
    return updated
