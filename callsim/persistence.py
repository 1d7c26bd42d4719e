from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .logs import log_event

logger = logging.getLogger(__name__)


CallType = Literal["medical", "fire", "police", "other"]
CallStatus = Literal["pending", "in_progress", "completed", "cancelled"]

RECORD_FILE = "call.json"
TRANSCRIPT_FILE = "transcript.txt"
AUDIO_FILE = "call.mp3"


class ArchiveError(Exception):
    """The call could not be written to (or read from) the archive."""


class CallRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    call_id: str
    call_type: CallType = "other"
    call_status: CallStatus = "completed"
    priority_level: int = 1
    scenario: Optional[str] = None
    agents: list[str] = Field(default_factory=list)
    active_agent: Optional[str] = None

    start_time_ms: int = 0
    end_time_ms: int = 0
    duration_s: int = 0

    # Filled by post-call transcript analysis.
    caller_name: Optional[str] = None
    caller_phone: Optional[str] = None
    caller_address: Optional[str] = None
    description: Optional[str] = None
    dispatcher_notes: Optional[str] = None

    transcript_path: Optional[str] = None
    recording_path: Optional[str] = None
    items: list[dict[str, Any]] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)


def _safe_call_id(call_id: str) -> str:
    cid = str(call_id or "").strip()
    if not cid or cid in {".", ".."} or "/" in cid or "\\" in cid:
        raise ArchiveError(f"invalid call id: {call_id!r}")
    return cid


class LocalCallArchive:
    """
    Directory-per-call archive.

    <root>/<call_id>/call.json        CallRecord
    <root>/<call_id>/transcript.txt   Dispatcher/Caller lines
    <root>/<call_id>/call.mp3         synthesized caller audio, concatenated in arrival order
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _dir(self, call_id: str) -> Path:
        return self._root / _safe_call_id(call_id)

    def save(self, record: CallRecord, transcript_text: str, audio_chunks: Sequence[bytes] = ()) -> CallRecord:
        call_dir = self._dir(record.call_id)
        tmp_dir = call_dir.with_name(call_dir.name + ".tmp")
        updates: dict[str, Any] = {}
        try:
            if tmp_dir.exists():
                shutil.rmtree(tmp_dir)
            tmp_dir.mkdir(parents=True)
            if transcript_text:
                (tmp_dir / TRANSCRIPT_FILE).write_text(transcript_text, encoding="utf-8")
                updates["transcript_path"] = str(call_dir / TRANSCRIPT_FILE)
            audio = b"".join(chunk for chunk in audio_chunks if chunk)
            if audio:
                (tmp_dir / AUDIO_FILE).write_bytes(audio)
                updates["recording_path"] = str(call_dir / AUDIO_FILE)
            saved = record.model_copy(update=updates)
            (tmp_dir / RECORD_FILE).write_text(saved.model_dump_json(indent=2), encoding="utf-8")
            if call_dir.exists():
                shutil.rmtree(call_dir)
            tmp_dir.rename(call_dir)
        except OSError as e:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise ArchiveError(f"failed to save call {record.call_id}: {e}") from e

        log_event(
            logger,
            "call_saved",
            call_id=saved.call_id,
            transcript_chars=len(transcript_text),
            audio_bytes=len(audio),
        )
        return saved

    def get(self, call_id: str) -> Optional[CallRecord]:
        path = self._dir(call_id) / RECORD_FILE
        if not path.exists():
            return None
        try:
            return CallRecord.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError) as e:
            raise ArchiveError(f"unreadable call record {call_id}: {e}") from e

    def list(self) -> list[CallRecord]:
        """All readable calls, newest first (by end time)."""
        if not self._root.exists():
            return []
        records: list[CallRecord] = []
        for child in self._root.iterdir():
            if not child.is_dir() or child.name.endswith(".tmp"):
                continue
            try:
                record = self.get(child.name)
            except ArchiveError as e:
                log_event(logger, "call_unreadable", level=logging.WARNING, call_id=child.name, error=str(e)[:200])
                continue
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: (r.end_time_ms, r.call_id), reverse=True)
        return records

    def latest(self) -> Optional[CallRecord]:
        records = self.list()
        return records[0] if records else None

    def transcript(self, call_id: str) -> Optional[str]:
        path = self._dir(call_id) / TRANSCRIPT_FILE
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise ArchiveError(f"unreadable transcript {call_id}: {e}") from e

    def update(self, call_id: str, **fields: Any) -> CallRecord:
        current = self.get(call_id)
        if current is None:
            raise ArchiveError(f"call not found: {call_id}")
        updated = current.model_copy(update=fields)
        path = self._dir(call_id) / RECORD_FILE
        try:
            path.write_text(updated.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            raise ArchiveError(f"failed to update call {call_id}: {e}") from e
        return updated
