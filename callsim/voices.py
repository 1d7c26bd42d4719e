from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .config import DEFAULT_VOICE_ID


@dataclass(frozen=True, slots=True)
class VoiceEntry:
    name: str
    voice_id: str
    description: str
    character_types: tuple[str, ...] = ()


VOICES: tuple[VoiceEntry, ...] = (
    VoiceEntry("Default", DEFAULT_VOICE_ID, "Neutral default voice", ("fallback",)),
    VoiceEntry(
        "Rachel",
        "21m00Tcm4TlvDq8ikWAM",
        "Versatile female voice - elderly, frightened, worried mothers",
        ("Elderly Female", "Female Frightened", "Upset Mother", "Female Worried", "Older Female", "Frantic Woman"),
    ),
    VoiceEntry(
        "Josh",
        "TxGEqnHWrfWFTfGW9XjX",
        "Professional confident male voice",
        ("Male Professional", "Male", "Confident Male", "Security Operator", "Manager"),
    ),
    VoiceEntry(
        "Arnold",
        "ErXwobaYiN019PkySvjV",
        "Older male voice - anxious, worried fathers, angry older men",
        ("Male Older", "Older Male", "Father Worried", "Angry Older Male", "Anxious Male"),
    ),
    VoiceEntry(
        "Elli",
        "MF3mGyEYCl7XYWbV9V6O",
        "Young female voice - calm, teen to adult",
        ("Female", "Teen Female", "Young Female", "Adult Female", "Teen Girl", "Concerned Mother"),
    ),
    VoiceEntry(
        "Adam",
        "pNInz6obpgDQGcFmaJgB",
        "Young male voice - agitated teens, young men",
        ("Young Male Agitated", "Teen Male", "Young Male", "Teen Boy", "Young Man"),
    ),
    VoiceEntry(
        "Domi",
        "AZnzlk1XvdvUeBnXmlld",
        "Scared female voice - whispered, panicked, crying",
        ("Woman Scared", "Female Crying", "Frightened Female", "Panicked Female", "Whispering Female"),
    ),
    VoiceEntry(
        "Antoni",
        "pqHfZKP75CvOlQylNhV4",
        "Professional older male voice - authoritative",
        ("Professional Older Male", "Adult Male", "EMT Male", "Authoritative Male"),
    ),
    VoiceEntry(
        "Bella",
        "EXAVITQu4vr4xnSDxMaL",
        "Calm female voice for neutral scenarios",
        ("Neutral Female", "Professional Female", "Calm Female"),
    ),
    VoiceEntry(
        "Charlie",
        "IKne3meq5aSn9XLyUdCD",
        "Male voice for urgent scenarios",
        ("Panicked Male", "Urgent Male", "Male Yelling", "Breathless Male"),
    ),
)

_BY_NAME = {v.name.lower(): v for v in VOICES}


def voice_by_name(name: str) -> Optional[VoiceEntry]:
    return _BY_NAME.get((name or "").strip().lower())


def voice_for_agent(agent_name: str, *, default_voice_id: str = DEFAULT_VOICE_ID) -> str:
    # Agent names carry the character first ("Rachel ", "Arnold - worried father").
    words = (agent_name or "").strip().split()
    entry = voice_by_name(words[0]) if words else None
    return entry.voice_id if entry is not None else default_voice_id


def voice_for_character(description: str) -> VoiceEntry:
    """Best catalog voice for a free-form character description (exact type, then keywords)."""
    for entry in VOICES:
        if description in entry.character_types:
            return entry

    d = (description or "").lower()

    def pick(name: str) -> VoiceEntry:
        return _BY_NAME.get(name.lower(), VOICES[0])

    if any(w in d for w in ("female", "woman", "girl", "mother")):
        if any(w in d for w in ("scared", "frightened", "crying", "panicked")):
            return pick("Domi")
        if any(w in d for w in ("elderly", "older", "agitated")):
            return pick("Rachel")
        if any(w in d for w in ("teen", "young")):
            return pick("Elli")
        return pick("Rachel")

    if any(w in d for w in ("male", "man", "boy", "father")):
        if any(w in d for w in ("professional", "manager", "operator", "emt")):
            return pick("Antoni")
        if any(w in d for w in ("older", "elderly", "worried", "anxious")):
            return pick("Arnold")
        if any(w in d for w in ("teen", "young", "agitated")):
            return pick("Adam")
        if any(w in d for w in ("panicked", "urgent", "yelling")):
            return pick("Charlie")
        return pick("Josh")

    return VOICES[0]


def load_scenario_voices(path: str) -> dict[str, str]:
    """Scenario key -> voice id, from a JSON object file. Missing or invalid files yield {}."""
    if not path:
        return {}
    p = Path(path)
    if not p.exists():
        return {}
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    if not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items() if isinstance(v, str) and v.strip()}


@dataclass(frozen=True, slots=True)
class VoiceResolver:
    """Scenario override first, then the agent-name default, then the catalog default."""

    scenario_key: Optional[str] = None
    scenario_voices: Mapping[str, str] = field(default_factory=dict)
    default_voice_id: str = DEFAULT_VOICE_ID

    def resolve(self, agent_name: Optional[str]) -> str:
        if self.scenario_key:
            override = self.scenario_voices.get(self.scenario_key)
            if override:
                return override
        if agent_name:
            return voice_for_agent(agent_name, default_voice_id=self.default_voice_id)
        return self.default_voice_id
