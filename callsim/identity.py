"""
Item identity for inbound session events.

Field aliases are listed in priority order; the first present, non-empty value wins.
Only delta events may fall back to a response-scoped key, and only when no explicit id
is present. Fallback keys live under their own prefix so they can never collide with
ids minted by the realtime backend.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional


ITEM_ID_ALIASES: tuple[str, ...] = ("item_id", "itemId")
HISTORY_ITEM_ID_ALIASES: tuple[str, ...] = ("item_id", "itemId", "id")
RESPONSE_ID_ALIASES: tuple[str, ...] = ("response_id", "responseId")
DELTA_ALIASES: tuple[str, ...] = ("delta", "text")
TRANSCRIPT_ALIASES: tuple[str, ...] = ("transcript", "text")

FALLBACK_PREFIX = "resp:"


def first_present(obj: Mapping[str, Any], aliases: tuple[str, ...]) -> Optional[Any]:
    for key in aliases:
        value = obj.get(key)
        if value is None:
            continue
        if isinstance(value, str) and value == "":
            continue
        return value
    return None


def fallback_item_id(response_id: str) -> str:
    return f"{FALLBACK_PREFIX}{response_id}"


def is_fallback_id(item_id: str) -> bool:
    return str(item_id).startswith(FALLBACK_PREFIX)


def resolve_item_id(*, item_id: Optional[str], response_id: Optional[str] = None) -> Optional[str]:
    """
    Explicit id first; response-scoped fallback second; None when neither exists.

    A fallback key is best-effort: the authoritative record for the same turn may later
    arrive under its explicit id and will then create its own item.
    """
    explicit = str(item_id).strip() if item_id is not None else ""
    if explicit:
        return explicit
    rid = str(response_id).strip() if response_id is not None else ""
    if rid:
        return fallback_item_id(rid)
    return None
