from __future__ import annotations

import bisect
import logging
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Iterator, Literal, Optional

from .clock import Clock
from .logs import log_event
from .metrics import M, Metrics

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant"]


class ItemKind(str, Enum):
    MESSAGE = "MESSAGE"
    BREADCRUMB = "BREADCRUMB"


class ItemStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class GuardrailStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


GUARDRAIL_PASS = "NONE"
GUARDRAIL_OFF_BRAND = "OFF_BRAND"


@dataclass(frozen=True, slots=True)
class GuardrailResult:
    status: GuardrailStatus = GuardrailStatus.IN_PROGRESS
    category: Optional[str] = None
    rationale: str = ""
    test_text: str = ""

    @property
    def passed(self) -> Optional[bool]:
        if self.status != GuardrailStatus.DONE:
            return None
        return self.category in (None, GUARDRAIL_PASS)


@dataclass(slots=True)
class TranscriptItem:
    item_id: str
    kind: ItemKind
    created_at_ms: int
    seq: int
    role: Optional[Role] = None
    content: str = ""
    status: ItemStatus = ItemStatus.PENDING
    guardrail: Optional[GuardrailResult] = None
    hidden: bool = False
    annotation: Optional[dict[str, Any]] = None

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.created_at_ms, self.seq)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["kind"] = self.kind.value
        out["status"] = self.status.value
        if self.guardrail is not None:
            out["guardrail"]["status"] = self.guardrail.status.value
        return out


# Fields that define an item's identity and ordering; patch() never touches them.
_IMMUTABLE_FIELDS = frozenset({"item_id", "kind", "created_at_ms", "seq"})
_PATCHABLE_FIELDS = frozenset(f.name for f in fields(TranscriptItem)) - _IMMUTABLE_FIELDS


class TranscriptStore:
    """
    Ordered, id-unique collection of transcript items.

    - Items are ordered by (created_at_ms, seq); seq is a per-store insertion counter so
      equal timestamps keep arrival order.
    - At most one item exists per item_id; mutations for unknown ids are logged no-ops.
    - Single writer (the reconciliation engine); readers get copies via snapshot().
    """

    def __init__(self, *, clock: Clock, metrics: Optional[Metrics] = None) -> None:
        self._clock = clock
        self._metrics = metrics if metrics is not None else Metrics()
        self._by_id: dict[str, TranscriptItem] = {}
        self._order: list[TranscriptItem] = []
        self._keys: list[tuple[int, int]] = []
        self._seq = 0

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._by_id

    def __iter__(self) -> Iterator[TranscriptItem]:
        return iter(list(self._order))

    def get(self, item_id: str) -> Optional[TranscriptItem]:
        return self._by_id.get(item_id)

    def items(self) -> list[TranscriptItem]:
        return list(self._order)

    def upsert(
        self,
        item_id: str,
        *,
        kind: ItemKind = ItemKind.MESSAGE,
        role: Optional[Role] = None,
        content: str = "",
        status: ItemStatus = ItemStatus.PENDING,
        guardrail: Optional[GuardrailResult] = None,
        hidden: bool = False,
        annotation: Optional[dict[str, Any]] = None,
        created_at_ms: Optional[int] = None,
    ) -> tuple[TranscriptItem, bool]:
        """Create the item if absent. Returns (item, created); existing items are left untouched."""
        existing = self._by_id.get(item_id)
        if existing is not None:
            return existing, False

        self._seq += 1
        item = TranscriptItem(
            item_id=item_id,
            kind=kind,
            created_at_ms=self._clock.now_ms() if created_at_ms is None else int(created_at_ms),
            seq=self._seq,
            role=role,
            content=content,
            status=status,
            guardrail=guardrail,
            hidden=hidden,
            annotation=dict(annotation) if annotation is not None else None,
        )
        idx = bisect.bisect_right(self._keys, item.sort_key)
        self._keys.insert(idx, item.sort_key)
        self._order.insert(idx, item)
        self._by_id[item_id] = item
        self._metrics.inc(M["items_created_total"], 1)
        self._metrics.set(M["items_current"], len(self._order))
        return item, True

    def append_content(self, item_id: str, delta: str) -> bool:
        item = self._lookup(item_id, op="append_content")
        if item is None:
            return False
        item.content += delta
        return True

    def replace_content(self, item_id: str, final_text: str) -> bool:
        item = self._lookup(item_id, op="replace_content")
        if item is None:
            return False
        item.content = final_text
        return True

    def patch(self, item_id: str, **partial: Any) -> bool:
        item = self._lookup(item_id, op="patch")
        if item is None:
            return False
        unknown = set(partial) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"patch(): unsupported fields {sorted(unknown)}")
        for name, value in partial.items():
            setattr(item, name, value)
        return True

    def latest(self, *, role: Optional[Role] = None, kind: ItemKind = ItemKind.MESSAGE) -> Optional[TranscriptItem]:
        """Most recently created item (by creation order) matching role/kind."""
        for item in reversed(self._order):
            if item.kind != kind:
                continue
            if role is not None and item.role != role:
                continue
            return item
        return None

    def snapshot(self) -> list[dict[str, Any]]:
        return [item.to_dict() for item in self._order]

    def transcript_text(self) -> str:
        """Caller/dispatcher lines for persistence; breadcrumbs and hidden items are omitted."""
        lines: list[str] = []
        for item in self._order:
            if item.kind != ItemKind.MESSAGE or item.hidden:
                continue
            text = item.content.strip()
            if not text:
                continue
            speaker = "Dispatcher" if item.role == "user" else "Caller"
            lines.append(f"{speaker}: {text}")
        return "\n".join(lines)

    def _lookup(self, item_id: str, *, op: str) -> Optional[TranscriptItem]:
        item = self._by_id.get(item_id)
        if item is None:
            self._metrics.inc(M["unknown_item_total"], 1)
            log_event(logger, "unknown_item", level=logging.WARNING, op=op, item_id=item_id)
        return item


def with_guardrail(result: Optional[GuardrailResult], **changes: Any) -> GuardrailResult:
    base = result if result is not None else GuardrailResult()
    return replace(base, **changes)
