from __future__ import annotations

from typing import Any, Optional

from .transcript import ItemKind, ItemStatus, TranscriptItem, TranscriptStore


class BreadcrumbEmitter:
    """
    Non-message timeline entries (tool calls, agent selection).

    Breadcrumbs live in the same store as messages so they share its creation-time
    ordering. Tool-call breadcrumbs are keyed by the tool-call item id so a later record
    for the same call can attach its output; other breadcrumbs get generated ids.
    """

    def __init__(self, *, store: TranscriptStore, session_id: str) -> None:
        self._store = store
        self._session_id = session_id
        self._seq = 0

    def _next_id(self) -> str:
        self._seq += 1
        return f"{self._session_id}:crumb:{self._seq}"

    def emit(self, title: str, payload: Optional[dict[str, Any]] = None, *, item_id: Optional[str] = None) -> TranscriptItem:
        crumb_id = item_id or self._next_id()
        item, _ = self._store.upsert(
            crumb_id,
            kind=ItemKind.BREADCRUMB,
            content=title,
            status=ItemStatus.DONE,
            annotation=payload,
        )
        return item

    def tool_call(self, item_id: str, *, name: str, arguments: Any = None, output: Any = None) -> TranscriptItem:
        payload: dict[str, Any] = {"tool": name, "arguments": arguments}
        if output is not None:
            payload["output"] = output
        return self.emit(f"Tool call: {name}", payload, item_id=item_id)

    def attach(self, item_id: str, **fields: Any) -> bool:
        """Merge late-arriving detail (e.g. output) into an existing breadcrumb's annotation."""
        item = self._store.get(item_id)
        if item is None or item.kind != ItemKind.BREADCRUMB:
            return False
        updates = {k: v for k, v in fields.items() if v is not None}
        if not updates:
            return False
        current = dict(item.annotation or {})
        if all(current.get(k) == v for k, v in updates.items()):
            return False
        current.update(updates)
        return self._store.patch(item_id, annotation=current)

    def agent(self, name: str, *, reason: str = "selected") -> TranscriptItem:
        return self.emit(f"Agent: {name}", {"agent": name, "reason": reason})
