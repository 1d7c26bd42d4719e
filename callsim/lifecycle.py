from __future__ import annotations

from typing import Optional

from .transcript import (
    GUARDRAIL_PASS,
    GuardrailResult,
    GuardrailStatus,
    ItemStatus,
)


_STATUS_RANK = {
    ItemStatus.PENDING: 0,
    ItemStatus.IN_PROGRESS: 1,
    ItemStatus.DONE: 2,
}


def advance_status(current: ItemStatus, requested: ItemStatus) -> ItemStatus:
    """Message status only moves forward; DONE is terminal."""
    if _STATUS_RANK[requested] > _STATUS_RANK[current]:
        return requested
    return current


def is_regression(current: ItemStatus, requested: ItemStatus) -> bool:
    return _STATUS_RANK[requested] < _STATUS_RANK[current]


def status_from_history(raw: Optional[str]) -> ItemStatus:
    # Finalized history records only distinguish completed from everything else.
    if str(raw or "").strip().lower() == "completed":
        return ItemStatus.DONE
    return ItemStatus.IN_PROGRESS


def pending_guardrail() -> GuardrailResult:
    return GuardrailResult(status=GuardrailStatus.IN_PROGRESS)


def default_pass() -> GuardrailResult:
    return GuardrailResult(status=GuardrailStatus.DONE, category=GUARDRAIL_PASS)


def violation(category: str, *, rationale: str = "", test_text: str = "") -> GuardrailResult:
    return GuardrailResult(
        status=GuardrailStatus.DONE,
        category=category or "OFF_BRAND",
        rationale=rationale,
        test_text=test_text,
    )


def merge_guardrail(
    current: Optional[GuardrailResult],
    incoming: GuardrailResult,
    *,
    only_if_pending: bool = False,
) -> Optional[GuardrailResult]:
    """
    Resolve the next guardrail verdict, or None when nothing should change.

    - A resolved verdict never returns to IN_PROGRESS.
    - only_if_pending marks the default-pass-on-completion path: it fills in a missing or
      pending verdict and never overrides an explicit one.
    - An explicit violation is terminal: it replaces a pending verdict or a default pass,
      but a later default pass cannot clear it.
    """
    if current is None:
        return incoming
    if current.status == GuardrailStatus.IN_PROGRESS:
        if incoming == current:
            return None
        return incoming
    # current is DONE from here on.
    if only_if_pending or incoming.status == GuardrailStatus.IN_PROGRESS:
        return None
    if current.category not in (None, GUARDRAIL_PASS):
        return None
    if incoming == current:
        return None
    return incoming
