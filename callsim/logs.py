from __future__ import annotations

import json
import logging

_STRUCTURED = False


def configure_logging(*, level: str = "INFO", structured: bool = False) -> None:
    global _STRUCTURED
    _STRUCTURED = bool(structured)
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s %(message)s",
    )


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **payload: object) -> None:
    if not logger.isEnabledFor(level):
        return
    if _STRUCTURED:
        base: dict[str, object] = {"event": event}
        base.update(payload)
        logger.log(level, json.dumps(base, sort_keys=True, separators=(",", ":"), default=str))
        return
    fields = " ".join(f"{k}={payload[k]!r}" for k in sorted(payload))
    logger.log(level, f"{event} {fields}".rstrip())
