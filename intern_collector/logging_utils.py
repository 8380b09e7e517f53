from __future__ import annotations

import json
import logging
from typing import Any, Dict

_CONFIGURED = False


def configure_logging(level: str = "INFO", *, fmt: str = "%(asctime)s %(levelname)s %(name)s %(message)s") -> None:
    """Install a root handler once; later calls only adjust the level."""

    global _CONFIGURED
    root = logging.getLogger()
    if not _CONFIGURED and not root.handlers:
        logging.basicConfig(level=level.upper(), format=fmt)
    root.setLevel(level.upper())
    _CONFIGURED = True


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Log a single-line JSON event for easy parsing in log aggregators."""

    payload: Dict[str, Any] = {"event": event, **fields}
    try:
        msg = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        safe_payload = {
            k: (v if isinstance(v, (str, int, float, bool)) or v is None else repr(v)) for k, v in payload.items()
        }
        msg = json.dumps(safe_payload, ensure_ascii=False, sort_keys=True)
    logger.log(level, msg)
