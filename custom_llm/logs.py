from __future__ import annotations

import json
import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        stream=sys.stderr,
        format="[%(asctime)s] %(levelname)s %(name)s %(message)s",
    )


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    component: str,
    level: int = logging.INFO,
    exc_info: bool = False,
    **payload: object,
) -> None:
    """Emit one compact JSON object per event so call logs stay grep/jq friendly."""
    if not logger.isEnabledFor(level):
        return
    base: dict[str, object] = {"component": component, "event": event}
    base.update(payload)
    logger.log(level, json.dumps(base, sort_keys=True, separators=(",", ":"), default=str), exc_info=exc_info)
