from __future__ import annotations

import logging
import os
from typing import Optional


# Third-party loggers that log per packet at DEBUG/INFO.
NOISY_LOGGERS = ("aioice", "aiortc", "websockets")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def resolve_level(level: Optional[str] = None) -> int:
    name = (level or os.environ.get("AYAME_LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {level or name}")
    return resolved


def setup_logging(level: Optional[str] = None, debug: bool = False) -> None:
    """Configure console logging for the ``ayame-client`` command.

    The library only emits through module loggers. Engine and WebSocket
    loggers stay at WARNING unless ``debug`` is set.
    """

    effective_level = resolve_level(level)

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=effective_level, format=LOG_FORMAT)
    else:
        root.setLevel(effective_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET if debug else max(effective_level, logging.WARNING))
