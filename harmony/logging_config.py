from __future__ import annotations

import logging
import os
from typing import Optional


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Libraries that log every frame or STUN packet at DEBUG.
_NOISY = ("aioice", "aiortc", "websockets")


def resolve_level(level: Optional[str] = None) -> int:
    """Map a flag or ``HARMONY_LOG_LEVEL`` value to a logging level, INFO when unknown."""

    name = (level or os.environ.get("HARMONY_LOG_LEVEL") or "INFO").strip().upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        logging.getLogger(__name__).warning("unknown log level %r, using INFO", name)
        return logging.INFO
    return resolved


def setup_logging(level: Optional[str] = None) -> None:
    """Configure console logging for the session client and the relay.

    Both run headless; reconnects, reconciliation passes and handshakes are
    only visible here.
    """

    effective = resolve_level(level)
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(effective)
    else:
        logging.basicConfig(level=effective, format=LOG_FORMAT)

    if effective <= logging.DEBUG:
        for name in _NOISY:
            logging.getLogger(name).setLevel(logging.INFO)
