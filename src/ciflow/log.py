# log.py
from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | int = "WARNING") -> logging.Logger:
    """
    Attach a single stderr handler to the `ciflow` logger.

    Safe to call more than once; the handler is replaced, not duplicated.
    """
    logger = logging.getLogger("ciflow")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING
    logger.setLevel(level)

    for h in list(logger.handlers):
        if getattr(h, "_ciflow", False):
            logger.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._ciflow = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger
