"""Diagnostic logging setup. Logs always go to stderr; stdout carries data only."""

from __future__ import annotations

import logging
import os
import sys
from typing import TextIO

LOG_LEVEL_ENV = "XSQL_LOG_LEVEL"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARNING": logging.WARNING, "ERROR": logging.ERROR}


def level_from_env(environ: dict[str, str] | None = None) -> int:
    """Return the level named by ``XSQL_LOG_LEVEL``, defaulting to INFO."""

    env = os.environ if environ is None else environ
    name = env.get(LOG_LEVEL_ENV, "").strip().upper()
    if name == "WARN":
        name = "WARNING"
    return _LEVELS.get(name, logging.INFO)


def configure_logging(stream: TextIO | None = None, level: int | None = None) -> logging.Logger:
    """Install one stderr handler on the ``xsql`` logger.

    Calling this again replaces the previous handler, so tests and repeated
    CLI invocations in one process do not stack handlers.
    """

    logger = logging.getLogger("xsql")
    for handler in list(logger.handlers):
        if getattr(handler, "_xsql_handler", False):
            logger.removeHandler(handler)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._xsql_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level if level is not None else level_from_env())
    logger.propagate = False
    return logger


__all__ = ["LOG_LEVEL_ENV", "configure_logging", "level_from_env"]
