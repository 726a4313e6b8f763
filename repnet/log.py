"""
Host log adapter.

Engine components log through a host handle exposing ``log(msg, level)``,
the same shape as a node plugin's logger. EngineLog is the stand-alone
fallback that forwards into the standard logging module.
"""

import logging


LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "broken": logging.CRITICAL,
}


class EngineLog:
    """Host log handle backed by ``logging.getLogger(name)``."""

    def __init__(self, name: str = "repnet"):
        self._logger = logging.getLogger(name)

    def log(self, msg: str, level: str = "info") -> None:
        self._logger.log(LEVELS.get(level, logging.INFO), msg)
