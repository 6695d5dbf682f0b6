"""
CoachRAG - Logging
===================
Logger factory shared by every CoachRAG module.

Level resolution, first match wins:
  1. the ``level`` argument to ``get_logger``
  2. ``settings.LOG_LEVEL`` (e.g. ``"INFO"``)
  3. ``settings.ENV``: ``"dev"`` → DEBUG, ``"prod"`` → WARNING

HTTP client and LanceDB loggers are held at WARNING outside ``dev`` so a
pipeline run does not print one line per request.

Usage:
    from coachrag.src.utils.logger import get_logger
    logger = get_logger(__name__)
    logger.info("Query embedded in %.1fms", ms)
"""

import logging
import sys

from coachrag.config.settings import settings

_ENV_LEVEL_MAP = {
    "dev": logging.DEBUG,
    "prod": logging.WARNING,
}
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_THIRD_PARTY_LOGGERS = ("httpx", "httpcore", "lancedb")


def _resolve_default_level() -> int:
    if settings.LOG_LEVEL:
        return logging.getLevelName(settings.LOG_LEVEL.upper())
    return _ENV_LEVEL_MAP.get(settings.ENV, logging.INFO)


_DEFAULT_LEVEL = _resolve_default_level()

if settings.ENV != "dev":
    for _name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(_name).setLevel(logging.WARNING)


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Return the named logger, attaching a stdout handler on first use.

    Args:
        name:  Typically ``__name__`` of the calling module.
        level: Explicit level; overrides ``LOG_LEVEL`` and ``ENV``.
    """
    resolved_level = level if level is not None else _DEFAULT_LEVEL
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(resolved_level)
        # Own handler only; the root logger would print every record twice
        logger.propagate = False

    return logger
