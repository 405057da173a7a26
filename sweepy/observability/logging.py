from __future__ import annotations

import logging
import os
from typing import Final

_HANDLER_ATTACHED: bool = False
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Vertex AI pulls these in; their INFO output drowns pipeline logs
_NOISY_LOGGERS: Final[tuple[str, ...]] = ("google.auth", "urllib3", "grpc")


def _resolve_level(override: str | None = None) -> int:
    level_name = (override or os.getenv("SWEEPY_LOG_LEVEL", "INFO")).upper()
    return getattr(logging, level_name, logging.INFO)


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Return a module logger sharing one root stream handler.

    The level comes from ``SWEEPY_LOG_LEVEL`` unless ``level`` is given.
    """
    global _HANDLER_ATTACHED

    resolved = _resolve_level(level)

    if not _HANDLER_ATTACHED:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(resolved)
        for noisy in _NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(max(resolved, logging.WARNING))
        _HANDLER_ATTACHED = True

    logger = logging.getLogger(name)
    logger.setLevel(resolved)
    return logger
