from __future__ import annotations

import hashlib
import logging
import os
from typing import Final

_HANDLER_NAME: Final[str] = "pingq.stream"
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_PREVIEW_CHARS: Final[int] = 50


def _resolve_level() -> int:
    level_name = os.getenv("PINGQ_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def _ensure_root_handler(level: int) -> None:
    root = logging.getLogger()
    if not any(h.get_name() == _HANDLER_NAME for h in root.handlers):
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
    root.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; the shared stream handler is attached once per process."""
    level = _resolve_level()
    _ensure_root_handler(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger


def preview(text: str | None, limit: int = _PREVIEW_CHARS) -> str:
    """Short, log-safe rendering of message content: leading chars plus a content hash."""
    if not text:
        return "<empty>"
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    head = text[:limit].replace("\n", " ")
    suffix = "..." if len(text) > limit else ""
    return f"{head}{suffix} (hash:{digest})"
