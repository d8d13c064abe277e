"""Shared helper utilities for the matrixci CLI."""

from __future__ import annotations

import logging
import re

from rich.console import Console
from rich.logging import RichHandler

_LOGGING_INITIALIZED = False
_RUN_ID_ALLOWED = re.compile(r"[^a-zA-Z0-9_.-]+")


def setup_logging(level: str, *, console: Console | None = None) -> None:
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setLevel(level)
    logging.basicConfig(level=level, format="%(name)s: %(message)s", datefmt="[%X]", handlers=[handler], force=True)


def ensure_root_logging(level: str) -> None:
    """Configure root logging once while allowing level updates."""
    global _LOGGING_INITIALIZED
    root_logger = logging.getLogger()
    if not _LOGGING_INITIALIZED:
        setup_logging(level)
        _LOGGING_INITIALIZED = True
    else:
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)


def slug_run_id(value: str, *, fallback: str = "run") -> str:
    cleaned = _RUN_ID_ALLOWED.sub("-", value).strip("-.")
    return cleaned or fallback


__all__ = ["ensure_root_logging", "setup_logging", "slug_run_id"]
