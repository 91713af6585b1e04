"""Logging setup for the notes_rag package."""

from __future__ import annotations

import logging
import os
from typing import Optional

from rich.logging import RichHandler

_FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_configured = False


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the ``notes_rag`` logger once.

    Terminal output goes through rich; ``log_file`` adds a plain-text file handler.
    ``NOTES_RAG_LOG_LEVEL`` and ``NOTES_RAG_LOG_FILE`` override the arguments.
    """
    global _configured
    if _configured:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)
    env_level = os.getenv("NOTES_RAG_LOG_LEVEL")
    if env_level:
        log_level = getattr(logging, env_level.upper(), log_level)

    env_file = os.getenv("NOTES_RAG_LOG_FILE")
    if env_file is not None:
        log_file = env_file or None

    root = logging.getLogger("notes_rag")
    root.setLevel(log_level)
    root.handlers.clear()
    root.propagate = False

    rich_handler = RichHandler(show_path=False, rich_tracebacks=True)
    rich_handler.setLevel(log_level)
    root.addHandler(rich_handler)

    if log_file:
        try:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError:
            root.warning("Could not open log file %s, logging to terminal only", log_file)
        else:
            file_handler.setLevel(log_level)
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
            root.addHandler(file_handler)

    _configured = True


__all__ = ["setup_logging"]
