"""Shared helper utilities for the hubrunner CLI."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(name)s - %(message)s"
_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")
_LOGGING_INITIALIZED = False


def setup_logging(level: str, *, no_color: bool = False) -> None:
    """Attach a single rich stderr handler to the root logger."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    handler = RichHandler(
        console=Console(stderr=True, no_color=no_color),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)
    # Keep HTTP connection chatter out of verbose runs.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def ensure_root_logging(level: str, *, no_color: bool = False) -> None:
    """Configure root logging once while allowing level updates."""
    global _LOGGING_INITIALIZED
    root_logger = logging.getLogger()
    if not _LOGGING_INITIALIZED:
        setup_logging(level, no_color=no_color)
        _LOGGING_INITIALIZED = True
    else:
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)


def format_size(size_bytes: int | None) -> str:
    """Render a byte count with binary units, e.g. ``1.5 GB``."""
    if size_bytes is None:
        return "-"
    value = float(size_bytes)
    for unit in _SIZE_UNITS[:-1]:
        if value < 1024:
            return f"{int(value)} B" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} {_SIZE_UNITS[-1]}"


__all__ = ["ensure_root_logging", "format_size", "setup_logging"]
