from .shared import ensure_root_logging, format_size

__all__ = ["ensure_root_logging", "format_size"]
