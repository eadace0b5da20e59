from .download import hubrunner_cache_dir, write_stream_atomic

__all__ = [
    "hubrunner_cache_dir",
    "write_stream_atomic",
]
