"""Local model artifact cache and declarative batch runner for hub-hosted models."""

__version__ = "0.1.0"
