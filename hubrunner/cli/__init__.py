"""Command line surface: batch documents, task execution and cache commands."""

from __future__ import annotations

from ._config_loader import load_batch_config, parse_batch_config
from ._task_executor import BatchReport, ExecutorSettings, TaskExecutionResult, execute_batch

__all__ = [
    "BatchReport",
    "ExecutorSettings",
    "TaskExecutionResult",
    "execute_batch",
    "load_batch_config",
    "parse_batch_config",
]
