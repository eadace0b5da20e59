"""Small shared constants for the CLI entry point and config loader."""

from __future__ import annotations

from pathlib import Path

COMMAND = "hubrunner"
RUN_COMMAND = "run"
PULL_COMMAND = "pull"
FILES_COMMAND = "files"
LIST_COMMAND = "list"
USAGE_COMMAND = "usage"
REMOVE_COMMAND = "remove"
INIT_COMMAND = "init"

DEFAULT_CONFIG_PATH = Path("hubrunner.yml")
DEFAULT_RUNNER = "llama-cli"
CONFIG_SUFFIXES = (".yaml", ".yml", ".json")
