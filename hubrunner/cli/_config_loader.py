"""Config loader utilities bridging OmegaConf YAML documents and Pydantic schemas."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import yaml
from omegaconf import OmegaConf
from pydantic import ValidationError

from hubrunner.cache.references import resolve_model_source
from hubrunner.errors import ConfigError, LocalIOError

from ._constants import CONFIG_SUFFIXES
from ._schemas import BatchConfigSchema, DefaultsSchema, InferenceTaskSchema, ModelTaskSchema

logger = logging.getLogger(__name__)

# Optional settings filled from defaults only when the task leaves them unset.
MERGED_FIELDS = (
    "model",
    "model_source",
    "hf_filename",
    "cache_dir",
    "max_tokens",
    "temperature",
    "top_k",
    "top_p",
    "ctx_size",
    "threads",
)
# Flags are OR'd: a default can switch a flag on but never off.
MERGED_FLAGS = ("verbose", "no_color", "stats")


class ConfigFormatError(ConfigError):
    """Raised when a configuration document cannot be interpreted as a mapping."""


def load_batch_config(path: str | Path) -> BatchConfigSchema:
    """Read, parse and validate a batch document from disk."""
    resolved = Path(path).expanduser().resolve()
    if not resolved.exists():
        raise ConfigFormatError(f"Config not found: {resolved}")
    if resolved.suffix not in CONFIG_SUFFIXES:
        raise ConfigFormatError(f"Unsupported config format: {resolved} (expected .yaml/.yml/.json)")
    try:
        document = resolved.read_bytes()
    except OSError as exc:
        raise ConfigFormatError(f"Failed to read config {resolved}: {exc}") from exc
    return parse_batch_config(document, source=str(resolved))


def parse_batch_config(document: str | bytes, *, source: str = "<document>") -> BatchConfigSchema:
    """Parse YAML/JSON text into a validated ``BatchConfigSchema``.

    Every schema violation is collected into a single ``ConfigError`` whose
    ``problems`` list names the offending ``models[i]``/``tasks[i]`` entry.
    """
    data = _load_raw_config(document, source=source)
    if not isinstance(data, Mapping):
        raise ConfigFormatError(f"Config must be a mapping at top level: {source}")
    try:
        return BatchConfigSchema.model_validate(dict(data))
    except ValidationError as exc:
        problems = describe_validation_errors(exc, data)
        message = f"Invalid batch document {source}:\n  " + "\n  ".join(problems)
        raise ConfigError(message, problems=problems) from exc


def _load_raw_config(document: str | bytes, *, source: str) -> Any:
    if isinstance(document, bytes):
        try:
            document = document.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ConfigFormatError(f"Config is not valid UTF-8: {source}") from exc
    if not document.strip():
        raise ConfigFormatError(f"Config is empty: {source}")
    try:
        cfg = OmegaConf.create(document)
        return OmegaConf.to_container(cfg, resolve=True)
    except Exception as exc:  # noqa: BLE001 - OmegaConf and YAML error types vary
        raise ConfigFormatError(f"Failed to load config {source}: {exc}") from exc


def describe_validation_errors(exc: ValidationError, data: Mapping[str, Any]) -> list[str]:
    problems: list[str] = []
    for error in exc.errors():
        location = _format_location(error.get("loc", ()), data)
        message = str(error.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        problems.append(f"{location}: {message}" if location else message)
    return problems


def _format_location(loc: Sequence[Any], data: Mapping[str, Any]) -> str:
    parts: list[str] = []
    section: str | None = None
    for item in loc:
        if isinstance(item, int):
            label = f"[{item}]"
            if section == "tasks":
                task_name = _task_name(data, item)
                if task_name:
                    label = f"{label} ('{task_name}')"
            if parts:
                parts[-1] = f"{parts[-1]}{label}"
            else:
                parts.append(label)
            continue
        if not parts:
            section = str(item)
        parts.append(str(item))
    return ".".join(parts)


def _task_name(data: Mapping[str, Any], index: int) -> str | None:
    tasks = data.get("tasks")
    if not isinstance(tasks, list) or index >= len(tasks):
        return None
    entry = tasks[index]
    if isinstance(entry, Mapping):
        name = entry.get("name")
        return str(name) if name else None
    return None


def _is_unset(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def apply_defaults(task: InferenceTaskSchema, defaults: DefaultsSchema | None) -> InferenceTaskSchema:
    """Return ``task`` with unset fields filled from ``defaults``; flags are OR'd."""
    if defaults is None:
        return task
    updates: dict[str, Any] = {}
    if task.model_source is None and not _is_unset(task.model):
        # The task's own model keeps the source implied by its own fields.
        updates["model_source"] = resolve_model_source(None, filename=task.hf_filename)
    for field_name in MERGED_FIELDS:
        if field_name in updates:
            continue
        default_value = getattr(defaults, field_name)
        if _is_unset(getattr(task, field_name)) and not _is_unset(default_value):
            updates[field_name] = default_value
    for flag in MERGED_FLAGS:
        if getattr(defaults, flag) and not getattr(task, flag):
            updates[flag] = True
    if not updates:
        return task
    return task.model_copy(update=updates)


def resolved_tasks(config: BatchConfigSchema) -> list[InferenceTaskSchema]:
    return [apply_defaults(task, config.defaults) for task in config.tasks]


def generate_sample() -> BatchConfigSchema:
    """Build the sample batch document written by ``hubrunner init``."""
    return BatchConfigSchema(
        version="1.0",
        name="hubrunner configuration",
        description="Example configuration for batch inference and model management",
        defaults=DefaultsSchema(
            model="TheBloke/Llama-2-7B-Chat-GGUF",
            hf_filename="llama-2-7b-chat.Q4_K_M.gguf",
            max_tokens=1024,
            temperature=0.8,
            top_k=40,
            top_p=0.95,
            ctx_size=2048,
            verbose=False,
            no_color=False,
            stats=False,
        ),
        models=[
            ModelTaskSchema(
                action="pull",
                model_id="TheBloke/Llama-2-7B-Chat-GGUF",
                filename="llama-2-7b-chat.Q4_K_M.gguf",
                verbose=True,
                description="Download Llama 2 7B Chat model",
            ),
            ModelTaskSchema(action="usage", description="Show cache usage after the download"),
        ],
        tasks=[
            InferenceTaskSchema(
                name="Creative Writing",
                prompt="Write a short story about space exploration",
                max_tokens=512,
                temperature=1.0,
                top_k=40,
                top_p=0.9,
                stats=True,
                output_file="creative_story.txt",
                description="Generate creative content",
            ),
            InferenceTaskSchema(
                name="Technical Explanation",
                prompt="Explain how neural networks work in simple terms",
                max_tokens=1024,
                temperature=0.3,
                top_k=20,
                top_p=0.95,
                stats=True,
                verbose=True,
                output_file="neural_networks.txt",
                description="Generate technical documentation",
            ),
        ],
        environment={"HUBRUNNER_VERBOSE": "true"},
    )


def dump_batch_config(config: BatchConfigSchema) -> str:
    payload = config.model_dump(mode="json", exclude_none=True)
    return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)


def save_batch_config(config: BatchConfigSchema, path: str | Path) -> Path:
    target = Path(path).expanduser()
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(dump_batch_config(config), encoding="utf-8")
    except OSError as exc:
        raise LocalIOError(f"Failed to write config {target}: {exc}") from exc
    logger.info("Wrote batch document to %s", target)
    return target


__all__ = [
    "ConfigFormatError",
    "apply_defaults",
    "describe_validation_errors",
    "dump_batch_config",
    "generate_sample",
    "load_batch_config",
    "parse_batch_config",
    "resolved_tasks",
    "save_batch_config",
]
