"""Pydantic schemas for hubrunner batch documents."""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hubrunner.cache.references import ModelSource, validate_repository_id
from hubrunner.cache.store import REMOVE_ALL

ModelAction = Literal["pull", "remove", "list", "usage"]
ACTIONS_REQUIRING_MODEL_ID = frozenset({"pull", "remove"})
_SHA256_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


def _validate_sha256(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    if not _SHA256_PATTERN.match(trimmed):
        raise ValueError("sha256 must be a 64-character hex digest.")
    return trimmed.lower()


class GenerationSettingsSchema(BaseModel):
    """Fields shared by ``defaults`` and individual inference tasks."""

    model_config = ConfigDict(protected_namespaces=())

    model: str | None = Field(None, description="Local model path or hub repository id.")
    model_source: ModelSource | None = Field(
        None, description="Explicit reference kind; unset means 'hub' when hf_filename is set, else 'local'."
    )
    hf_filename: str | None = Field(None, description="File to fetch from the hub repository.")
    cache_dir: str | None = Field(None, description="Cache directory override.")
    max_tokens: int | None = Field(None, ge=1)
    temperature: float | None = None
    top_k: int | None = Field(None, ge=0)
    top_p: float | None = None
    ctx_size: int | None = Field(None, ge=1)
    threads: int | None = Field(None, ge=1)

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, value: float | None) -> float | None:
        if value is None or 0.0 <= value <= 2.0:
            return value
        raise ValueError("temperature must be between 0.0 and 2.0")

    @field_validator("top_p")
    @classmethod
    def validate_top_p(cls, value: float | None) -> float | None:
        if value is None or 0.0 <= value <= 1.0:
            return value
        raise ValueError("top_p must be between 0.0 and 1.0")


class DefaultsSchema(GenerationSettingsSchema):
    """Fallback values merged into every inference task."""

    verbose: bool | None = None
    no_color: bool | None = None
    stats: bool | None = None


class ModelTaskSchema(BaseModel):
    """Artifact-management task: pull, remove, list or usage."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    action: ModelAction
    model_id: str | None = None
    filename: str | None = None
    cache_dir: str | None = None
    force: bool = False
    verbose: bool = False
    description: str | None = None
    sha256: str | None = Field(None, description="Trusted digest checked after a pull.")

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, value: str | None) -> str | None:
        return _validate_sha256(value)

    @model_validator(mode="after")
    def validate_model_id(self) -> "ModelTaskSchema":
        if self.action in ACTIONS_REQUIRING_MODEL_ID and not (self.model_id and self.model_id.strip()):
            raise ValueError(f"action '{self.action}' requires model_id")
        if self.action == "pull" or (self.action == "remove" and self.model_id != REMOVE_ALL):
            validate_repository_id(self.model_id or "")
        return self


class InferenceTaskSchema(GenerationSettingsSchema):
    """One prompt to run against a resolved model artifact."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    name: str
    prompt: str
    force_download: bool = False
    no_color: bool = False
    stats: bool = False
    verbose: bool = False
    output_file: str | None = None
    description: str | None = None
    sha256: str | None = Field(None, description="Trusted digest for the hub artifact.")
    continue_on_error: bool | None = Field(
        None, description="Per-task override of the batch continue-on-error policy."
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("task must have a name")
        return value

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("task must have a prompt")
        return value

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, value: str | None) -> str | None:
        return _validate_sha256(value)


class BatchConfigSchema(BaseModel):
    """Top-level batch document."""

    version: str
    name: str | None = None
    description: str | None = None
    defaults: DefaultsSchema | None = None
    models: list[ModelTaskSchema] = Field(default_factory=list)
    tasks: list[InferenceTaskSchema] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    continue_on_error: bool = False

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("configuration version is required")
        return trimmed

    @field_validator("models", "tasks", mode="before")
    @classmethod
    def default_lists(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("environment", mode="before")
    @classmethod
    def coerce_environment(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("environment must be a mapping of variable names to values.")
        normalized: dict[str, str] = {}
        for key, item in value.items():
            if isinstance(item, bool):
                normalized[str(key)] = "true" if item else "false"
            elif item is None:
                normalized[str(key)] = ""
            else:
                normalized[str(key)] = str(item)
        return normalized


__all__ = [
    "ACTIONS_REQUIRING_MODEL_ID",
    "BatchConfigSchema",
    "DefaultsSchema",
    "GenerationSettingsSchema",
    "InferenceTaskSchema",
    "ModelAction",
    "ModelTaskSchema",
]
