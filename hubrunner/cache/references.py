"""Tagged artifact references: a local file or a file inside a hub repository."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Union

ModelSource = Literal["hub", "local"]
REPO_ID_SEPARATOR = "/"
SAFE_REPO_ID_SEPARATOR = "--"
_DOT_SEGMENTS = frozenset({".", ".."})


@dataclass(frozen=True)
class LocalArtifact:
    """A model file already present on the local filesystem."""

    path: Path

    @property
    def label(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class RemoteArtifact:
    """One file inside a remote hub repository such as ``org/model``."""

    repository_id: str
    filename: str

    def __post_init__(self) -> None:
        validate_repository_id(self.repository_id)
        if not self.filename or not self.filename.strip():
            raise ValueError(f"Artifact filename for '{self.repository_id}' must be a non-empty string.")
        parts = Path(self.filename).parts
        if Path(self.filename).is_absolute() or ".." in parts:
            raise ValueError(f"Artifact filename '{self.filename}' must be a relative path inside the repository.")

    @property
    def label(self) -> str:
        return f"{self.repository_id}:{self.filename}"


ArtifactReference = Union[LocalArtifact, RemoteArtifact]


def validate_repository_id(repository_id: str) -> str:
    """Check that ``repository_id`` has the ``owner/name`` shape."""
    owner, sep, name = (repository_id or "").partition(REPO_ID_SEPARATOR)
    if not sep or not owner.strip() or not name.strip() or REPO_ID_SEPARATOR in name:
        raise ValueError(f"Repository id '{repository_id}' must look like 'owner/name'.")
    if owner in _DOT_SEGMENTS or name in _DOT_SEGMENTS:
        raise ValueError(f"Repository id '{repository_id}' must look like 'owner/name'.")
    return repository_id


def safe_repository_dirname(repository_id: str) -> str:
    return repository_id.replace(REPO_ID_SEPARATOR, SAFE_REPO_ID_SEPARATOR)


def display_repository_id(dirname: str) -> str:
    return dirname.replace(SAFE_REPO_ID_SEPARATOR, REPO_ID_SEPARATOR)


def resolve_model_source(
    source: ModelSource | None,
    *,
    filename: str | None,
) -> ModelSource:
    """Pick the reference kind; an unset source means hub only when a filename is given."""
    if source is not None:
        return source
    return "hub" if filename else "local"


__all__ = [
    "ArtifactReference",
    "LocalArtifact",
    "ModelSource",
    "RemoteArtifact",
    "display_repository_id",
    "resolve_model_source",
    "safe_repository_dirname",
    "validate_repository_id",
]
