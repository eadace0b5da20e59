"""On-disk artifact cache keyed by (repository id, filename).

Layout: ``<cache_root>/models/<owner>--<name>/<filename>``. The directory tree is
the only index: an entry exists exactly when its final filename exists, and
partial downloads only ever live in ``*.part`` siblings.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from hubrunner.cache.hub import HubClient
from hubrunner.cache.references import (
    ArtifactReference,
    LocalArtifact,
    RemoteArtifact,
    display_repository_id,
    safe_repository_dirname,
    validate_repository_id,
)
from hubrunner.errors import LocalIOError, NotFoundError
from hubrunner.utils.download import TEMP_SUFFIX, ProgressCallback, hubrunner_cache_dir, write_stream_atomic

logger = logging.getLogger(__name__)

MODELS_SUBDIR = "models"
REMOVE_ALL = "all"


@dataclass(frozen=True)
class CachedFile:
    name: str
    size_bytes: int


@dataclass(frozen=True)
class CachedRepository:
    """Aggregated view of one repository directory in the cache."""

    display_name: str
    total_size_bytes: int
    files: tuple[CachedFile, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class CacheUsage:
    entries: tuple[CachedRepository, ...]
    total_bytes: int


def default_cache_root() -> Path:
    return hubrunner_cache_dir(None)


class ArtifactCache:
    """Owns one cache directory and performs atomic downloads into it."""

    def __init__(self, base_dir: str | Path | None = None, *, hub: HubClient | None = None) -> None:
        self.base_dir = hubrunner_cache_dir(base_dir)
        self._hub = hub
        self._owns_hub = False
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LocalIOError(f"Failed to create cache directory {self.base_dir}: {exc}") from exc

    @property
    def models_dir(self) -> Path:
        return self.base_dir / MODELS_SUBDIR

    @property
    def hub(self) -> HubClient:
        if self._hub is None:
            self._hub = HubClient()
            self._owns_hub = True
        return self._hub

    def resolve_path(self, ref: ArtifactReference) -> Path:
        if isinstance(ref, LocalArtifact):
            return ref.path.expanduser()
        return self.models_dir / safe_repository_dirname(ref.repository_id) / ref.filename

    def exists(self, ref: ArtifactReference) -> bool:
        return self.resolve_path(ref).exists()

    def remote_artifact(self, repository_id: str, filename: str | None = None) -> RemoteArtifact:
        """Build a reference, picking the first GGUF file of the repository when no filename is given."""
        if filename:
            return RemoteArtifact(repository_id, filename)
        validate_repository_id(repository_id)
        candidates = self.hub.list_gguf_files(repository_id)
        if not candidates:
            raise NotFoundError(f"Repository '{repository_id}' has no .gguf files; specify a filename.")
        if len(candidates) > 1:
            logger.warning(
                "Repository '%s' has %d .gguf files; using '%s'. Set a filename to choose another.",
                repository_id,
                len(candidates),
                candidates[0],
            )
        return RemoteArtifact(repository_id, candidates[0])

    def ensure(
        self,
        ref: ArtifactReference,
        force_redownload: bool = False,
        *,
        expected_sha256: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> Path:
        """Return a local path for ``ref``, downloading it on a cache miss."""
        if isinstance(ref, LocalArtifact):
            path = self.resolve_path(ref)
            if not path.is_file():
                raise NotFoundError(f"Local model file not found: {path}")
            return path

        path = self.resolve_path(ref)
        if not force_redownload and path.exists():
            logger.debug("Cache hit for %s at %s", ref.label, path)
            return path

        info = self.hub.fetch_metadata(ref.repository_id)
        remote = info.find(ref.filename)
        if remote is None:
            raise NotFoundError(f"File '{ref.filename}' not found in repository '{ref.repository_id}'.")

        digest = expected_sha256 or remote.sha256
        logger.info("Downloading %s into %s", ref.label, path.parent)
        with self.hub.open_download_stream(ref.repository_id, ref.filename) as stream:
            total = stream.total if stream.total is not None else remote.size
            write_stream_atomic(
                stream.iter_chunks(),
                path,
                total=total,
                expected_sha256=digest,
                progress=progress,
            )
        if digest:
            logger.debug("Verified sha256 %s for %s", digest, ref.label)
        logger.info("Downloaded %s", ref.label)
        return path

    def list(self) -> list[CachedRepository]:
        return [self._measure(repo_dir) for repo_dir in self._repository_dirs()]

    def usage(self) -> CacheUsage:
        entries = sorted(self.list(), key=lambda entry: (-entry.total_size_bytes, entry.display_name))
        return CacheUsage(entries=tuple(entries), total_bytes=sum(entry.total_size_bytes for entry in entries))

    def _cached_repo_dir(self, repository_id: str) -> Path:
        try:
            validate_repository_id(repository_id)
        except ValueError as exc:
            raise NotFoundError(f"Model '{repository_id}' is not in the cache: {exc}") from exc
        repo_dir = self.models_dir / safe_repository_dirname(repository_id)
        if not repo_dir.is_dir():
            raise NotFoundError(f"Model '{repository_id}' is not in the cache at {self.models_dir}.")
        return repo_dir

    def list_local_files(self, repository_id: str) -> list[CachedFile]:
        repo_dir = self._cached_repo_dir(repository_id)
        return list(self._measure(repo_dir).files)

    def remove(self, target: str) -> int:
        """Delete one repository directory, or the whole cache for ``"all"``. Returns bytes freed."""
        if target == REMOVE_ALL:
            freed = self.usage().total_bytes
            try:
                if self.base_dir.exists():
                    shutil.rmtree(self.base_dir)
                self.base_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise LocalIOError(f"Failed to clear cache {self.base_dir}: {exc}") from exc
            logger.info("Cleared cache %s (%d bytes)", self.base_dir, freed)
            return freed

        repo_dir = self._cached_repo_dir(target)
        freed = self._measure(repo_dir).total_size_bytes
        try:
            shutil.rmtree(repo_dir)
        except OSError as exc:
            raise LocalIOError(f"Failed to remove {repo_dir}: {exc}") from exc
        logger.info("Removed %s (%d bytes)", target, freed)
        return freed

    def close(self) -> None:
        if self._owns_hub and self._hub is not None:
            self._hub.close()

    def _repository_dirs(self) -> list[Path]:
        try:
            if not self.models_dir.is_dir():
                return []
            return sorted((path for path in self.models_dir.iterdir() if path.is_dir()), key=lambda p: p.name)
        except OSError as exc:
            raise LocalIOError(f"Failed to read cache directory {self.models_dir}: {exc}") from exc

    @staticmethod
    def _measure(repo_dir: Path) -> CachedRepository:
        files: list[CachedFile] = []
        try:
            for path in sorted(repo_dir.rglob("*")):
                if not path.is_file() or path.name.endswith(TEMP_SUFFIX):
                    continue
                files.append(CachedFile(name=path.relative_to(repo_dir).as_posix(), size_bytes=path.stat().st_size))
        except OSError as exc:
            raise LocalIOError(f"Failed to measure {repo_dir}: {exc}") from exc
        return CachedRepository(
            display_name=display_repository_id(repo_dir.name),
            total_size_bytes=sum(entry.size_bytes for entry in files),
            files=tuple(files),
        )


__all__ = [
    "ArtifactCache",
    "CacheUsage",
    "CachedFile",
    "CachedRepository",
    "MODELS_SUBDIR",
    "REMOVE_ALL",
    "default_cache_root",
]
