from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterator

import pytest

from hubrunner.cache.hub import RepositoryInfo
from hubrunner.cache.references import LocalArtifact, RemoteArtifact
from hubrunner.cache.store import ArtifactCache
from hubrunner.errors import IntegrityError, NotFoundError, RemoteError


class _FakeStream:
    def __init__(self, data: bytes, *, fail_after: int | None = None) -> None:
        self.data = data
        self.total = len(data)
        self.fail_after = fail_after

    def iter_chunks(self) -> Iterator[bytes]:
        for offset in range(0, len(self.data), 3):
            if self.fail_after is not None and offset >= self.fail_after:
                raise RemoteError("connection dropped")
            yield self.data[offset : offset + 3]

    def __enter__(self) -> "_FakeStream":
        return self

    def __exit__(self, *exc_info: object) -> None:
        pass


class _FakeHub:
    def __init__(
        self,
        repos: dict[str, dict[str, bytes]],
        *,
        digests: dict[str, str] | None = None,
        fail_after: int | None = None,
    ) -> None:
        self.repos = repos
        self.digests = digests or {}
        self.fail_after = fail_after
        self.metadata_calls: list[str] = []
        self.downloads: list[tuple[str, str]] = []

    def fetch_metadata(self, repository_id: str) -> RepositoryInfo:
        self.metadata_calls.append(repository_id)
        if repository_id not in self.repos:
            raise RemoteError(f"Hub returned HTTP 404 for {repository_id}", status_code=404)
        siblings = []
        for name, data in self.repos[repository_id].items():
            entry: dict[str, object] = {"rfilename": name, "size": len(data)}
            if name in self.digests:
                entry["lfs"] = {"sha256": self.digests[name], "size": len(data)}
            siblings.append(entry)
        return RepositoryInfo.model_validate({"id": repository_id, "siblings": siblings})

    def list_gguf_files(self, repository_id: str) -> list[str]:
        return self.fetch_metadata(repository_id).gguf_files()

    def open_download_stream(self, repository_id: str, filename: str) -> _FakeStream:
        self.downloads.append((repository_id, filename))
        return _FakeStream(self.repos[repository_id][filename], fail_after=self.fail_after)

    def close(self) -> None:
        pass


def _cache(tmp_path: Path, hub: _FakeHub) -> ArtifactCache:
    return ArtifactCache(tmp_path / "cache", hub=hub)


def _temp_files(root: Path) -> list[Path]:
    return [path for path in root.rglob("*.part")]


def test_ensure_downloads_once_then_hits_cache(tmp_path: Path) -> None:
    hub = _FakeHub({"org/model": {"model.gguf": b"0123456789"}})
    cache = _cache(tmp_path, hub)
    ref = RemoteArtifact("org/model", "model.gguf")

    first = cache.ensure(ref)
    second = cache.ensure(ref)

    assert first == second == cache.resolve_path(ref)
    assert first == tmp_path / "cache" / "models" / "org--model" / "model.gguf"
    assert first.read_bytes() == b"0123456789"
    assert hub.downloads == [("org/model", "model.gguf")]
    assert cache.exists(ref)


def test_force_redownload_fetches_again(tmp_path: Path) -> None:
    hub = _FakeHub({"org/model": {"model.gguf": b"abc"}})
    cache = _cache(tmp_path, hub)
    ref = RemoteArtifact("org/model", "model.gguf")

    cache.ensure(ref)
    cache.ensure(ref, force_redownload=True)

    assert len(hub.downloads) == 2


def test_ensure_reports_progress(tmp_path: Path) -> None:
    hub = _FakeHub({"org/model": {"model.gguf": b"abcdef"}})
    cache = _cache(tmp_path, hub)
    seen: list[tuple[int, int | None]] = []

    cache.ensure(RemoteArtifact("org/model", "model.gguf"), progress=lambda done, total: seen.append((done, total)))

    assert seen[0] == (0, 6)
    assert seen[-1] == (6, 6)


def test_missing_remote_file_is_not_found(tmp_path: Path) -> None:
    hub = _FakeHub({"org/model": {"model.gguf": b"abc"}})
    cache = _cache(tmp_path, hub)

    with pytest.raises(NotFoundError, match="other.gguf"):
        cache.ensure(RemoteArtifact("org/model", "other.gguf"))

    assert hub.downloads == []


def test_interrupted_download_leaves_nothing_behind(tmp_path: Path) -> None:
    hub = _FakeHub({"org/model": {"model.gguf": b"0123456789"}}, fail_after=6)
    cache = _cache(tmp_path, hub)
    ref = RemoteArtifact("org/model", "model.gguf")

    with pytest.raises(RemoteError):
        cache.ensure(ref)

    assert not cache.exists(ref)
    assert _temp_files(cache.base_dir) == []
    assert cache.list() == [] or all(entry.total_size_bytes == 0 for entry in cache.list())


def test_expected_digest_mismatch_is_integrity_error(tmp_path: Path) -> None:
    hub = _FakeHub({"org/model": {"model.gguf": b"abc"}})
    cache = _cache(tmp_path, hub)
    ref = RemoteArtifact("org/model", "model.gguf")

    with pytest.raises(IntegrityError):
        cache.ensure(ref, expected_sha256="f" * 64)

    assert not cache.exists(ref)
    assert _temp_files(cache.base_dir) == []


def test_remote_digest_is_verified_when_published(tmp_path: Path) -> None:
    payload = b"weights"
    good = _FakeHub(
        {"org/model": {"model.gguf": payload}}, digests={"model.gguf": hashlib.sha256(payload).hexdigest()}
    )
    assert _cache(tmp_path / "good", good).ensure(RemoteArtifact("org/model", "model.gguf")).read_bytes() == payload

    bad = _FakeHub({"org/model": {"model.gguf": payload}}, digests={"model.gguf": "0" * 64})
    with pytest.raises(IntegrityError):
        _cache(tmp_path / "bad", bad).ensure(RemoteArtifact("org/model", "model.gguf"))


def test_remote_artifact_picks_first_gguf_file(tmp_path: Path) -> None:
    hub = _FakeHub({"org/model": {"README.md": b"", "a.Q4.gguf": b"1", "b.Q8.gguf": b"2"}})
    cache = _cache(tmp_path, hub)

    ref = cache.remote_artifact("org/model")

    assert ref == RemoteArtifact("org/model", "a.Q4.gguf")
    assert cache.remote_artifact("org/model", "b.Q8.gguf").filename == "b.Q8.gguf"


def test_remote_artifact_without_gguf_files_is_not_found(tmp_path: Path) -> None:
    cache = _cache(tmp_path, _FakeHub({"org/model": {"README.md": b""}}))
    with pytest.raises(NotFoundError, match="no .gguf files"):
        cache.remote_artifact("org/model")


def test_local_artifacts_bypass_the_hub(tmp_path: Path) -> None:
    hub = _FakeHub({})
    cache = _cache(tmp_path, hub)
    model = tmp_path / "local.gguf"
    model.write_bytes(b"x")

    assert cache.ensure(LocalArtifact(model)) == model
    with pytest.raises(NotFoundError):
        cache.ensure(LocalArtifact(tmp_path / "missing.gguf"))
    assert hub.metadata_calls == []


def _populate(cache: ArtifactCache) -> None:
    big = cache.models_dir / "org--big"
    small = cache.models_dir / "org--small"
    (big / "nested").mkdir(parents=True)
    small.mkdir(parents=True)
    (big / "a.gguf").write_bytes(b"x" * 100)
    (big / "nested" / "b.gguf").write_bytes(b"x" * 50)
    (big / "a.gguf.tmp123.part").write_bytes(b"x" * 999)
    (small / "c.gguf").write_bytes(b"x" * 10)


def test_list_and_usage_totals_agree(tmp_path: Path) -> None:
    cache = _cache(tmp_path, _FakeHub({}))
    _populate(cache)

    entries = cache.list()
    usage = cache.usage()

    assert [entry.display_name for entry in entries] == ["org/big", "org/small"]
    assert sum(entry.total_size_bytes for entry in entries) == usage.total_bytes == 160
    assert sum(entry.total_size_bytes for entry in usage.entries) == usage.total_bytes
    big = entries[0]
    assert [item.name for item in big.files] == ["a.gguf", "nested/b.gguf"]


def test_usage_sorts_by_size_descending(tmp_path: Path) -> None:
    cache = _cache(tmp_path, _FakeHub({}))
    _populate(cache)
    (cache.models_dir / "aaa--huge").mkdir()
    (cache.models_dir / "aaa--huge" / "h.gguf").write_bytes(b"x" * 500)

    assert [entry.display_name for entry in cache.usage().entries] == ["aaa/huge", "org/big", "org/small"]


def test_empty_cache_lists_nothing(tmp_path: Path) -> None:
    cache = _cache(tmp_path, _FakeHub({}))
    assert cache.list() == []
    assert cache.usage().total_bytes == 0


def test_remove_single_repository(tmp_path: Path) -> None:
    cache = _cache(tmp_path, _FakeHub({}))
    _populate(cache)

    freed = cache.remove("org/big")

    assert freed == 150
    assert [entry.display_name for entry in cache.list()] == ["org/small"]


def test_remove_missing_repository_is_not_found(tmp_path: Path) -> None:
    cache = _cache(tmp_path, _FakeHub({}))
    with pytest.raises(NotFoundError):
        cache.remove("org/absent")


def test_remove_all_clears_and_recreates_root(tmp_path: Path) -> None:
    cache = _cache(tmp_path, _FakeHub({}))
    _populate(cache)

    freed = cache.remove("all")

    assert freed == 160
    assert cache.base_dir.is_dir()
    assert cache.list() == []


def test_list_local_files(tmp_path: Path) -> None:
    cache = _cache(tmp_path, _FakeHub({}))
    _populate(cache)

    assert [item.name for item in cache.list_local_files("org/small")] == ["c.gguf"]
    with pytest.raises(NotFoundError):
        cache.list_local_files("org/absent")


@pytest.mark.parametrize("target", ["..", ".", "../cache", "org/..", "./org"])
def test_remove_rejects_targets_outside_a_repository_dir(tmp_path: Path, target: str) -> None:
    cache = _cache(tmp_path, _FakeHub({}))
    repo_dir = cache.models_dir / "org--m"
    repo_dir.mkdir(parents=True)
    (repo_dir / "w.gguf").write_bytes(b"weights")
    (cache.base_dir / "keep.txt").write_text("keep")

    with pytest.raises(NotFoundError):
        cache.remove(target)
    with pytest.raises(NotFoundError):
        cache.list_local_files(target)

    assert (repo_dir / "w.gguf").read_bytes() == b"weights"
    assert (cache.base_dir / "keep.txt").read_text() == "keep"
