from __future__ import annotations

from pathlib import Path

import pytest

from hubrunner.cache.references import (
    LocalArtifact,
    RemoteArtifact,
    display_repository_id,
    resolve_model_source,
    safe_repository_dirname,
    validate_repository_id,
)


@pytest.mark.parametrize("repo_id", ["TheBloke/Llama-2-7B-Chat-GGUF", "org/model", "a/b"])
def test_validate_repository_id_accepts_owner_name(repo_id: str) -> None:
    assert validate_repository_id(repo_id) == repo_id


@pytest.mark.parametrize("repo_id", ["", "no-slash", "/name", "owner/", "a/b/c", " /x", "../x", "./x", "org/..", "org/."])
def test_validate_repository_id_rejects_malformed_ids(repo_id: str) -> None:
    with pytest.raises(ValueError, match="owner/name"):
        validate_repository_id(repo_id)


def test_remote_artifact_label_and_validation() -> None:
    ref = RemoteArtifact("org/model", "weights.Q4_K_M.gguf")
    assert ref.label == "org/model:weights.Q4_K_M.gguf"

    with pytest.raises(ValueError):
        RemoteArtifact("org/model", "")
    with pytest.raises(ValueError):
        RemoteArtifact("org/model", "../escape.gguf")
    with pytest.raises(ValueError):
        RemoteArtifact("org/model", "/etc/passwd")
    with pytest.raises(ValueError):
        RemoteArtifact("not-a-repo", "file.gguf")


def test_remote_artifact_allows_nested_filenames() -> None:
    ref = RemoteArtifact("org/model", "quantized/model.gguf")
    assert ref.filename == "quantized/model.gguf"


def test_local_artifact_label_is_path(tmp_path: Path) -> None:
    path = tmp_path / "model.gguf"
    assert LocalArtifact(path).label == str(path)


def test_repository_dirname_round_trip() -> None:
    dirname = safe_repository_dirname("TheBloke/Llama-2-7B-Chat-GGUF")
    assert dirname == "TheBloke--Llama-2-7B-Chat-GGUF"
    assert display_repository_id(dirname) == "TheBloke/Llama-2-7B-Chat-GGUF"


def test_display_repository_id_is_lossy_for_double_dash_names() -> None:
    dirname = safe_repository_dirname("org/my--model")
    assert display_repository_id(dirname) == "org/my/model"


@pytest.mark.parametrize(
    ("source", "filename", "expected"),
    [
        (None, "model.gguf", "hub"),
        (None, None, "local"),
        (None, "", "local"),
        ("local", "model.gguf", "local"),
        ("hub", None, "hub"),
    ],
)
def test_resolve_model_source(source, filename, expected) -> None:
    assert resolve_model_source(source, filename=filename) == expected
