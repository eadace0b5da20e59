from __future__ import annotations

import json
from typing import Any

import pytest
import requests

from hubrunner.cache.hub import HubClient, RepositoryInfo
from hubrunner.errors import DecodeError, HubTimeoutError, RemoteError

ENDPOINT = "https://hub.test"


class _FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        *,
        payload: Any = None,
        text: str | None = None,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
        fail_after: int | None = None,
    ) -> None:
        self.status_code = status_code
        self._payload = payload
        self._text = text
        self._body = body
        self.headers = headers or {}
        self._fail_after = fail_after
        self.closed = False

    def json(self) -> Any:
        if self._text is not None:
            return json.loads(self._text)
        return self._payload

    def iter_content(self, chunk_size: int = 1):
        for offset in range(0, len(self._body), chunk_size):
            if self._fail_after is not None and offset >= self._fail_after:
                raise requests.ConnectionError("connection reset by peer")
            yield self._body[offset : offset + chunk_size]

    def close(self) -> None:
        self.closed = True


class _FakeSession:
    def __init__(self, outcome: Any) -> None:
        self.outcome = outcome
        self.calls: list[dict[str, Any]] = []

    def get(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.calls.append({"url": url, **kwargs})
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    def close(self) -> None:
        pass


def _client(outcome: Any, **kwargs: Any) -> tuple[HubClient, _FakeSession]:
    session = _FakeSession(outcome)
    return HubClient(endpoint=ENDPOINT, session=session, **kwargs), session


def test_fetch_metadata_parses_siblings_and_lfs_fields() -> None:
    payload = {
        "id": "org/model",
        "siblings": [
            {"rfilename": "README.md"},
            {"rfilename": "model.Q4_K_M.gguf", "size": 42, "lfs": {"sha256": "ab" * 32, "size": 42}},
            {"rfilename": "model.Q8_0.gguf", "lfs": {"sha256": "cd" * 32, "size": 84}},
        ],
    }
    client, session = _client(_FakeResponse(payload=payload))

    info = client.fetch_metadata("org/model")

    assert session.calls[0]["url"] == f"{ENDPOINT}/api/models/org/model"
    assert session.calls[0]["params"] == {"blobs": "true"}
    assert info.gguf_files() == ["model.Q4_K_M.gguf", "model.Q8_0.gguf"]
    q8 = info.find("model.Q8_0.gguf")
    assert q8 is not None and q8.size == 84 and q8.sha256 == "cd" * 32
    assert info.find("missing.gguf") is None


def test_fetch_metadata_without_siblings_has_no_files() -> None:
    client, _ = _client(_FakeResponse(payload={"id": "org/model"}))
    assert client.fetch_metadata("org/model").files == []


def test_fetch_metadata_maps_404_to_remote_error() -> None:
    client, _ = _client(_FakeResponse(status_code=404))

    with pytest.raises(RemoteError) as excinfo:
        client.fetch_metadata("org/missing")

    assert excinfo.value.status_code == 404
    assert excinfo.value.kind == "remote"


def test_fetch_metadata_flags_gated_repositories() -> None:
    client, _ = _client(_FakeResponse(status_code=401))
    with pytest.raises(RemoteError, match="HF_TOKEN"):
        client.fetch_metadata("org/gated")


def test_fetch_metadata_rejects_invalid_json() -> None:
    client, _ = _client(_FakeResponse(text="<html>not json</html>"))
    with pytest.raises(DecodeError):
        client.fetch_metadata("org/model")


def test_fetch_metadata_rejects_unexpected_shape() -> None:
    client, _ = _client(_FakeResponse(payload={"id": "org/model", "siblings": "nope"}))
    with pytest.raises(DecodeError, match="unexpected shape"):
        client.fetch_metadata("org/model")


def test_transport_errors_map_to_remote_and_timeout() -> None:
    client, _ = _client(requests.ConnectionError("dns failure"))
    with pytest.raises(RemoteError) as excinfo:
        client.fetch_metadata("org/model")
    assert not isinstance(excinfo.value, HubTimeoutError)

    client, _ = _client(requests.ReadTimeout("slow"), timeout=0.5)
    with pytest.raises(HubTimeoutError) as timeout_info:
        client.fetch_metadata("org/model")
    assert timeout_info.value.kind == "timeout"


def test_requests_carry_timeout_and_token() -> None:
    client, session = _client(_FakeResponse(payload={"id": "org/model"}), token="hf_test_token", timeout=3.0)

    client.fetch_metadata("org/model")

    call = session.calls[0]
    assert call["timeout"] == 3.0
    assert call["headers"]["authorization"] == "Bearer hf_test_token"


def test_resolve_url_quotes_filename() -> None:
    client, _ = _client(_FakeResponse())
    assert (
        client.resolve_url("org/model", "sub dir/model file.gguf")
        == f"{ENDPOINT}/org/model/resolve/main/sub%20dir/model%20file.gguf"
    )


def test_open_download_stream_yields_chunks_and_total() -> None:
    response = _FakeResponse(body=b"0123456789", headers={"Content-Length": "10"})
    client, session = _client(response, chunk_size=4)

    with client.open_download_stream("org/model", "model.gguf") as stream:
        assert stream.total == 10
        assert b"".join(stream.iter_chunks()) == b"0123456789"

    assert session.calls[0]["stream"] is True
    assert response.closed


def test_open_download_stream_without_length_has_unknown_total() -> None:
    client, _ = _client(_FakeResponse(body=b"abc"))
    with client.open_download_stream("org/model", "model.gguf") as stream:
        assert stream.total is None


def test_download_stream_interruption_is_remote_error() -> None:
    response = _FakeResponse(body=b"0123456789", fail_after=4)
    client, _ = _client(response, chunk_size=4)

    with client.open_download_stream("org/model", "model.gguf") as stream:
        chunks = stream.iter_chunks()
        assert next(chunks) == b"0123"
        with pytest.raises(RemoteError, match="interrupted"):
            next(chunks)


def test_open_download_stream_closes_failed_response() -> None:
    response = _FakeResponse(status_code=500)
    client, _ = _client(response)

    with pytest.raises(RemoteError, match="HTTP 500"):
        client.open_download_stream("org/model", "model.gguf")

    assert response.closed


def test_repository_info_accepts_field_names() -> None:
    info = RepositoryInfo.model_validate({"id": "org/model", "siblings": [{"rfilename": "a.gguf"}]})
    assert [entry.name for entry in info.files] == ["a.gguf"]
