"""Minimal Hugging Face Hub client: repository metadata and streamed file downloads."""

from __future__ import annotations

import logging
from typing import Any, Iterator
from urllib.parse import quote

import requests
from huggingface_hub import constants as hf_constants
from huggingface_hub.utils import build_hf_headers
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from hubrunner import __version__
from hubrunner.errors import DecodeError, HubTimeoutError, RemoteError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 64
DEFAULT_REVISION = "main"
GGUF_SUFFIX = ".gguf"

Timeout = float | tuple[float, float] | None


class RemoteFile(BaseModel):
    """One file listed in a repository's metadata."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(alias="rfilename")
    size: int | None = None
    sha256: str | None = None

    @model_validator(mode="before")
    @classmethod
    def lift_lfs_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        lfs = data.get("lfs")
        if not isinstance(lfs, dict):
            return data
        merged = dict(data)
        if merged.get("sha256") is None:
            merged["sha256"] = lfs.get("sha256")
        if merged.get("size") is None:
            merged["size"] = lfs.get("size")
        return merged


class RepositoryInfo(BaseModel):
    """Metadata returned by ``GET /api/models/{repository_id}``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    files: list[RemoteFile] = Field(default_factory=list, alias="siblings")

    def find(self, filename: str) -> RemoteFile | None:
        for entry in self.files:
            if entry.name == filename:
                return entry
        return None

    def gguf_files(self) -> list[str]:
        return [entry.name for entry in self.files if entry.name.endswith(GGUF_SUFFIX)]


class DownloadStream:
    """Streaming response wrapper that reports transport failures as ``RemoteError``."""

    def __init__(self, response: requests.Response, *, url: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._response = response
        self._chunk_size = chunk_size
        self.url = url

    @property
    def total(self) -> int | None:
        raw = self._response.headers.get("Content-Length")
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def iter_chunks(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(chunk_size=self._chunk_size):
                if chunk:
                    yield chunk
        except requests.Timeout as exc:
            raise HubTimeoutError(f"Timed out while downloading {self.url}: {exc}") from exc
        except requests.RequestException as exc:
            raise RemoteError(f"Download of {self.url} interrupted: {exc}") from exc

    def close(self) -> None:
        self._response.close()

    def __enter__(self) -> "DownloadStream":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class HubClient:
    """Stateless access to the two hub endpoints hubrunner needs.

    A single failed call fails immediately; there are no retries. ``timeout`` is
    forwarded to ``requests`` and surfaces as ``HubTimeoutError``.
    """

    def __init__(
        self,
        *,
        endpoint: str | None = None,
        token: str | None = None,
        timeout: Timeout = None,
        session: requests.Session | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.endpoint = (endpoint or hf_constants.ENDPOINT).rstrip("/")
        self.timeout = timeout
        self.chunk_size = chunk_size
        self._session = session if session is not None else requests.Session()
        self._owns_session = session is None
        self._headers = build_hf_headers(token=token, library_name="hubrunner", library_version=__version__)

    def metadata_url(self, repository_id: str) -> str:
        return f"{self.endpoint}/api/models/{repository_id}"

    def resolve_url(self, repository_id: str, filename: str) -> str:
        return f"{self.endpoint}/{repository_id}/resolve/{DEFAULT_REVISION}/{quote(filename, safe='/')}"

    def fetch_metadata(self, repository_id: str) -> RepositoryInfo:
        url = self.metadata_url(repository_id)
        logger.debug("Fetching metadata: %s", url)
        response = self._get(url, params={"blobs": "true"})
        try:
            self._raise_for_status(response, what=f"metadata for '{repository_id}'")
            try:
                payload = response.json()
            except ValueError as exc:
                raise DecodeError(f"Metadata for '{repository_id}' is not valid JSON.") from exc
        finally:
            response.close()
        try:
            return RepositoryInfo.model_validate(payload)
        except ValidationError as exc:
            raise DecodeError(f"Metadata for '{repository_id}' has an unexpected shape: {exc}") from exc

    def open_download_stream(self, repository_id: str, filename: str) -> DownloadStream:
        url = self.resolve_url(repository_id, filename)
        logger.debug("Opening download stream: %s", url)
        response = self._get(url, stream=True)
        try:
            self._raise_for_status(response, what=f"'{filename}' from '{repository_id}'")
        except RemoteError:
            response.close()
            raise
        return DownloadStream(response, url=url, chunk_size=self.chunk_size)

    def list_gguf_files(self, repository_id: str) -> list[str]:
        return self.fetch_metadata(repository_id).gguf_files()

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def _get(self, url: str, **kwargs: Any) -> requests.Response:
        try:
            return self._session.get(url, headers=self._headers, timeout=self.timeout, **kwargs)
        except requests.Timeout as exc:
            raise HubTimeoutError(f"Timed out requesting {url}: {exc}") from exc
        except requests.RequestException as exc:
            raise RemoteError(f"Request to {url} failed: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: requests.Response, *, what: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        if status == 404:
            raise RemoteError(f"Hub returned HTTP 404 for {what}; check the repository id.", status_code=status)
        if status in (401, 403):
            raise RemoteError(
                f"Hub returned HTTP {status} for {what}; the repository may be gated (set HF_TOKEN).",
                status_code=status,
            )
        raise RemoteError(f"Hub returned HTTP {status} for {what}.", status_code=status)


__all__ = ["DownloadStream", "HubClient", "RemoteFile", "RepositoryInfo"]
