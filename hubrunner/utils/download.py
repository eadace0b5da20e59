import contextlib
import hashlib
import os
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Callable, Iterable

from hubrunner.errors import IntegrityError, LocalIOError, RemoteError

TEMP_SUFFIX = ".part"
CACHE_DIR_ENV_VAR = "HUBRUNNER_CACHE_DIR"

ProgressCallback = Callable[[int, int | None], None]


def write_stream_atomic(
    chunks: Iterable[bytes],
    dest: str | Path,
    *,
    total: int | None = None,
    expected_sha256: str | None = None,
    progress: ProgressCallback | None = None,
) -> Path:
    """Write chunks to a unique '.part' sibling of 'dest', verify, then atomically rename."""
    dest = Path(dest)
    hasher = hashlib.sha256() if expected_sha256 else None
    tmp_path: Path | None = None
    downloaded = 0

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        with NamedTemporaryFile(dir=dest.parent, prefix=f"{dest.name}.", suffix=TEMP_SUFFIX, delete=False) as tmp_file:
            tmp_path = Path(tmp_file.name)
            if progress is not None:
                progress(0, total)
            for chunk in chunks:
                tmp_file.write(chunk)
                if hasher is not None:
                    hasher.update(chunk)
                downloaded += len(chunk)
                if progress is not None:
                    progress(downloaded, total)

        if total is not None and downloaded < total:
            raise RemoteError(f"Stream for {dest.name} ended after {downloaded} of {total} bytes.")
        if hasher is not None and expected_sha256 is not None:
            digest = hasher.hexdigest()
            if digest != expected_sha256.strip().lower():
                raise IntegrityError(
                    f"sha256 mismatch for {dest.name}: expected {expected_sha256.strip().lower()}, got {digest}."
                )

        tmp_path.replace(dest)
        return dest
    except OSError as exc:
        raise LocalIOError(f"Failed to write {dest}: {exc}") from exc
    finally:
        if tmp_path is not None:
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)


def hubrunner_cache_dir(cache_dir: Path | str | None = None) -> Path:
    if cache_dir is None:
        env_override = os.getenv(CACHE_DIR_ENV_VAR)
        if env_override:
            return Path(env_override).expanduser()
        xdg_cache = os.getenv("XDG_CACHE_HOME")
        if xdg_cache:
            return Path(xdg_cache).expanduser() / "hubrunner"
        return Path.home() / ".cache" / "hubrunner"
    return Path(cache_dir).expanduser()
