"""Blob storage capability and a filesystem implementation."""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
import threading
from pathlib import Path, PurePosixPath
from typing import Protocol, runtime_checkable

from .errors import BlobDeleteFailed, BlobError, BlobReadFailed, BlobWriteFailed

logger = logging.getLogger(__name__)


@runtime_checkable
class BlobStore(Protocol):
    """Byte storage addressed by caller-chosen relative paths."""

    def put(self, data: bytes, path: str) -> str:
        """Store ``data`` at ``path`` and return its public URL."""
        ...

    def get(self, path: str) -> bytes:
        ...

    def delete(self, path: str) -> bool:
        ...

    def exists(self, path: str) -> bool:
        ...

    def url_for(self, path: str) -> str:
        ...


class FileBlobStore:
    """Write-once blob store rooted in a local directory.

    Writing identical bytes to an existing path succeeds without touching the
    file; writing different bytes to an existing path is refused so readers
    never see a blob change underneath a URL they already hold.
    """

    def __init__(self, root: Path, base_url: str = "/uploads/media") -> None:
        self._root = Path(root)
        self._base_url = base_url.rstrip("/")
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def url_for(self, path: str) -> str:
        return f"{self._base_url}/{_normalize(path)}"

    def exists(self, path: str) -> bool:
        return self._resolve(path, BlobReadFailed).is_file()

    def put(self, data: bytes, path: str) -> str:
        target = self._resolve(path, BlobWriteFailed)
        with self._lock:
            if target.exists():
                try:
                    existing = target.read_bytes()
                except OSError as exc:
                    raise BlobWriteFailed(path, f"Cannot verify existing blob {path}: {exc}") from exc
                if existing != data:
                    raise BlobWriteFailed(path, f"Blob {path} already exists with different content")
                return self.url_for(path)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                _atomic_write(target, data)
            except OSError as exc:
                raise BlobWriteFailed(path, f"Cannot write blob {path}: {exc}") from exc
        logger.debug("Stored blob %s (%d bytes)", path, len(data))
        return self.url_for(path)

    def get(self, path: str) -> bytes:
        target = self._resolve(path, BlobReadFailed)
        try:
            return target.read_bytes()
        except OSError as exc:
            raise BlobReadFailed(path, f"Cannot read blob {path}: {exc}") from exc

    def delete(self, path: str) -> bool:
        target = self._resolve(path, BlobDeleteFailed)
        try:
            target.unlink()
        except FileNotFoundError:
            return True
        except OSError as exc:
            raise BlobDeleteFailed(path, f"Cannot delete blob {path}: {exc}") from exc
        _prune_empty_parents(target.parent, self._root)
        logger.debug("Deleted blob %s", path)
        return True

    def _resolve(self, path: str, error: type[BlobError]) -> Path:
        relative = _normalize(path)
        parts = PurePosixPath(relative).parts
        if not parts or any(part in ("..", ".") for part in parts):
            raise error(path, f"Invalid blob path: {path!r}")
        return self._root.joinpath(*parts)


def _normalize(path: str) -> str:
    return path.replace("\\", "/").lstrip("/")


def _atomic_write(target: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def _prune_empty_parents(directory: Path, root: Path) -> None:
    root_resolved = root.resolve()
    current = directory
    while current.resolve() != root_resolved:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent
