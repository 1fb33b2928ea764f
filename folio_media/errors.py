"""Exception taxonomy shared by the media derivative pipeline."""

from __future__ import annotations


class MediaError(RuntimeError):
    """Base class for every error raised by the media pipeline."""


class UnsupportedSource(MediaError):
    """Raised when uploaded or stored bytes cannot be decoded as an image."""


class UnsupportedFormat(MediaError):
    """Raised when an output format is unknown or unavailable in this Pillow build."""


class OutOfBounds(MediaError):
    """Raised when crop or redaction geometry is empty after clamping."""


class DuplicateVariant(MediaError):
    """Raised when a ``(size_label, format)`` pair already exists on an asset.

    This signals a caller bug: variants must be removed or swapped explicitly.
    """


class AlreadyOptimizing(MediaError):
    """Raised when an asset is already pending or in progress in another job."""

    def __init__(self, asset_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Asset '{asset_id}' is already being optimized.")
        self.asset_id = asset_id


class AssetNotFound(MediaError, KeyError):
    """Raised when an asset id is unknown or not visible to readers."""

    def __init__(self, asset_id: str) -> None:
        super().__init__(f"Media asset '{asset_id}' not found.")
        self.asset_id = asset_id

    def __str__(self) -> str:
        return str(self.args[0])


class JobNotFound(MediaError, KeyError):
    """Raised when an optimization job id is unknown."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Optimization job '{job_id}' not found.")
        self.job_id = job_id

    def __str__(self) -> str:
        return str(self.args[0])


class UploadRejected(MediaError):
    """Raised when an upload violates the configured size or MIME limits."""


class BlobError(MediaError):
    """Raised when the blob store cannot complete an operation."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(message)
        self.path = path


class BlobWriteFailed(BlobError):
    """Raised when bytes cannot be written to the blob store."""


class BlobReadFailed(BlobError):
    """Raised when bytes cannot be read from the blob store."""


class BlobDeleteFailed(BlobError):
    """Raised when a blob cannot be removed from the blob store."""
