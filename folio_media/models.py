"""Typed records for media assets, variants and optimization jobs."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SizeLabel(str, Enum):
    """Named derivative sizes."""

    THUMBNAIL = "thumbnail"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    ORIGINAL = "original"


class MediaCategory(str, Enum):
    """Where a media asset is meant to be used."""

    PORTFOLIO = "portfolio"
    BLOG = "blog"
    PROFILE = "profile"
    GALLERY = "gallery"
    OTHER = "other"


class OptimizationState(str, Enum):
    """Optimization progress recorded on the asset itself."""

    NONE = "none"
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"


class AssetLifecycle(str, Enum):
    """Visibility of a catalog record to readers."""

    STAGED = "staged"
    ACTIVE = "active"
    DELETING = "deleting"


class JobStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class AssetJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AssetJobStatus.COMPLETED, AssetJobStatus.FAILED)


class Zone(BaseModel):
    """Rectangle in source-image pixel space."""

    x: int = Field(ge=0)
    y: int = Field(ge=0)
    width: int = Field(ge=1)
    height: int = Field(ge=1)

    @property
    def box(self) -> tuple[int, int, int, int]:
        """Return the Pillow ``(left, upper, right, lower)`` box."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)


class DisplayZone(BaseModel):
    """Rectangle drawn on a scaled preview, before conversion to source pixels.

    Width and height may be negative when the user dragged up or left.
    """

    x: float
    y: float
    w: float
    h: float
    label: Optional[str] = Field(default=None, description="Label shown in the zone editor.")
    visible: bool = Field(default=True, description="Hidden zones are not applied.")


class CropArea(BaseModel):
    """Crop rectangle in source pixels; clamped to the image by the geometry engine."""

    x: int
    y: int
    width: int
    height: int


class Variant(BaseModel):
    """Represents a stored derivative of a media asset."""

    size_label: SizeLabel = Field(description="Derivative size name, e.g. 'thumbnail'.")
    width: int = Field(ge=1)
    height: int = Field(ge=1)
    format: str = Field(description="Encoded format: jpeg, png, webp or avif.")
    quality: Optional[int] = Field(default=None, ge=1, le=100)
    blob_path: str = Field(description="Path of the derivative bytes inside the blob store.")
    byte_size: int = Field(ge=0)
    url: Optional[str] = Field(default=None, description="Public URL resolved by the blob store.")

    @field_validator("blob_path")
    def _strip_leading_slash(cls, value: str) -> str:
        return value.lstrip("/")

    @property
    def key(self) -> tuple[str, str]:
        return (self.size_label.value, self.format)


class MediaStats(BaseModel):
    views: int = 0
    downloads: int = 0
    last_accessed: Optional[datetime] = None


class OptimizationSummary(BaseModel):
    """Outcome of the most recent optimization run for an asset."""

    original_size: Optional[int] = None
    optimized_size: Optional[int] = None
    compression_ratio: Optional[float] = None
    quality: int = 85
    error: Optional[str] = None


class AssetMeta(BaseModel):
    """Caller-supplied description of an upload."""

    original_filename: str
    mime_type: Optional[str] = Field(default=None, description="Declared MIME type; detection wins.")
    width: Optional[int] = Field(default=None, description="Declared width; decoded size wins.")
    height: Optional[int] = Field(default=None, description="Declared height; decoded size wins.")
    title: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    alt_text: Optional[str] = Field(default=None, max_length=200)
    category: MediaCategory = MediaCategory.OTHER
    tags: list[str] = Field(default_factory=list)
    is_public: bool = True

    @field_validator("tags")
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        return _clean_tags(value)


class MediaAsset(BaseModel):
    """One authoritative source image plus its derivatives."""

    id: str
    source_blob_path: str
    source_url: Optional[str] = None
    original_filename: str
    mime_type: str
    byte_size: int = Field(ge=0)
    width: int = Field(ge=1)
    height: int = Field(ge=1)
    variants: list[Variant] = Field(default_factory=list)
    redaction_zones: list[Zone] = Field(
        default_factory=list,
        description="Zones already baked into the source bytes; historical only.",
    )
    optimization_state: OptimizationState = OptimizationState.NONE
    last_optimized_at: Optional[datetime] = None
    optimization: OptimizationSummary = Field(default_factory=OptimizationSummary)
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    lifecycle: AssetLifecycle = AssetLifecycle.STAGED
    title: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    alt_text: Optional[str] = Field(default=None, max_length=200)
    category: MediaCategory = MediaCategory.OTHER
    tags: list[str] = Field(default_factory=list)
    is_public: bool = True
    archived: bool = False
    archived_at: Optional[datetime] = None
    stats: MediaStats = Field(default_factory=MediaStats)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("tags")
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        return _clean_tags(value)

    @model_validator(mode="after")
    def _unique_variants(self) -> "MediaAsset":
        seen: set[tuple[str, str]] = set()
        for variant in self.variants:
            if variant.key in seen:
                raise ValueError(f"duplicate variant {variant.key!r}")
            seen.add(variant.key)
        return self

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def blob_paths(self) -> list[str]:
        return [self.source_blob_path, *(variant.blob_path for variant in self.variants)]

    def get_variant(self, size_label: str | SizeLabel, format: str | None = None) -> Variant | None:
        label = SizeLabel(size_label)
        for variant in self.variants:
            if variant.size_label is label and (format is None or variant.format == format):
                return variant
        return None

    @property
    def thumbnail_url(self) -> str | None:
        thumb = self.get_variant(SizeLabel.THUMBNAIL)
        return thumb.url if thumb else None


class AssetProgress(BaseModel):
    """Per-asset status inside an optimization job."""

    status: AssetJobStatus = AssetJobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    error: Optional[str] = None
    original_size: int = 0
    optimized_size: Optional[int] = None
    compression_ratio: Optional[float] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobStats(BaseModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class OptimizationJob(BaseModel):
    """Batch re-encode of a fixed set of assets."""

    job_id: str
    asset_ids: list[str]
    formats: list[str]
    quality: int = Field(ge=1, le=100)
    concurrency: int = Field(default=5, ge=1)
    status: JobStatus = JobStatus.CREATED
    per_asset_status: dict[str, AssetProgress] = Field(default_factory=dict)
    rejected: dict[str, str] = Field(
        default_factory=dict, description="Asset ids refused at submission, with the reason."
    )
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def stats(self) -> JobStats:
        stats = JobStats(total=len(self.per_asset_status))
        for entry in self.per_asset_status.values():
            current = getattr(stats, entry.status.value)
            setattr(stats, entry.status.value, current + 1)
        return stats


def _clean_tags(tags: list[str]) -> list[str]:
    cleaned: list[str] = []
    for tag in tags:
        text = tag.strip()
        if not text or text in cleaned:
            continue
        if len(text) > 30:
            raise ValueError("Tag cannot be more than 30 characters")
        cleaned.append(text)
    return cleaned
