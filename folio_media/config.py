"""Configuration models and YAML loading for the media pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .variants import DEFAULT_SPECS, VariantSpec

CONFIG_FILENAME = "folio-media.yml"


def _default_variant_specs() -> list[VariantSpec]:
    return [spec.model_copy() for spec in DEFAULT_SPECS]


class StorageConfig(BaseModel):
    """Where blobs and catalog records live."""

    blob_root: Path = Field(default=Path("uploads/media"))
    base_url: str = Field(default="/uploads/media", description="URL prefix for served blobs.")
    catalog_dir: Path | None = Field(
        default=Path(".folio-media"),
        description="Directory for asset and job records; null keeps everything in memory.",
    )

    @field_validator("blob_root", mode="before")
    def _ensure_path(cls, value: Any) -> Path:
        return Path(value)

    @field_validator("catalog_dir", mode="before")
    def _ensure_optional_path(cls, value: Any) -> Path | None:
        if value is None or value == "":
            return None
        return Path(value)


class VariantConfig(BaseModel):
    """Derivatives produced for every upload."""

    specs: list[VariantSpec] = Field(default_factory=_default_variant_specs)
    source_quality: int = Field(
        default=92,
        ge=1,
        le=100,
        description="Quality used when a cropped or redacted source has to be re-encoded.",
    )


class RedactionConfig(BaseModel):
    """How redaction zones are planned and painted."""

    min_zone_pixels: int = Field(default=10, ge=1)
    fill: str = Field(default="#000000", description="Fill colour for solid redaction (hex).")


class OptimizationConfig(BaseModel):
    """Defaults for batch optimization jobs."""

    default_formats: list[str] = Field(default_factory=lambda: ["webp"])
    default_quality: int = Field(default=85, ge=60, le=100)
    default_concurrency: int = Field(default=5, ge=1, le=64)
    lease_seconds: float = Field(default=300.0, gt=0)

    @field_validator("default_formats")
    def _normalize_formats(cls, value: list[str]) -> list[str]:
        formats = [item.strip().lower() for item in value if item.strip()]
        if not formats:
            raise ValueError("At least one optimization format is required.")
        return formats


class UploadConfig(BaseModel):
    """Limits applied before an upload is decoded."""

    max_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    allowed_mime_types: list[str] = Field(
        default_factory=lambda: [
            "image/jpeg",
            "image/png",
            "image/webp",
            "image/gif",
            "image/avif",
            "image/tiff",
            "image/bmp",
        ]
    )


class Config(BaseModel):
    project_name: str = Field(default="Folio Media")
    storage: StorageConfig = Field(default_factory=StorageConfig)
    variants: VariantConfig = Field(default_factory=VariantConfig)
    redaction: RedactionConfig = Field(default_factory=RedactionConfig)
    optimization: OptimizationConfig = Field(default_factory=OptimizationConfig)
    uploads: UploadConfig = Field(default_factory=UploadConfig)
    decompression_bomb_limit: int | None = Field(
        default=None,
        description=(
            "Override Pillow's MAX_IMAGE_PIXELS (decompression bomb limit). "
            "Set to a positive integer to cap allowed pixels; set to 0 to disable the limit; "
            "leave unset to use Pillow's default."
        ),
    )


def load_config(path: str | Path) -> Config:
    """Load configuration and resolve relative paths based on the config location.

    ``path`` may point to a file or to a directory. A directory without a
    ``folio-media.yml`` yields the defaults anchored to that directory.
    """
    candidate = Path(path)
    data: dict[str, Any] = {}
    if candidate.is_dir():
        config_file = candidate / CONFIG_FILENAME
        if config_file.exists():
            with config_file.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        base_dir = candidate.resolve()
    else:
        if not candidate.exists():
            raise FileNotFoundError(candidate)
        with candidate.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        base_dir = candidate.parent.resolve()

    cfg = Config(**data)

    def _abs_required(value: Path) -> Path:
        return value if value.is_absolute() else (base_dir / value).resolve()

    storage = cfg.storage
    storage.blob_root = _abs_required(storage.blob_root)
    if storage.catalog_dir is not None:
        storage.catalog_dir = _abs_required(storage.catalog_dir)

    return cfg
