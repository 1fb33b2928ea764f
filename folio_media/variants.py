"""Produce resized and re-encoded derivatives of a source raster."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from PIL import Image
from pydantic import BaseModel, Field, field_validator

from . import geometry
from .errors import MediaError
from .models import SizeLabel

logger = logging.getLogger(__name__)


class VariantSpec(BaseModel):
    """Desired output variant for an image asset."""

    label: SizeLabel
    max_width: int | None = Field(default=None, ge=1)
    max_height: int | None = Field(default=None, ge=1)
    format: str = Field(default="jpeg")
    quality: int = Field(default=85, ge=1, le=100)

    @field_validator("format")
    def _lower_format(cls, value: str) -> str:
        text = value.strip().lower()
        return "jpeg" if text == "jpg" else text


DEFAULT_SPECS: tuple[VariantSpec, ...] = (
    VariantSpec(label=SizeLabel.THUMBNAIL, max_width=150, max_height=150),
    VariantSpec(label=SizeLabel.SMALL, max_width=300, max_height=300),
    VariantSpec(label=SizeLabel.MEDIUM, max_width=600, max_height=400),
    VariantSpec(label=SizeLabel.LARGE, max_width=1200, max_height=800),
)


@dataclass(slots=True)
class VariantResult:
    """Encoded bytes for one spec, or the reason it could not be produced."""

    spec: VariantSpec
    data: bytes | None = None
    width: int | None = None
    height: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.data is not None

    @property
    def byte_size(self) -> int:
        return len(self.data) if self.data is not None else 0


def generate(source: Image.Image, specs: Iterable[VariantSpec]) -> list[VariantResult]:
    """Fit, resize and encode ``source`` once per spec.

    Specs are independent: a failing spec yields a result with ``error`` set
    and the remaining specs are still produced.
    """
    results: list[VariantResult] = []
    for spec in specs:
        try:
            target_w, target_h = geometry.fit_within(source.size, spec.max_width, spec.max_height)
            resized = geometry.resize(source, target_w, target_h)
            data = geometry.encode(resized, spec.format, spec.quality)
        except (MediaError, ValueError, OSError) as exc:
            logger.warning("Variant %s/%s failed: %s", spec.label.value, spec.format, exc)
            results.append(VariantResult(spec=spec, error=str(exc)))
            continue
        results.append(VariantResult(spec=spec, data=data, width=target_w, height=target_h))
    return results


def reencode(source: Image.Image, formats: Sequence[str], quality: int) -> list[VariantResult]:
    """Re-encode ``source`` at its own dimensions into each format, in order."""
    width, height = source.size
    specs = [
        VariantSpec(
            label=SizeLabel.ORIGINAL,
            max_width=width,
            max_height=height,
            format=fmt,
            quality=quality,
        )
        for fmt in formats
    ]
    return generate(source, specs)
