"""Turn an uploaded file into a published asset with its default variants."""

from __future__ import annotations

import contextlib
import logging
import uuid
from typing import Any, Iterable, Mapping, Sequence

from . import geometry, redaction, variants
from .blobstore import BlobStore
from .catalog import MediaCatalog
from .config import Config
from .errors import AssetNotFound, BlobDeleteFailed, UploadRejected
from .models import AssetMeta, CropArea, DisplayZone, MediaAsset, Variant, Zone
from .variants import DEFAULT_SPECS, VariantResult, VariantSpec

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 10 * 1024 * 1024


class UploadPipeline:
    """Decode, transform, store and catalog one upload at a time.

    An upload either yields a published asset or leaves nothing behind: a
    failure after the source blob was written purges every blob written so
    far and discards the staged catalog record.
    """

    def __init__(
        self,
        catalog: MediaCatalog,
        blob_store: BlobStore,
        *,
        specs: Sequence[VariantSpec] = DEFAULT_SPECS,
        source_quality: int = 92,
        min_zone_pixels: int = redaction.DEFAULT_MIN_ZONE_PIXELS,
        redaction_fill: str = "#000000",
        max_bytes: int = DEFAULT_MAX_BYTES,
        allowed_mime_types: Iterable[str] | None = None,
    ) -> None:
        self._catalog = catalog
        self._blobs = blob_store
        self._specs = list(specs)
        self._source_quality = source_quality
        self._min_zone_pixels = min_zone_pixels
        self._fill = redaction_fill
        self._max_bytes = max_bytes
        self._allowed = set(allowed_mime_types) if allowed_mime_types is not None else None

    @classmethod
    def from_config(cls, catalog: MediaCatalog, blob_store: BlobStore, config: Config) -> "UploadPipeline":
        return cls(
            catalog,
            blob_store,
            specs=config.variants.specs,
            source_quality=config.variants.source_quality,
            min_zone_pixels=config.redaction.min_zone_pixels,
            redaction_fill=config.redaction.fill,
            max_bytes=config.uploads.max_bytes,
            allowed_mime_types=config.uploads.allowed_mime_types,
        )

    def upload(
        self,
        raw_bytes: bytes,
        meta: AssetMeta,
        display_zones: Iterable[DisplayZone | Mapping[str, Any]] | None = None,
        display_scale: float | None = None,
        crop_area: CropArea | Mapping[str, Any] | None = None,
        rotate: int = 0,
    ) -> MediaAsset:
        """Store ``raw_bytes`` as a new asset and return it with variant URLs.

        Transforms run in editor order: rotate, crop, then redaction, so zone
        coordinates are relative to the cropped frame. Redaction is baked
        into the stored source. An upload whose variants all fail is still
        published, with no variants.
        """
        if len(raw_bytes) > self._max_bytes:
            raise UploadRejected(
                f"{meta.original_filename} is {len(raw_bytes)} bytes; the limit is {self._max_bytes}"
            )
        source_format = geometry.sniff_format(raw_bytes)
        mime_type = geometry.mime_type_for(source_format)
        if self._allowed is not None and mime_type not in self._allowed:
            raise UploadRejected(f"{meta.original_filename}: {mime_type} uploads are not allowed")

        image = geometry.decode(raw_bytes)
        transformed = False
        if rotate % 360:
            image = geometry.rotate(image, rotate)
            transformed = True
        if crop_area is not None:
            area = crop_area if isinstance(crop_area, CropArea) else CropArea.model_validate(crop_area)
            image = geometry.crop(image, area.x, area.y, area.width, area.height)
            transformed = True

        zones: list[Zone] = []
        if display_zones:
            scale = 1.0 if display_scale is None else display_scale
            zones = redaction.plan(display_zones, scale, self._min_zone_pixels)
            if zones:
                image = geometry.redact(image, zones, self._fill)
                transformed = True

        if transformed:
            stored_format = _reencode_format(source_format)
            source_bytes = geometry.encode(image, stored_format, self._source_quality)
        else:
            stored_format = source_format
            source_bytes = raw_bytes

        asset_id = self._catalog.new_id()
        source_path = _blob_path(asset_id, "source", stored_format)
        self._blobs.put(source_bytes, source_path)
        written = [source_path]

        try:
            self._catalog.create(
                source_bytes,
                meta,
                blob_path=source_path,
                zones=zones,
                asset_id=asset_id,
                publish=False,
            )
        except Exception:
            self._purge_blobs(written)
            raise

        try:
            results = variants.generate(image, self._specs)
            for result in results:
                if not result.ok:
                    continue
                variant = self._write_variant(asset_id, result)
                written.append(variant.blob_path)
                self._catalog.add_variant(asset_id, variant)
            if self._specs and not any(result.ok for result in results):
                logger.warning(
                    "No variants could be generated for %s (%s); publishing without variants",
                    asset_id,
                    meta.original_filename,
                )
            asset = self._catalog.publish(asset_id)
        except Exception:
            logger.warning("Upload of %s failed; rolling back asset %s", meta.original_filename, asset_id)
            self._rollback(asset_id, written)
            raise

        logger.info(
            "Uploaded %s as %s with %d variant(s)",
            meta.original_filename,
            asset_id,
            len(asset.variants),
        )
        return asset

    def regenerate_variants(self, asset_id: str) -> MediaAsset:
        """Rebuild the default variants of an existing asset from its stored source.

        New blobs are written first, then the catalog pointer is swapped and
        the old blob removed, so a URL never changes content while in use.
        """
        asset = self._catalog.get(asset_id)
        image = geometry.decode(self._blobs.get(asset.source_blob_path))
        replaced = 0
        for result in variants.generate(image, self._specs):
            if not result.ok:
                continue
            variant = self._write_variant(asset_id, result)
            try:
                previous = self._catalog.replace_variant(asset_id, variant)
            except Exception:
                self._purge_blobs([variant.blob_path])
                raise
            replaced += 1
            if previous is not None:
                self._purge_blobs([previous.blob_path])
        logger.info("Regenerated %d variant(s) for %s", replaced, asset_id)
        return self._catalog.get(asset_id)

    def _write_variant(self, asset_id: str, result: VariantResult) -> Variant:
        assert result.data is not None and result.width and result.height
        spec = result.spec
        path = _blob_path(asset_id, spec.label.value, spec.format)
        url = self._blobs.put(result.data, path)
        return Variant(
            size_label=spec.label,
            width=result.width,
            height=result.height,
            format=spec.format,
            quality=None if spec.format == "png" else spec.quality,
            blob_path=path,
            byte_size=result.byte_size,
            url=url,
        )

    def _rollback(self, asset_id: str, written: list[str]) -> None:
        self._purge_blobs(written)
        with contextlib.suppress(AssetNotFound, ValueError):
            self._catalog.discard(asset_id)

    def _purge_blobs(self, paths: Iterable[str]) -> None:
        for path in paths:
            try:
                self._blobs.delete(path)
            except BlobDeleteFailed as exc:
                logger.warning("Could not remove blob %s: %s", path, exc)


def _reencode_format(source_format: str) -> str:
    if source_format in geometry.SUPPORTED_FORMATS:
        if source_format != "avif" or geometry.avif_available():
            return source_format
    return "png"


def _blob_path(asset_id: str, label: str, fmt: str) -> str:
    extension = geometry.FILE_EXTENSIONS.get(fmt, fmt)
    return f"{asset_id}/{label}-{uuid.uuid4().hex[:8]}.{extension}"
