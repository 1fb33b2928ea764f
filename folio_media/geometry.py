"""Pure raster operations used by the upload pipeline and the optimizer.

Every function takes and returns in-memory :class:`PIL.Image.Image` objects
(or bytes for :func:`decode` / :func:`encode`). Nothing here touches the blob
store or the catalog.
"""

from __future__ import annotations

import io
import logging
from functools import lru_cache
from typing import Iterable

from PIL import Image, ImageColor, ImageOps, UnidentifiedImageError

from .errors import OutOfBounds, UnsupportedFormat, UnsupportedSource
from .models import Zone

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("jpeg", "png", "webp", "avif")

_FORMAT_ALIASES = {
    "jpg": "jpeg",
    "jpeg": "jpeg",
    "png": "png",
    "webp": "webp",
    "avif": "avif",
}

_PIL_FORMATS = {
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "avif": "AVIF",
}

MIME_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "avif": "image/avif",
    "gif": "image/gif",
    "tiff": "image/tiff",
    "bmp": "image/bmp",
}

FILE_EXTENSIONS = {
    "jpeg": "jpg",
    "png": "png",
    "webp": "webp",
    "avif": "avif",
}


def configure_decompression_limit(limit: int | None) -> None:
    """Apply the configured Pillow decompression-bomb limit.

    ``None`` keeps Pillow's default, ``0`` (or less) disables the check.
    """
    if limit is None:
        return
    Image.MAX_IMAGE_PIXELS = None if int(limit) <= 0 else int(limit)


@lru_cache(maxsize=1)
def avif_available() -> bool:
    """Return True when the installed Pillow build can write AVIF."""
    Image.init()
    return "AVIF" in Image.SAVE


def normalize_format(fmt: str) -> str:
    """Map a user-facing format name to one of :data:`SUPPORTED_FORMATS`."""
    name = _FORMAT_ALIASES.get((fmt or "").strip().lower())
    if name is None:
        raise UnsupportedFormat(f"Unsupported output format: {fmt!r}")
    if name == "avif" and not avif_available():
        raise UnsupportedFormat("AVIF encoding is not available in this Pillow build.")
    return name


def sniff_format(data: bytes) -> str:
    """Return the lower-case Pillow format name of encoded bytes (e.g. ``jpeg``)."""
    try:
        with Image.open(io.BytesIO(data)) as probe:
            fmt = probe.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise UnsupportedSource(f"Cannot identify image data: {exc}") from exc
    if not fmt:
        raise UnsupportedSource("Cannot identify image data.")
    # Multi-picture JPEGs from cameras report MPO.
    return "jpeg" if fmt == "MPO" else fmt.lower()


def decode(data: bytes) -> Image.Image:
    """Decode bytes into an RGB or RGBA raster with EXIF orientation applied."""
    if not data:
        raise UnsupportedSource("Empty image data.")
    try:
        with Image.open(io.BytesIO(data)) as opened:
            opened.load()
            image = ImageOps.exif_transpose(opened)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise UnsupportedSource(f"Cannot decode image data: {exc}") from exc

    if "A" in image.getbands() or "transparency" in image.info:
        return image.convert("RGBA")
    return image.convert("RGB")


def crop(image: Image.Image, x: float, y: float, w: float, h: float) -> Image.Image:
    """Crop to a rectangle clamped to the image extent.

    ``x``/``y`` are clamped to ``[0, size - 1]`` and ``w``/``h`` are shortened
    so the rectangle never leaves the image.
    """
    width, height = image.size
    left = min(max(int(round(x)), 0), width - 1)
    top = min(max(int(round(y)), 0), height - 1)
    crop_w = min(int(round(w)), width - left)
    crop_h = min(int(round(h)), height - top)
    if crop_w <= 0 or crop_h <= 0:
        raise OutOfBounds(f"Crop rectangle ({x}, {y}, {w}, {h}) is empty after clamping.")
    return image.crop((left, top, left + crop_w, top + crop_h))


def resize(image: Image.Image, target_w: int | None, target_h: int | None) -> Image.Image:
    """Resize to the target dimensions.

    With a single dimension the aspect ratio is preserved. With both, the
    image is stretched to exactly ``target_w x target_h`` even when that
    changes its aspect ratio.
    """
    orig_w, orig_h = image.size
    if not target_w and not target_h:
        raise ValueError("resize requires a target width or height")
    if target_w and target_h:
        size = (int(target_w), int(target_h))
    elif target_w:
        size = (int(target_w), max(1, round(orig_h * target_w / orig_w)))
    else:
        assert target_h is not None
        size = (max(1, round(orig_w * target_h / orig_h)), int(target_h))
    if size[0] < 1 or size[1] < 1:
        raise ValueError(f"Invalid target size {size}")
    if size == image.size:
        return image.copy()
    return image.resize(size, Image.Resampling.LANCZOS)


def rotate(image: Image.Image, degrees: int) -> Image.Image:
    """Rotate clockwise by a multiple of 90 degrees without resampling."""
    if degrees % 90 != 0:
        raise ValueError(f"Only multiples of 90 degrees are supported, got {degrees}")
    turns = (degrees // 90) % 4
    if turns == 0:
        return image.copy()
    transpose = {
        1: Image.Transpose.ROTATE_270,
        2: Image.Transpose.ROTATE_180,
        3: Image.Transpose.ROTATE_90,
    }[turns]
    return image.transpose(transpose)


def redact(image: Image.Image, zones: Iterable[Zone], fill: str = "#000000") -> Image.Image:
    """Paint every zone with an opaque fill, in order.

    The fill replaces the pixels outright, so nothing of the original zone
    content survives and repeating the call is a no-op.
    """
    result = image.copy()
    color = _opaque_color(fill, result.mode)
    for zone in zones:
        box = _clamp_box(zone, result.size)
        result.paste(color, box)
    return result


def encode(image: Image.Image, fmt: str, quality: int = 85) -> bytes:
    """Encode to ``jpeg``, ``png``, ``webp`` or ``avif``.

    ``quality`` is ignored for PNG. The same raster and parameters always
    produce the same bytes.
    """
    name = normalize_format(fmt)
    if not 1 <= int(quality) <= 100:
        raise ValueError(f"Quality must be between 1 and 100, got {quality}")

    target = image
    if name == "jpeg" and image.mode != "RGB":
        target = _flatten(image)
    elif image.mode not in ("RGB", "RGBA"):
        target = image.convert("RGBA" if "A" in image.getbands() else "RGB")

    buffer = io.BytesIO()
    try:
        target.save(buffer, format=_PIL_FORMATS[name], **_build_save_kwargs(name, int(quality)))
    except (KeyError, OSError) as exc:
        raise UnsupportedFormat(f"Cannot encode {name}: {exc}") from exc
    return buffer.getvalue()


def fit_within(size: tuple[int, int], max_w: int | None, max_h: int | None) -> tuple[int, int]:
    """Largest size within ``max_w x max_h`` that keeps the aspect ratio, never upscaling."""
    orig_w, orig_h = size
    scales = [1.0]
    if max_w:
        scales.append(max_w / orig_w)
    if max_h:
        scales.append(max_h / orig_h)
    scale = min(scales)
    # Round away float noise before truncating so 2000 * (150 / 2000) stays 150.
    return max(1, int(round(orig_w * scale, 6))), max(1, int(round(orig_h * scale, 6)))


def mime_type_for(fmt: str) -> str:
    name = _FORMAT_ALIASES.get(fmt.lower(), fmt.lower())
    return MIME_TYPES.get(name, f"image/{name}")


def _clamp_box(zone: Zone, size: tuple[int, int]) -> tuple[int, int, int, int]:
    width, height = size
    left, top, right, bottom = zone.box
    left, top = max(left, 0), max(top, 0)
    right, bottom = min(right, width), min(bottom, height)
    if right <= left or bottom <= top:
        raise OutOfBounds(f"Redaction zone {zone.box} lies outside the {width}x{height} image.")
    return left, top, right, bottom


def _opaque_color(fill: str, mode: str) -> int | tuple[int, ...]:
    rgb = ImageColor.getrgb(fill)[:3]
    if mode == "RGBA":
        return (*rgb, 255)
    if mode == "RGB":
        return rgb
    return ImageColor.getcolor(fill, mode)


def _flatten(image: Image.Image) -> Image.Image:
    rgba = image.convert("RGBA")
    background = Image.new("RGB", rgba.size, (255, 255, 255))
    background.paste(rgba, mask=rgba.getchannel("A"))
    return background


def _build_save_kwargs(fmt: str, quality: int) -> dict[str, int | bool]:
    kwargs: dict[str, int | bool] = {}
    if fmt in {"jpeg", "webp", "avif"}:
        kwargs["quality"] = quality
    if fmt == "jpeg":
        kwargs["optimize"] = True
        kwargs["progressive"] = True
    elif fmt == "webp":
        kwargs["method"] = 4
    elif fmt == "png":
        kwargs["optimize"] = True
    elif fmt == "avif":
        kwargs["speed"] = 6
    return kwargs
