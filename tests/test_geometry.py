from __future__ import annotations

import io

import pytest
from PIL import Image

from folio_media import geometry
from folio_media.errors import OutOfBounds, UnsupportedFormat, UnsupportedSource
from folio_media.models import Zone


def _pattern(size: tuple[int, int] = (100, 80), mode: str = "RGB") -> Image.Image:
    width, height = size
    image = Image.new(mode, size)
    pixels = [
        (x * 255 // max(1, width - 1), y * 255 // max(1, height - 1), 128) + ((255,) if mode == "RGBA" else ())
        for y in range(height)
        for x in range(width)
    ]
    image.putdata(pixels)
    return image


def _encoded(image: Image.Image, fmt: str = "PNG", **kwargs: object) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **kwargs)
    return buffer.getvalue()


@pytest.mark.parametrize(
    ("rect", "expected"),
    [
        ((90, 70, 50, 50), (10, 10)),
        ((-5, -5, 500, 500), (100, 80)),
        ((200, 10, 10, 10), (1, 10)),
        ((0, 0, 100, 80), (100, 80)),
    ],
)
def test_crop_clamps_to_image_extent(rect: tuple[int, int, int, int], expected: tuple[int, int]) -> None:
    image = _pattern()
    result = geometry.crop(image, *rect)
    assert result.size == expected
    assert result.width <= image.width and result.height <= image.height


def test_crop_rejects_empty_rectangle() -> None:
    with pytest.raises(OutOfBounds):
        geometry.crop(_pattern(), 10, 10, 0, 20)


def test_resize_single_dimension_keeps_aspect_ratio() -> None:
    assert geometry.resize(_pattern((100, 40)), 50, None).size == (50, 20)
    assert geometry.resize(_pattern((100, 40)), None, 20).size == (50, 20)


def test_resize_both_dimensions_stretches() -> None:
    assert geometry.resize(_pattern((100, 40)), 50, 50).size == (50, 50)


def test_resize_requires_a_target() -> None:
    with pytest.raises(ValueError):
        geometry.resize(_pattern(), None, None)


def test_rotate_is_clockwise() -> None:
    image = Image.new("RGB", (40, 20), (0, 0, 0))
    image.putpixel((0, 0), (255, 0, 0))

    rotated = geometry.rotate(image, 90)

    assert rotated.size == (20, 40)
    assert rotated.getpixel((19, 0)) == (255, 0, 0)
    assert geometry.rotate(image, 180).getpixel((39, 19)) == (255, 0, 0)
    assert geometry.rotate(image, -90).getpixel((0, 39)) == (255, 0, 0)
    assert geometry.rotate(image, 360).size == (40, 20)


def test_rotate_rejects_arbitrary_angles() -> None:
    with pytest.raises(ValueError):
        geometry.rotate(_pattern(), 45)


def test_redact_replaces_zone_pixels_and_is_idempotent() -> None:
    image = _pattern()
    zone = Zone(x=10, y=10, width=30, height=20)

    once = geometry.redact(image, [zone])
    twice = geometry.redact(once, [zone])

    region = zone.box
    assert once.crop(region).tobytes() != image.crop(region).tobytes()
    assert set(once.crop(region).getdata()) == {(0, 0, 0)}
    assert twice.tobytes() == once.tobytes()
    # Pixels outside the zone are untouched.
    assert once.getpixel((50, 50)) == image.getpixel((50, 50))


def test_redact_keeps_alpha_opaque() -> None:
    image = _pattern(mode="RGBA")
    redacted = geometry.redact(image, [Zone(x=0, y=0, width=5, height=5)], fill="#ff0000")
    assert redacted.getpixel((2, 2)) == (255, 0, 0, 255)


def test_redact_clamps_partial_zone_and_rejects_outside_zone() -> None:
    image = _pattern()
    redacted = geometry.redact(image, [Zone(x=90, y=70, width=50, height=50)])
    assert redacted.getpixel((99, 79)) == (0, 0, 0)

    with pytest.raises(OutOfBounds):
        geometry.redact(image, [Zone(x=150, y=10, width=10, height=10)])


@pytest.mark.parametrize("fmt", ["jpeg", "png", "webp"])
def test_encode_is_deterministic(fmt: str) -> None:
    image = _pattern()
    first = geometry.encode(image, fmt, 80)
    second = geometry.encode(image, fmt, 80)
    assert first == second
    assert geometry.sniff_format(first) == fmt


def test_encode_accepts_jpg_alias_and_flattens_alpha() -> None:
    data = geometry.encode(_pattern(mode="RGBA"), "jpg", 90)
    with Image.open(io.BytesIO(data)) as decoded:
        assert decoded.format == "JPEG"
        assert decoded.mode == "RGB"


def test_encode_rejects_unknown_format_and_bad_quality() -> None:
    with pytest.raises(UnsupportedFormat):
        geometry.encode(_pattern(), "gif")
    with pytest.raises(ValueError):
        geometry.encode(_pattern(), "jpeg", 0)


def test_encode_avif_when_available() -> None:
    if not geometry.avif_available():
        pytest.skip("Pillow build lacks AVIF support")
    data = geometry.encode(_pattern(), "avif", 70)
    assert geometry.sniff_format(data) == "avif"


def test_decode_rejects_garbage() -> None:
    with pytest.raises(UnsupportedSource):
        geometry.decode(b"definitely not an image")
    with pytest.raises(UnsupportedSource):
        geometry.decode(b"")


def test_decode_applies_exif_orientation() -> None:
    exif = Image.Exif()
    exif[0x0112] = 6  # rotate 90 clockwise on display
    data = _encoded(_pattern((40, 20)), "JPEG", exif=exif.tobytes())

    decoded = geometry.decode(data)

    assert decoded.size == (20, 40)
    assert decoded.mode == "RGB"


def test_decode_keeps_transparency() -> None:
    decoded = geometry.decode(_encoded(_pattern(mode="RGBA")))
    assert decoded.mode == "RGBA"


@pytest.mark.parametrize(
    ("size", "bounds", "expected"),
    [
        ((2000, 1500), (150, 150), (150, 112)),
        ((2000, 1500), (600, 400), (533, 400)),
        ((2000, 1500), (1200, 800), (1066, 800)),
        ((100, 80), (300, 300), (100, 80)),
        ((5000, 10), (150, 150), (150, 1)),
    ],
)
def test_fit_within_never_upscales(
    size: tuple[int, int], bounds: tuple[int, int], expected: tuple[int, int]
) -> None:
    assert geometry.fit_within(size, *bounds) == expected


def test_normalize_format_and_mime_types() -> None:
    assert geometry.normalize_format(" JPG ") == "jpeg"
    assert geometry.mime_type_for("jpeg") == "image/jpeg"
    assert geometry.mime_type_for("gif") == "image/gif"
    with pytest.raises(UnsupportedFormat):
        geometry.normalize_format("tiff")


def test_decompression_limit_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", Image.MAX_IMAGE_PIXELS)
    geometry.configure_decompression_limit(1000)
    assert Image.MAX_IMAGE_PIXELS == 1000
    geometry.configure_decompression_limit(0)
    assert Image.MAX_IMAGE_PIXELS is None
