from __future__ import annotations

import io

from PIL import Image

from folio_media.models import SizeLabel
from folio_media.variants import DEFAULT_SPECS, VariantSpec, generate, reencode


def _source(size: tuple[int, int]) -> Image.Image:
    image = Image.new("RGB", size, (30, 90, 160))
    for x in range(0, size[0], 7):
        image.putpixel((x, x % size[1]), (250, 250, 250))
    return image


def test_default_specs_fit_within_bounds() -> None:
    results = generate(_source((2000, 1500)), DEFAULT_SPECS)

    assert [result.spec.label for result in results] == [
        SizeLabel.THUMBNAIL,
        SizeLabel.SMALL,
        SizeLabel.MEDIUM,
        SizeLabel.LARGE,
    ]
    sizes = {result.spec.label: (result.width, result.height) for result in results}
    assert sizes[SizeLabel.THUMBNAIL] == (150, 112)
    assert sizes[SizeLabel.SMALL] == (300, 225)
    assert sizes[SizeLabel.MEDIUM] == (533, 400)
    assert sizes[SizeLabel.LARGE] == (1066, 800)
    for result in results:
        assert result.ok
        with Image.open(io.BytesIO(result.data or b"")) as decoded:
            assert decoded.format == "JPEG"
            assert decoded.size == (result.width, result.height)


def test_generate_never_upscales_small_sources() -> None:
    results = generate(_source((100, 80)), DEFAULT_SPECS)
    assert {(result.width, result.height) for result in results} == {(100, 80)}


def test_generate_is_byte_identical_across_runs() -> None:
    specs = [
        VariantSpec(label=SizeLabel.SMALL, max_width=300, max_height=300, format="webp", quality=80),
        VariantSpec(label=SizeLabel.THUMBNAIL, max_width=150, max_height=150, format="png"),
    ]
    source = _source((640, 480))

    first = generate(source, specs)
    second = generate(source, specs)

    assert [result.data for result in first] == [result.data for result in second]


def test_failing_spec_does_not_abort_others() -> None:
    specs = [
        VariantSpec(label=SizeLabel.THUMBNAIL, max_width=150, max_height=150, format="gif"),
        VariantSpec(label=SizeLabel.SMALL, max_width=300, max_height=300, format="jpg"),
    ]

    broken, working = generate(_source((640, 480)), specs)

    assert not broken.ok
    assert broken.error and "gif" in broken.error
    assert broken.byte_size == 0
    assert working.ok
    assert working.spec.format == "jpeg"


def test_reencode_keeps_dimensions_and_order() -> None:
    results = reencode(_source((320, 200)), ["webp", "png"], quality=80)

    assert [result.spec.format for result in results] == ["webp", "png"]
    for result in results:
        assert result.spec.label is SizeLabel.ORIGINAL
        assert (result.width, result.height) == (320, 200)
        assert result.ok
