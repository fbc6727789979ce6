from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from image_moderation.contracts import WatermarkSpec
from image_moderation.errors import ImageDecodeError
from image_moderation.io import asset_from_bytes
from image_moderation.watermark import apply_watermark, layout_watermark, watermark_region


def _asset(size=(500, 500), fmt="PNG", mode="RGB", color=(20, 60, 120)):
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt)
    return asset_from_bytes(buf.getvalue(), image_id="photo")


def _pixels(asset) -> np.ndarray:
    with Image.open(io.BytesIO(asset.data)) as img:
        return np.asarray(img.convert("RGBA"), dtype=np.int16)


@pytest.mark.parametrize("fmt", ["PNG", "JPEG", "WEBP"])
@pytest.mark.parametrize("size", [(500, 500), (1920, 1080), (640, 960)])
def test_watermark_preserves_dimensions_and_format(fmt, size):
    src = _asset(size=size, fmt=fmt)
    out = apply_watermark(src, WatermarkSpec())

    assert (out.width, out.height) == size
    assert out.format == src.format
    with Image.open(io.BytesIO(out.data)) as img:
        assert img.size == size


def test_only_pixels_inside_watermark_region_change():
    src = _asset()
    spec = WatermarkSpec(text="360Coordinates")
    out = apply_watermark(src, spec)

    changed = np.any(_pixels(src) != _pixels(out), axis=2)
    ys, xs = np.nonzero(changed)
    assert ys.size > 0

    x0, y0, x1, y1 = watermark_region(500, 500, spec)
    assert xs.min() >= x0 and xs.max() < x1
    assert ys.min() >= y0 and ys.max() < y1


def test_jpeg_changes_stay_within_blocks_touching_the_region():
    # Lossy re-encode: allow one 16px MCU of bleed around the region and tiny quantisation drift.
    src = _asset(fmt="JPEG")
    spec = WatermarkSpec(text="360Coordinates")
    out = apply_watermark(src, spec)

    diff = np.abs(_pixels(src) - _pixels(out)).max(axis=2)
    x0, y0, x1, y1 = watermark_region(500, 500, spec)
    assert diff[y0:y1, x0:x1].max() > 40

    mcu = 16
    bx0, by0 = max(0, (x0 // mcu - 1) * mcu), max(0, (y0 // mcu - 1) * mcu)
    bx1, by1 = min(500, (-(-x1 // mcu) + 1) * mcu), min(500, (-(-y1 // mcu) + 1) * mcu)
    outside = diff.copy()
    outside[by0:by1, bx0:bx1] = 0
    assert outside.max() <= 2


def test_region_sits_in_anchor_corner_inset_by_margin():
    spec = WatermarkSpec(margin=0.03)
    inset = 15  # 0.03 * min(600, 500)
    _, _, x1, y1 = watermark_region(600, 500, spec)
    assert (x1, y1) == (600 - inset, 500 - inset)

    x0, y0, _, _ = watermark_region(600, 500, spec.model_copy(update={"anchor": "top-left"}))
    assert (x0, y0) == (inset, inset)


def test_font_size_scales_with_width():
    spec = WatermarkSpec(font_scale=0.05)
    assert layout_watermark(1000, 800, spec).font_size == 50
    assert layout_watermark(200, 800, spec).font_size == 10
    assert layout_watermark(10, 10, spec).font_size == 1


def test_oversized_text_is_clamped_to_canvas():
    x0, y0, x1, y1 = watermark_region(500, 500, WatermarkSpec(font_scale=1.0))
    assert 0 <= x0 < x1 <= 500
    assert 0 <= y0 < y1 <= 500


def test_original_asset_is_not_mutated():
    src = _asset()
    before = bytes(src.data)
    out = apply_watermark(src, WatermarkSpec())
    assert src.data == before
    assert out is not src
    assert out.data != src.data


def test_alpha_png_keeps_alpha_channel():
    src = _asset(mode="RGBA", color=(10, 200, 10, 128))
    out = apply_watermark(src, WatermarkSpec())
    with Image.open(io.BytesIO(out.data)) as img:
        assert img.mode == "RGBA"


def test_corrupt_image_raises_decode_error():
    data = _asset().data
    truncated = asset_from_bytes(data[: len(data) // 2])
    with pytest.raises(ImageDecodeError):
        apply_watermark(truncated, WatermarkSpec())
