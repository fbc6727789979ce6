from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from PIL import Image, ImageDraw, ImageFont

from .contracts import WatermarkSpec
from .errors import ImageDecodeError
from .io import ImageAsset, decode_image, encode_image

Font = Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]


@dataclass(frozen=True)
class WatermarkLayout:
    font_size: int
    # (x0, y0, x1, y1), end-exclusive; nothing outside it is touched.
    box: Tuple[int, int, int, int]
    origin: Tuple[int, int]


def _load_font(font_path: Optional[str], size: int) -> Font:
    if font_path:
        return ImageFont.truetype(font_path, size)
    return ImageFont.load_default(size=size)


def _layout(width: int, height: int, spec: WatermarkSpec) -> Tuple[WatermarkLayout, Font]:
    """
    Font size scales with image width; the text box sits in `spec.anchor`,
    inset by `spec.margin * min(width, height)` and clamped to the canvas.
    """
    font_size = max(1, int(round(spec.font_scale * width)))
    font = _load_font(spec.font_path, font_size)
    left, top, right, bottom = font.getbbox(spec.text)
    text_w, text_h = right - left, bottom - top
    inset = int(round(spec.margin * min(width, height)))

    x0 = width - inset - text_w if spec.anchor.endswith("right") else inset
    y0 = height - inset - text_h if spec.anchor.startswith("bottom") else inset
    x0 = max(0, min(x0, width - text_w))
    y0 = max(0, min(y0, height - text_h))

    box = (x0, y0, min(width, x0 + text_w), min(height, y0 + text_h))
    return WatermarkLayout(font_size=font_size, box=box, origin=(x0 - left, y0 - top)), font


def layout_watermark(width: int, height: int, spec: WatermarkSpec) -> WatermarkLayout:
    return _layout(width, height, spec)[0]


def watermark_region(width: int, height: int, spec: WatermarkSpec) -> Tuple[int, int, int, int]:
    return layout_watermark(width, height, spec).box


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def apply_watermark(image: ImageAsset, spec: WatermarkSpec) -> ImageAsset:
    """
    Returns a new watermarked ImageAsset with the same pixel dimensions and format.

    Raises ImageDecodeError if `image` cannot be decoded.
    """
    if image.format is None:
        raise ImageDecodeError(f"Unknown image format for {image.image_id}")
    img = decode_image(image)
    width, height = img.size

    base = img.convert("RGBA")
    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    layout, font = _layout(width, height, spec)
    alpha = int(round(255 * spec.opacity))
    draw = ImageDraw.Draw(overlay)
    draw.text(layout.origin, spec.text, font=font, fill=(*spec.color, alpha))

    out = Image.alpha_composite(base, overlay)
    if not _has_alpha(img):
        out = out.convert("RGB")
    return encode_image(out, image.format, spec.quality, image_id=image.image_id)
