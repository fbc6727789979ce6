from __future__ import annotations

import base64
import hashlib
import io
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image

from .errors import ImageDecodeError

_PIL_FORMATS = {"jpeg": "JPEG", "png": "PNG", "webp": "WEBP"}


@dataclass(frozen=True)
class ImageAsset:
    """
    Raw uploaded image. Never mutated; transformations return a new asset.

    `format` is sniffed from the bytes (None if unrecognised); `width`/`height`
    come from the header and are None when it cannot be parsed.
    """

    data: bytes
    image_id: str
    format: Optional[str]
    width: Optional[int]
    height: Optional[int]

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def dimensions(self) -> Optional[Tuple[int, int]]:
        if self.width is None or self.height is None:
            return None
        return self.width, self.height


def sniff_format(data: bytes) -> Optional[str]:
    if data[:3] == b"\xff\xd8\xff":
        return "jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    return None


def _read_dimensions(data: bytes) -> Optional[Tuple[int, int]]:
    # Header only; pixel data is not decoded here.
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (OSError, ValueError, Image.DecompressionBombError):
        return None


def asset_from_bytes(data: bytes, image_id: Optional[str] = None) -> ImageAsset:
    """
    Build an ImageAsset. The format comes from the byte signature only; file
    names and declared content types are not trusted.
    """
    data = bytes(data)
    fmt = sniff_format(data)
    dims = _read_dimensions(data) if data else None
    if image_id is None:
        image_id = hashlib.sha256(data).hexdigest()[:16]
    return ImageAsset(
        data=data,
        image_id=image_id,
        format=fmt,
        width=dims[0] if dims else None,
        height=dims[1] if dims else None,
    )


def load_asset(path: str, image_id: Optional[str] = None) -> ImageAsset:
    p = Path(path)
    return asset_from_bytes(p.read_bytes(), image_id=image_id)


def decode_image(asset: ImageAsset) -> Image.Image:
    """Fully decode the pixel data; truncated or corrupt files raise ImageDecodeError."""
    try:
        img = Image.open(io.BytesIO(asset.data))
        img.load()
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        raise ImageDecodeError(f"Cannot decode image {asset.image_id}: {e}") from e
    return img


def encode_image(img: Image.Image, fmt: str, quality: int, image_id: str) -> ImageAsset:
    """
    Re-encode `img` in `fmt`. JPEG/WebP honour `quality`; PNG is lossless.
    """
    pil_format = _PIL_FORMATS[fmt]
    if pil_format == "JPEG" and img.mode != "RGB":
        img = img.convert("RGB")
    buf = io.BytesIO()
    if pil_format == "PNG":
        img.save(buf, format="PNG", optimize=True)
    else:
        img.save(buf, format=pil_format, quality=int(quality))
    data = buf.getvalue()
    return ImageAsset(data=data, image_id=image_id, format=fmt, width=img.size[0], height=img.size[1])


def image_to_base64(asset: ImageAsset) -> str:
    return base64.b64encode(asset.data).decode("utf-8")


def write_bytes(path: str, data: bytes) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)


def safe_id_from_relpath(relpath: str) -> str:
    """
    Make a stable, filesystem-safe id from a relative path.
    Example: "kitchen/img 1.png" -> "kitchen__img_1"
    """
    p = Path(relpath)
    stem = p.with_suffix("").as_posix()
    stem = stem.replace("/", "__")
    stem = "".join(ch if ch.isalnum() or ch in ("_", "-", ".") else "_" for ch in stem)
    return stem
