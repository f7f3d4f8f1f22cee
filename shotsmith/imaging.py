"""Image helpers built on Pillow.

All images travel through the engine as base64 data URLs, so every helper
takes and returns base64 text.
"""

from __future__ import annotations

import base64
import io
import re

from PIL import Image

_DATA_URL_RE = re.compile(r"^data:([\w/+.-]+);base64,(.+)$", re.DOTALL)

_VIDEO_SIZES = {
    "16:9": (1280, 720),
    "9:16": (720, 1280),
    "1:1": (720, 720),
}


def parse_data_url(value: str) -> tuple[str, str] | None:
    """Split a data URL into (mime type, base64 payload), or None."""
    match = _DATA_URL_RE.match(value.strip())
    if not match:
        return None
    return match.group(1), match.group(2)


def strip_data_url(value: str) -> str:
    """Return the base64 payload of a data URL, or the value unchanged."""
    parsed = parse_data_url(value)
    return parsed[1] if parsed else value


def to_data_url(payload: bytes | str, mime_type: str) -> str:
    if isinstance(payload, bytes):
        payload = base64.b64encode(payload).decode("ascii")
    return f"data:{mime_type};base64,{payload}"


def video_size(aspect_ratio: str) -> tuple[int, int]:
    """Pixel size of a video frame for an aspect ratio (16:9 when unknown)."""
    return _VIDEO_SIZES.get(aspect_ratio, _VIDEO_SIZES["16:9"])


def _open(b64: str) -> Image.Image:
    img = Image.open(io.BytesIO(base64.b64decode(strip_data_url(b64))))
    img.load()
    return img


def _to_png_b64(img: Image.Image) -> str:
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def resize_to_cover(b64: str, width: int, height: int) -> str:
    """Scale an image to cover ``width`` x ``height`` and centre-crop it.

    Args:
        b64: Base64 image, bare or as a data URL.
        width: Target width in pixels.
        height: Target height in pixels.

    Returns:
        Base64 PNG of exactly the target size.
    """
    img = _open(b64).convert("RGB")
    scale = max(width / img.width, height / img.height)
    new_w = max(width, round(img.width * scale))
    new_h = max(height, round(img.height * scale))
    img = img.resize((new_w, new_h), Image.LANCZOS)

    left = (new_w - width) // 2
    top = (new_h - height) // 2
    img = img.crop((left, top, left + width, top + height))
    return _to_png_b64(img)


def crop_grid(b64: str, rows: int = 3, cols: int = 3) -> list[str]:
    """Cut a grid image into cells, row by row.

    Returns:
        ``rows * cols`` base64 PNGs, top-left first.
    """
    img = _open(b64).convert("RGB")
    cell_w = img.width // cols
    cell_h = img.height // rows
    cells = []
    for row in range(rows):
        for col in range(cols):
            box = (col * cell_w, row * cell_h, (col + 1) * cell_w, (row + 1) * cell_h)
            cells.append(_to_png_b64(img.crop(box)))
    return cells
