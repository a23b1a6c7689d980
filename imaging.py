import io
import math
import base64
import binascii
from typing import List, Sequence

from pydantic import BaseModel
from PIL import Image, UnidentifiedImageError

from config import (
    BLANK_PANEL_COLOR,
    BLANK_PANEL_SIZE,
    COMPOSITE_MIME,
    FALLBACK_MIME,
    STITCH_QUALITY,
)
from errors import DecodeError, EmptyInputError

# MIME type -> Pillow format name
FORMATS = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}
LOSSY_FORMATS = {"JPEG", "WEBP"}

# ------------------ BUFFERS -----------------------


class ImageBuffer(BaseModel):
    """Encoded image bytes tagged with their MIME type."""
    mime_type: str = FALLBACK_MIME
    data: bytes

    @classmethod
    def from_data_uri(cls, uri: str, default_mime: str = FALLBACK_MIME) -> "ImageBuffer":
        """
        Parse a `data:<mime>;base64,<payload>` URI. A bare base64 string
        without the header is accepted and tagged with `default_mime`.
        """
        mime_type = default_mime
        payload = uri.strip()
        if payload.startswith("data:"):
            header, sep, payload = payload.partition(",")
            if not sep:
                raise DecodeError("Data URI has no payload")
            mime_type = header[len("data:"):].split(";")[0] or default_mime
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"Invalid base64 image payload: {e}") from e
        return cls(mime_type=mime_type, data=data)

    def raw_base64(self) -> str:
        """The payload alone, without any encoding-scheme header."""
        return base64.b64encode(self.data).decode("utf-8")

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.raw_base64()}"

    @property
    def extension(self) -> str:
        fmt = FORMATS.get(self.mime_type, "PNG")
        return "jpg" if fmt == "JPEG" else fmt.lower()


# ------------------ CODEC -------------------------


def decode(buffer: ImageBuffer) -> Image.Image:
    """Decode a buffer into a fully loaded PIL image."""
    try:
        img = Image.open(io.BytesIO(buffer.data))
        # Image.open is lazy; load() is what notices truncated data
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise DecodeError(f"Cannot decode {buffer.mime_type} image: {e}") from e
    return img


def to_rgb(img: Image.Image) -> Image.Image:
    """Flatten any alpha onto white so the image can be written as JPEG."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def encode(img: Image.Image, quality: float = STITCH_QUALITY,
           mime_type: str = COMPOSITE_MIME) -> ImageBuffer:
    """
    Encode a PIL image. `quality` is a 0-1 compression hint that only
    lossy formats (JPEG, WebP) use.
    """
    if not 0 <= quality <= 1:
        raise ValueError(f"quality must be between 0 and 1, got {quality}")
    fmt = FORMATS.get(mime_type)
    if fmt is None:
        raise ValueError(f"Unsupported output type: {mime_type}")

    buf = io.BytesIO()
    if fmt == "JPEG":
        to_rgb(img).save(buf, format=fmt, quality=int(round(quality * 100)))
    elif fmt in LOSSY_FORMATS:
        img.save(buf, format=fmt, quality=int(round(quality * 100)))
    else:
        img.save(buf, format=fmt)
    return ImageBuffer(mime_type="image/jpeg" if fmt == "JPEG" else mime_type,
                       data=buf.getvalue())


def blank(width: int = BLANK_PANEL_SIZE, height: int = BLANK_PANEL_SIZE,
          color=BLANK_PANEL_COLOR, quality: float = STITCH_QUALITY) -> ImageBuffer:
    """Solid-color placeholder panel."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid placeholder size {width}x{height}")
    canvas = Image.new("RGB", (width, height), color)
    return encode(canvas, quality, COMPOSITE_MIME)


# ------------------ COMPOSITOR --------------------


def vertical_layout(sizes: Sequence[tuple]) -> tuple:
    """
    Work out where each image lands in the strip.

    Returns (target_width, canvas_height, spans) where spans[i] is the
    (top, bottom) pixel rows of image i. Heights are accumulated on a
    continuous running Y and only the boundaries are rounded, so
    neighbouring panels share an edge and rounding never drifts.
    """
    target_width = max(w for w, _ in sizes)
    edges = [0.0]
    for w, h in sizes:
        edges.append(edges[-1] + h * (target_width / w))

    # Tolerate float noise like 1000.0000000002 before taking the ceiling
    canvas_height = max(1, math.ceil(round(edges[-1], 6)))
    rows = [min(round(e), canvas_height) for e in edges]
    rows[-1] = canvas_height
    spans = list(zip(rows[:-1], rows[1:]))
    return target_width, canvas_height, spans


def stitch_vertically(images: Sequence[ImageBuffer],
                      quality: float = STITCH_QUALITY) -> ImageBuffer:
    """
    Stack images top to bottom into one strip, scaling each to the widest
    input's width so aspect ratios are kept. Raises EmptyInputError when
    there is nothing to stitch.
    """
    if not images:
        raise EmptyInputError("No images to stitch")

    decoded: List[Image.Image] = [decode(b) for b in images]
    target_width, canvas_height, spans = vertical_layout(
        [img.size for img in decoded])

    canvas = Image.new("RGB", (target_width, canvas_height), "white")
    for img, (top, bottom) in zip(decoded, spans):
        draw_height = bottom - top
        if draw_height <= 0:
            # Image scaled to less than half a row
            continue
        panel = to_rgb(img)
        if panel.size != (target_width, draw_height):
            panel = panel.resize((target_width, draw_height),
                                 resample=Image.LANCZOS)
        canvas.paste(panel, (0, top))

    return encode(canvas, quality, COMPOSITE_MIME)
