"""Transformer dispatch and Pillow codecs.

Each job type maps to one function ``(data, parameters) -> bytes``. Parameters
are read with explicit defaults, so a missing or mistyped value falls back
instead of failing.
"""

import io
from typing import Any, Callable, Dict, Mapping, Optional, Union

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from .errors import TransformFailed, UnsupportedOperation
from .jobs.models import JobType, ensure_exhaustive, get_int, get_str

DEFAULT_WIDTH = 800
DEFAULT_HEIGHT = 600
MAX_DIMENSION = 10_000
DEFAULT_WATERMARK = "filejobs"
JPEG_QUALITY = 90

Transform = Callable[[bytes, Mapping[str, Any]], bytes]


def _open(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise TransformFailed(f"Input is not a readable image: {e}") from e
    return image


def _flatten(image: Image.Image) -> Image.Image:
    """Convert to RGB, compositing any transparency onto white."""
    if image.mode in ("RGBA", "LA", "P"):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def _encode(image: Image.Image, fmt: str, **options) -> bytes:
    buffer = io.BytesIO()
    try:
        image.save(buffer, format=fmt, **options)
    except (OSError, ValueError) as e:
        raise TransformFailed(f"Encoding {fmt} failed: {e}") from e
    return buffer.getvalue()


def convert_to_pdf(data: bytes, parameters: Mapping[str, Any]) -> bytes:
    """Wrap an image into a single-page PDF."""
    image = _flatten(_open(data))
    return _encode(image, "PDF", resolution=72.0)


def resize_image(data: bytes, parameters: Mapping[str, Any]) -> bytes:
    """Resize to ``Width`` x ``Height`` (default 800x600), JPEG output."""
    width = get_int(parameters, "Width", DEFAULT_WIDTH)
    height = get_int(parameters, "Height", DEFAULT_HEIGHT)
    if not (0 < width <= MAX_DIMENSION and 0 < height <= MAX_DIMENSION):
        raise UnsupportedOperation(
            f"Resize to {width}x{height} is out of range (1..{MAX_DIMENSION})"
        )
    image = _flatten(_open(data)).resize((width, height), Image.Resampling.LANCZOS)
    return _encode(image, "JPEG", quality=JPEG_QUALITY)


def add_watermark(data: bytes, parameters: Mapping[str, Any]) -> bytes:
    """Draw ``WatermarkText`` in the bottom-right corner, JPEG output."""
    text = get_str(parameters, "WatermarkText", DEFAULT_WATERMARK).strip()
    if not text:
        raise UnsupportedOperation("Watermark text is empty")

    base = _open(data).convert("RGBA")
    overlay = Image.new("RGBA", base.size, (255, 255, 255, 0))
    draw = ImageDraw.Draw(overlay)
    font = ImageFont.load_default()

    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    margin = max(4, min(base.size) // 50)
    x = max(0, base.width - (right - left) - margin)
    y = max(0, base.height - (bottom - top) - margin)
    draw.text((x, y), text, font=font, fill=(255, 255, 255, 160))

    watermarked = Image.alpha_composite(base, overlay)
    return _encode(_flatten(watermarked), "JPEG", quality=JPEG_QUALITY)


def convert_to_jpg(data: bytes, parameters: Mapping[str, Any]) -> bytes:
    return _encode(_flatten(_open(data)), "JPEG", quality=JPEG_QUALITY)


def convert_to_png(data: bytes, parameters: Mapping[str, Any]) -> bytes:
    return _encode(_open(data), "PNG")


TRANSFORMS: Dict[JobType, Transform] = {
    JobType.CONVERT_TO_PDF: convert_to_pdf,
    JobType.RESIZE_IMAGE: resize_image,
    JobType.ADD_WATERMARK: add_watermark,
    JobType.CONVERT_TO_JPG: convert_to_jpg,
    JobType.CONVERT_TO_PNG: convert_to_png,
}

ensure_exhaustive(TRANSFORMS, "TRANSFORMS")


def transform(
    job_type: Union[JobType, str],
    data: bytes,
    parameters: Optional[Mapping[str, Any]] = None,
) -> bytes:
    """Run the transformation registered for ``job_type``.

    Raises:
        UnsupportedOperation: Unknown job type or invalid parameters
        TransformFailed: Input cannot be decoded or output cannot be encoded
    """
    try:
        job_type = JobType(job_type)
    except ValueError:
        raise UnsupportedOperation(f"Unknown job type: {job_type}") from None
    return TRANSFORMS[job_type](data, parameters or {})
