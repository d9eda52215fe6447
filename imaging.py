"""Pillow/numpy helpers for the two ends of the pipeline.

Inputs are normalized to PNG (optionally with a white background keyed out)
before they go to the model; the model's output is resized and recompressed
before it is returned or stored.
"""

import logging
from dataclasses import dataclass
from io import BytesIO

import numpy as np
from PIL import Image, ImageOps

from errors import ConversionError

logger = logging.getLogger(__name__)

CANONICAL_MIME = "image/png"
DEFAULT_KEY_THRESHOLD = 240

OUTPUT_FORMATS = {
    "jpeg": ("JPEG", "image/jpeg", "jpg"),
    "png": ("PNG", "image/png", "png"),
}

# Modes Pillow can write straight into a PNG.
_PNG_MODES = {"1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA"}

_DECODE_ERRORS = (OSError, SyntaxError, ValueError, Image.DecompressionBombError)

try:
    _LANCZOS = Image.Resampling.LANCZOS
except AttributeError:
    _LANCZOS = Image.LANCZOS


def _base_mime(mime_type: str | None) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def _open_image_bytes(img_bytes: bytes) -> Image.Image:
    """Decode fully (not lazily) so corrupt payloads fail here."""
    try:
        img = Image.open(BytesIO(img_bytes))
        img.load()
    except _DECODE_ERRORS as e:
        raise ConversionError(f"Unable to decode image: {e}") from e
    return img


def _is_png(img_bytes: bytes) -> bool:
    try:
        with Image.open(BytesIO(img_bytes)) as img:
            fmt = img.format
            img.verify()
    except _DECODE_ERRORS:
        return False
    return fmt == "PNG"


def _has_alpha(img: Image.Image) -> bool:
    return "A" in img.getbands() or "transparency" in img.info


# -----------------------------
# NORMALIZE
# -----------------------------
def normalize_to_png(img_bytes: bytes, mime_type: str | None) -> bytes:
    """Return bytes that decode as PNG.

    A payload declared as ``image/png`` whose header really is PNG comes back
    untouched. Anything else is decoded by its actual encoding, rotated per
    EXIF, and re-encoded as PNG. Raises ``ConversionError`` when the bytes
    are not a raster image Pillow can read.
    """
    if _base_mime(mime_type) == CANONICAL_MIME and _is_png(img_bytes):
        return img_bytes

    img = _open_image_bytes(img_bytes)
    source_format = img.format
    img = ImageOps.exif_transpose(img)
    if img.mode not in _PNG_MODES:
        img = img.convert("RGBA" if _has_alpha(img) else "RGB")

    out = BytesIO()
    img.save(out, format="PNG", optimize=True)
    logger.debug("Normalized %s (%s) to PNG, %d -> %d bytes",
                 source_format, mime_type, len(img_bytes), out.tell())
    return out.getvalue()


# -----------------------------
# WHITE BACKGROUND KEYING
# -----------------------------
def key_white_background(img_bytes: bytes, threshold: int = DEFAULT_KEY_THRESHOLD,
                         output_format: str = "png") -> bytes:
    """Make every pixel whose R, G and B all exceed ``threshold`` transparent.

    Other pixels are left as they are. This is a flat-background heuristic:
    white parts of the design itself are keyed out too.

    The result is always PNG; a lossy target would silently lose the alpha
    channel, so any other ``output_format`` is rejected.
    """
    if output_format.lower() != "png":
        raise ValueError("Keyed images must be encoded as PNG to keep transparency")

    rgba = np.array(_open_image_bytes(img_bytes).convert("RGBA"), dtype=np.uint8)
    rgb = rgba[:, :, :3]
    mask = np.all(rgb > threshold, axis=2)
    rgba[mask, 3] = 0

    out = BytesIO()
    Image.fromarray(rgba, "RGBA").save(out, format="PNG", optimize=True)
    logger.debug("Keyed %.1f%% of pixels above %d", float(np.mean(mask)) * 100, threshold)
    return out.getvalue()


# -----------------------------
# OUTPUT TRANSCODE
# -----------------------------
@dataclass(frozen=True)
class OutputSpec:
    output_format: str = "jpeg"
    quality: int = 85
    max_dimension: int = 2000

    def __post_init__(self):
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(f"Unsupported output format: {self.output_format}")
        if not 1 <= self.quality <= 100:
            raise ValueError("quality must be between 1 and 100")
        if self.max_dimension <= 0:
            raise ValueError("max_dimension must be positive")

    @property
    def mime_type(self) -> str:
        return OUTPUT_FORMATS[self.output_format][1]

    @property
    def extension(self) -> str:
        return OUTPUT_FORMATS[self.output_format][2]


@dataclass(frozen=True)
class TranscodeResult:
    data: bytes
    mime_type: str
    width: int
    height: int
    original_bytes: int

    @property
    def output_bytes(self) -> int:
        return len(self.data)

    @property
    def reduction(self) -> float:
        """Fraction of the original size saved: ``1 - output/original``."""
        if not self.original_bytes:
            return 0.0
        return 1.0 - (self.output_bytes / self.original_bytes)

    def metrics(self) -> dict:
        return {
            "originalSizeMB": f"{self.original_bytes / 1024 / 1024:.2f}",
            "processedSizeKB": f"{self.output_bytes / 1024:.2f}",
            "reduction": f"{self.reduction * 100:.0f}%",
            "width": self.width,
            "height": self.height,
        }


def _flatten_on_white(img: Image.Image) -> Image.Image:
    if img.mode == "P" and "transparency" in img.info:
        img = img.convert("RGBA")
    if img.mode in ("RGBA", "LA"):
        rgba = img.convert("RGBA")
        bg = Image.new("RGB", rgba.size, (255, 255, 255))
        bg.paste(rgba, mask=rgba.getchannel("A"))
        return bg
    return img.convert("RGB")


def transcode(img_bytes: bytes, spec: OutputSpec) -> TranscodeResult:
    """Fit ``img_bytes`` inside ``spec.max_dimension`` square and re-encode.

    Aspect ratio is kept and images are never enlarged. PNG output always uses
    the highest zlib effort; ``quality`` only applies to JPEG.
    """
    img = _open_image_bytes(img_bytes)
    w, h = img.size
    if max(w, h) > spec.max_dimension:
        img.thumbnail((spec.max_dimension, spec.max_dimension), _LANCZOS)

    out = BytesIO()
    if spec.output_format == "jpeg":
        _flatten_on_white(img).save(out, format="JPEG", quality=spec.quality,
                                    optimize=True, progressive=True)
    else:
        if img.mode not in _PNG_MODES:
            img = img.convert("RGBA" if _has_alpha(img) else "RGB")
        img.save(out, format="PNG", optimize=True, compress_level=9)

    result = TranscodeResult(
        data=out.getvalue(),
        mime_type=spec.mime_type,
        width=img.width,
        height=img.height,
        original_bytes=len(img_bytes),
    )
    logger.info("Transcoded %dx%d -> %dx%d %s, %d -> %d bytes (%.0f%% smaller)",
                w, h, result.width, result.height, spec.output_format,
                result.original_bytes, result.output_bytes, result.reduction * 100)
    return result
