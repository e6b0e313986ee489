"""Image preprocessing for OCR.

Synchronous, pure Python (Pillow). Normalizes images before recognition:
EXIF orientation, downscale, grayscale, contrast normalization, denoise, sharpen.
Downscaling always happens; the enhancement steps are optional because they
cost latency.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass

from PIL import Image, ImageFilter, ImageOps

from evidence_engine.exceptions import OcrError

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIDE = 4000
AUTOCONTRAST_CUTOFF = 1  # percent of histogram clipped at each end
DENOISE_SIZE = 3


class ImagePreprocessingError(OcrError):
    """Raised when image bytes cannot be decoded."""

    def __init__(self, message: str, user_message: str) -> None:
        super().__init__(message)
        self.user_message = user_message


@dataclass(frozen=True)
class PreparedImage:
    """Result of image preprocessing."""

    image: Image.Image
    original_width: int
    original_height: int
    final_width: int
    final_height: int
    enhanced: bool


def load_image(raw_bytes: bytes) -> Image.Image:
    """Decode bytes and apply EXIF orientation.

    Raises:
        ImagePreprocessingError: If the bytes are not a readable image.
    """
    try:
        img = Image.open(io.BytesIO(raw_bytes))
        img.load()
    except Exception as exc:
        raise ImagePreprocessingError(
            f"Cannot decode image: {exc}",
            user_message="The image could not be read. Please upload a clear JPEG, PNG, BMP or TIFF file.",
        ) from exc
    return ImageOps.exif_transpose(img) or img


def prepare_image(raw_bytes: bytes, max_side: int = DEFAULT_MAX_SIDE, enhance: bool = True) -> PreparedImage:
    """Preprocess raw image bytes for recognition.

    Steps:
        1. Decode and apply EXIF orientation
        2. Downscale if the longer side exceeds max_side
        3. (enhance) grayscale, autocontrast, median denoise, sharpen

    Args:
        raw_bytes: Raw image bytes (any format Pillow supports).
        max_side: Longest allowed side in pixels.
        enhance: Apply the enhancement steps.

    Returns:
        PreparedImage with the Pillow image and its dimensions.

    Raises:
        ImagePreprocessingError: If the image cannot be decoded.
    """
    img = load_image(raw_bytes)
    original_width, original_height = img.size
    img, enhanced = prepare_decoded(img, max_side, enhance)

    return PreparedImage(
        image=img,
        original_width=original_width,
        original_height=original_height,
        final_width=img.width,
        final_height=img.height,
        enhanced=enhanced,
    )


def prepare_decoded(img: Image.Image, max_side: int, enhance: bool = True) -> tuple[Image.Image, bool]:
    """Downscale and optionally enhance a decoded image. Returns (image, enhanced)."""
    img = downscale(img, max_side)

    enhanced = False
    if enhance:
        try:
            img = enhance_for_ocr(img)
            enhanced = True
        except Exception:
            # Recognition still works on the unenhanced image
            logger.warning("OCR enhancement failed, using original image", exc_info=True)

    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    return img, enhanced


def downscale(img: Image.Image, max_side: int) -> Image.Image:
    """Resize so the longer side is at most max_side (aspect ratio kept)."""
    long_side = max(img.size)
    if long_side <= max_side:
        return img
    ratio = max_side / long_side
    new_size = (max(int(img.width * ratio), 1), max(int(img.height * ratio), 1))
    return img.resize(new_size, Image.LANCZOS)


def enhance_for_ocr(img: Image.Image) -> Image.Image:
    """Grayscale, normalize contrast, denoise and sharpen."""
    img = img.convert("L")
    img = ImageOps.autocontrast(img, cutoff=AUTOCONTRAST_CUTOFF)
    img = img.filter(ImageFilter.MedianFilter(DENOISE_SIZE))
    return img.filter(ImageFilter.SHARPEN)


def image_dimensions(raw_bytes: bytes) -> dict[str, int] | None:
    """Pixel dimensions without full preprocessing; None if undecodable."""
    try:
        with Image.open(io.BytesIO(raw_bytes)) as img:
            return {"width": img.width, "height": img.height}
    except Exception:
        logger.debug("Could not read image dimensions")
        return None
