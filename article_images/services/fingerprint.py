from __future__ import annotations

import io
import logging
from dataclasses import dataclass

import imagehash
from PIL import Image, ImageFile, UnidentifiedImageError

logger = logging.getLogger(__name__)

Image.MAX_IMAGE_PIXELS = 50_000_000
ImageFile.LOAD_TRUNCATED_IMAGES = True

HASH_SIZE = 8


@dataclass(slots=True, frozen=True)
class ImageFingerprint:
    perceptual_hash: str
    width: int
    height: int
    image_format: str | None


def fingerprint_image(content: bytes) -> ImageFingerprint | None:
    """Decode ``content`` and compute a 64-bit pHash over its grayscale form.

    Returns None for bytes Pillow cannot decode (SVG, HTML error pages, ...).
    """
    try:
        with Image.open(io.BytesIO(content)) as image:
            width, height = image.size
            image_format = image.format
            gray = image.convert("L")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.debug("image decode failed bytes=%s error=%s", len(content), exc)
        return None

    return ImageFingerprint(
        perceptual_hash=str(imagehash.phash(gray, hash_size=HASH_SIZE)),
        width=width,
        height=height,
        image_format=image_format,
    )


def hamming_distance(left: str, right: str) -> int:
    """Bit distance between two hex-encoded hashes of the same size."""
    if len(left) != len(right):
        raise ValueError("perceptual hashes must have the same length")
    return int(imagehash.hex_to_hash(left) - imagehash.hex_to_hash(right))
