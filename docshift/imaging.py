"""In-process image operations (Pillow), no external binaries involved."""

import logging
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from docshift.errors import ValidationError

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {"JPEG": ".jpg", "PNG": ".png"}


def quality_for(compression: int) -> int:
    return max(10, 100 - compression)


def ensure_image(path: Path) -> None:
    try:
        with Image.open(path) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValidationError(f"Uploaded file is not a readable image: {e}") from e


def detect_format(path: Path) -> str:
    """Format Pillow decodes from the bytes, whatever the upload claimed to be."""
    try:
        with Image.open(path) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Uploaded file is not a readable image: {e}") from e
    if fmt not in IMAGE_SUFFIXES:
        raise ValidationError("Only JPG and PNG formats are allowed.")
    return fmt


def recompress_image(input_path: Path, output_path: Path, compression: int = 60) -> Path:
    """
    Re-encode a JPEG or PNG at a lower quality.

    JPEGs are re-saved with the derived quality. PNG is lossless, so quality
    is mapped onto the palette size instead: quality 100 keeps the pixels and
    only optimizes the encoding, lower values quantize to fewer colors.
    """
    quality = quality_for(compression)
    try:
        with Image.open(input_path) as img:
            fmt = img.format
            if fmt == "PNG":
                img = img.convert("RGBA") if img.mode in ("RGBA", "LA", "P") else img.convert("RGB")
                if quality < 100:
                    img = img.quantize(colors=max(2, round(256 * quality / 100)))
                img.save(output_path, "PNG", optimize=True)
            elif fmt == "JPEG":
                if img.mode != "RGB":
                    img = img.convert("RGB")
                img.save(output_path, "JPEG", quality=quality, optimize=True)
            else:
                raise ValidationError("Only JPG and PNG formats are allowed.")
    except UnidentifiedImageError as e:
        raise ValidationError(f"Uploaded file is not a readable image: {e}") from e

    logger.info(f"Recompressed {input_path.name} ({fmt}) at quality {quality}")
    return output_path
