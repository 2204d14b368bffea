from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image

from .errors import MetadataError

EXIF_ORIENTATION_TAG = 0x0112
LIMIT_INPUT_PIXELS = 100_000_000


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    orientation: Optional[int] = None


def read_image_metadata(path: Path) -> ImageMetadata:
    """Read raw pixel size and EXIF orientation without decoding pixel data."""
    try:
        with Image.open(path) as img:
            width, height = img.size
            orientation = img.getexif().get(EXIF_ORIENTATION_TAG)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise MetadataError(f"{path.name}: {e}") from e

    if width * height > LIMIT_INPUT_PIXELS:
        raise MetadataError(
            f"{path.name}: {width}x{height} exceeds the {LIMIT_INPUT_PIXELS} pixel input limit"
        )
    if not isinstance(orientation, int):
        orientation = None
    return ImageMetadata(width=width, height=height, orientation=orientation)
