from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from PIL import Image, UnidentifiedImageError


@dataclass(slots=True)
class ImageInfo:
    path: Path
    size: int
    width: int | None
    height: int | None
    format: str | None


def read_info(path: Path) -> ImageInfo:
    size = path.stat().st_size
    try:
        with Image.open(path) as img:
            width, height = img.size
            fmt = img.format
    except (UnidentifiedImageError, OSError):
        return ImageInfo(path=path, size=size, width=None, height=None, format=None)
    return ImageInfo(path=path, size=size, width=width, height=height, format=fmt)
