from __future__ import annotations

from pathlib import Path
import re

from PIL import Image, ImageOps

_SUFFIX_RE = re.compile(r"[^a-z0-9_-]+")


def variation_name(basename: str, width: int, height: int, suffix: str | None = None) -> str:
    """Name of a derived image: ``<stem>.<w>x<h>[-suffix].<ext>``."""
    stem = basename.split(".", 1)[0]
    ext = basename.rsplit(".", 1)[1] if "." in basename else ""
    name = f"{stem}.{max(width, 0)}x{max(height, 0)}"
    if suffix:
        clean = _SUFFIX_RE.sub("", suffix.lower())
        if clean:
            name += f"-{clean}"
    return f"{name}.{ext}" if ext else name


def _target_size(original: tuple[int, int], width: int, height: int) -> tuple[int, int]:
    w0, h0 = original
    if width <= 0 and height <= 0:
        raise ValueError("width or height must be positive")
    if width <= 0:
        return max(1, round(w0 * height / h0)), height
    if height <= 0:
        return width, max(1, round(h0 * width / w0))
    return width, height


def create_variation(
    src: Path,
    width: int,
    height: int,
    suffix: str | None = None,
    quality: int = 90,
) -> Path:
    """Resize ``src`` into a sibling variation file and return its path.

    With both dimensions set the image is cropped to fill the box.
    """
    target = src.with_name(variation_name(src.name, width, height, suffix))
    with Image.open(src) as img:
        fmt = img.format
        size = _target_size(img.size, width, height)
        if width > 0 and height > 0:
            out = ImageOps.fit(img, size, method=Image.Resampling.LANCZOS)
        else:
            out = img.resize(size, Image.Resampling.LANCZOS)
        params: dict[str, int | bool] = {}
        if fmt == "JPEG":
            params["quality"] = quality
            if out.mode not in ("RGB", "L"):
                out = out.convert("RGB")
        out.save(target, format=fmt, **params)
    return target
