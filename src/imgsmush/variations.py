from __future__ import annotations

from pathlib import Path

BACKUP_SUFFIX = ".autosmush"


def _stem(name: str) -> str:
    idx = name.find(".")
    if idx < 0:
        return name
    return name[:idx]


def is_variation(original_name: str, candidate_name: str) -> bool:
    """Loose check that ``candidate_name`` was derived from ``original_name``.

    is_variation("123.jpg", "123.0x260.jpg")     -> True
    is_variation("123.jpg", "123.-portrait.jpg") -> True
    is_variation("123.jpg", "123.jpg")           -> False
    is_variation("123.jpg", "456.jpg")           -> False

    Any sibling sharing the part before the first dot matches, so callers
    must not assume the suffix is a dimension or crop marker.
    """
    if original_name == candidate_name:
        return False
    return _stem(original_name) == _stem(candidate_name)


def list_dir_files(directory: Path) -> list[str]:
    if not directory.is_dir():
        return []
    return sorted(
        p.name
        for p in directory.iterdir()
        if p.is_file() and not p.name.startswith(".") and not p.name.endswith(BACKUP_SUFFIX)
    )


def list_variations(original_name: str, directory: Path, names: list[str] | None = None) -> list[str]:
    candidates = names if names is not None else list_dir_files(directory)
    return [name for name in candidates if is_variation(original_name, name)]
