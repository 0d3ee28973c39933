from __future__ import annotations

from collections.abc import Iterable, Mapping
import os
from pathlib import Path
import shutil
from types import MappingProxyType

from imgsmush.models import OptimizerCapability


def search_path(extra_paths: Iterable[Path | str] = ()) -> list[str]:
    """Directories searched for optimizer executables, PATH first."""
    env_path = os.environ.get("PATH") or os.environ.get("Path") or ""
    dirs: list[str] = []
    for entry in [*env_path.split(os.pathsep), *(str(p) for p in extra_paths)]:
        if not entry or entry in dirs:
            continue
        dirs.append(entry)
    return dirs


def find_executable(name: str, dirs: list[str]) -> str:
    found = shutil.which(name, path=os.pathsep.join(dirs))
    if not found:
        return ""
    return str(Path(found).resolve())


def discover_tools(
    names: Iterable[str],
    extra_paths: Iterable[Path | str] = (),
    options: Mapping[str, Iterable[str]] | None = None,
) -> Mapping[str, OptimizerCapability]:
    dirs = search_path([p for p in extra_paths if Path(p).is_dir()])
    opts = options or {}
    found: dict[str, OptimizerCapability] = {}
    for name in names:
        found[name] = OptimizerCapability(
            name=name,
            path=find_executable(name, dirs),
            options=tuple(opts.get(name, ())),
        )
    return MappingProxyType(found)
