from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

ALLOWED_EXTENSIONS = ("png", "jpg", "jpeg", "gif")


class Mode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    BULK = "bulk"


class Engine(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"

    @classmethod
    def parse(cls, value: str | None) -> Engine | None:
        if value is None:
            return None
        raw = str(value).strip().lower()
        if not raw or raw in {"none", "off"}:
            return None
        aliases = {"resmushit": cls.REMOTE, "localtools": cls.LOCAL}
        if raw in aliases:
            return aliases[raw]
        return cls(raw)


class ErrorKind(str, Enum):
    UNSUPPORTED_EXTENSION = "UnsupportedExtension"
    NO_ENGINE_SELECTED = "NoEngineSelected"
    ASSET_TOO_LARGE = "AssetTooLarge"
    TRANSPORT_FAILURE = "TransportFailure"
    EMPTY_RESPONSE = "EmptyResponse"
    REMOTE_API_ERROR = "RemoteApiError"
    DOWNLOAD_FAILED = "DownloadFailed"
    NO_OPTIMIZER_AVAILABLE = "NoOptimizerAvailable"
    OPTIMIZER_EXECUTION_FAILED = "OptimizerExecutionFailed"


class OptimizeError(Exception):
    """Raised by the engines; converted into an OptimizationResult by the optimizer."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        tool: str | None = None,
        api_code: int | str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.tool = tool
        self.api_code = api_code


def split_ext(name: str) -> str:
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[1].lower()


@dataclass(slots=True, frozen=True)
class ImageAsset:
    path: Path
    ext: str
    size: int
    item_id: int | None = None
    is_variation: bool = False
    original_stem: str | None = None

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def basedir(self) -> str:
        return self.path.parent.name

    @classmethod
    def from_path(
        cls,
        path: Path,
        item_id: int | None = None,
        original: str | None = None,
    ) -> ImageAsset:
        resolved = path.expanduser().resolve()
        size = resolved.stat().st_size if resolved.is_file() else 0
        stem = original.split(".", 1)[0] if original else None
        return cls(
            path=resolved,
            ext=split_ext(resolved.name),
            size=size,
            item_id=item_id,
            is_variation=original is not None,
            original_stem=stem,
        )


@dataclass(slots=True, frozen=True)
class OptimizerCapability:
    name: str
    path: str = ""
    options: tuple[str, ...] = ()

    @property
    def available(self) -> bool:
        return bool(self.path)


@dataclass(slots=True, frozen=True)
class ChainPolicy:
    chains: dict[str, tuple[str, ...]]
    stop_after_first: bool = True
    ignore_errors: bool = False
    threshold: int = 5
    timeout: float = 60.0
    quality_flags: dict[str, str] = field(default_factory=dict)

    def tools_for(self, ext: str) -> tuple[str, ...]:
        return tuple(self.chains.get(ext.lower(), ()))


@dataclass(slots=True)
class OptimizationRequest:
    asset: ImageAsset
    mode: Mode = Mode.AUTO
    force: bool = False
    resized: bool = False
    engine: Engine | None = None


@dataclass(slots=True)
class OptimizationResult:
    file: str = ""
    basedir: str = ""
    url: str = "#"
    error: ErrorKind | None = None
    error_api: int | str | None = None
    message: str | None = None
    percent: int = 0
    src_size: int = 0
    dest_size: int = 0
    engine: Engine | None = None
    tool: str | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def for_asset(cls, asset: ImageAsset, url: str = "#") -> OptimizationResult:
        return cls(file=asset.name, basedir=asset.basedir, url=url, src_size=asset.size, dest_size=asset.size)

    def fail(self, exc: OptimizeError) -> OptimizationResult:
        self.error = exc.kind
        self.message = exc.message
        self.error_api = exc.api_code
        self.tool = exc.tool
        self.percent = 0
        return self

    def as_status(self) -> dict[str, Any]:
        error: str | None = None
        if self.error is not None:
            error = self.message or self.error.value
        return {
            "error": error,
            "error_api": self.error_api,
            "percentNew": str(self.percent),
            "file": self.file,
            "basedir": self.basedir,
            "url": self.url,
        }


@dataclass(slots=True, frozen=True)
class WorkItem:
    item_id: int
    filename: str
    is_variation: bool = False

    @property
    def key(self) -> str:
        return f"{self.item_id},{self.filename}"


@dataclass(slots=True)
class BulkCursor:
    total: int
    offset: int = 0
    worklist: list[WorkItem] = field(default_factory=list)

    @property
    def done(self) -> bool:
        return self.offset >= self.total
