from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from imgsmush.models import ChainPolicy, Engine, Mode
from imgsmush.paths import config_root, default_content_root, default_db_path, default_log_path

TOOL_NAMES: tuple[str, ...] = (
    "jpegtran",
    "jpegoptim",
    "pngquant",
    "optipng",
    "pngcrush",
    "pngout",
    "advpng",
    "gifsicle",
)

JPG_QUALITY_DEFAULT = 90
GAIN_THRESHOLD_DEFAULT = 5


def _default_chains() -> dict[str, list[str]]:
    return {
        "jpg": ["jpegoptim"],
        "jpeg": ["jpegoptim"],
        "png": ["pngquant", "optipng", "pngcrush", "advpng"],
        "gif": ["gifsicle"],
    }


def _default_options() -> dict[str, list[str]]:
    return {
        "jpegtran": ["-optimize", "-progressive", "-copy", "all", "-outfile", "{path}", "{path}"],
        "jpegoptim": ["--preserve", "--all-progressive", "--strip-none", f"-T{GAIN_THRESHOLD_DEFAULT}"],
        "pngquant": ["--force", "--ext", ".png"],
        "optipng": ["-i0", "-o2", "-quiet", "-preserve"],
        "pngcrush": ["-reduce", "-q", "-ow"],
        "pngout": ["-y", "-q"],
        "advpng": ["-z", "-3", "-q"],
        "gifsicle": ["-b", "-O3"],
    }


def _default_quality_flags() -> dict[str, str]:
    return {"jpegoptim": "-m{quality}"}


@dataclass(slots=True)
class ModeConfig:
    engine: str | None = "remote"
    quality: int = JPG_QUALITY_DEFAULT
    optimize_originals: bool = True
    optimize_variations: bool = True
    backup: bool = False

    def __post_init__(self) -> None:
        try:
            Engine.parse(self.engine)
        except ValueError as exc:
            raise ValueError(f"unknown engine: {self.engine!r} (expected remote, local or none)") from exc

    @property
    def engine_kind(self) -> Engine | None:
        return Engine.parse(self.engine)


def _opt_in_mode() -> ModeConfig:
    # Auto and bulk actions are opt-in; manual buttons default to on.
    return ModeConfig(optimize_originals=False, optimize_variations=False)


@dataclass(slots=True)
class ChainConfig:
    stop_after_first: bool = True
    ignore_errors: bool = False
    threshold: int = GAIN_THRESHOLD_DEFAULT
    timeout: float = 60.0
    chains: dict[str, list[str]] = field(default_factory=_default_chains)
    options: dict[str, list[str]] = field(default_factory=_default_options)
    quality_flags: dict[str, str] = field(default_factory=_default_quality_flags)
    extra_paths: list[str] = field(default_factory=list)

    def policy(self) -> ChainPolicy:
        return ChainPolicy(
            chains={ext.lower(): tuple(names) for ext, names in self.chains.items()},
            stop_after_first=self.stop_after_first,
            ignore_errors=self.ignore_errors,
            threshold=self.threshold,
            timeout=self.timeout,
            quality_flags=dict(self.quality_flags),
        )


@dataclass(slots=True)
class RemoteConfig:
    endpoint: str = "http://api.resmush.it/ws.php"
    size_limit: int = 5 * 1024 * 1024
    connect_timeout: float = 3.0
    timeout: float = 30.0
    threshold: int = GAIN_THRESHOLD_DEFAULT
    verify_download: bool = True


@dataclass(slots=True)
class AppConfig:
    db_path: Path = field(default_factory=default_db_path)
    content_root: Path = field(default_factory=default_content_root)
    log_path: Path = field(default_factory=default_log_path)
    templates_dir: Path | None = None
    assets_dir: Path | None = None
    base_url: str = "/site/assets/files"
    auto: ModeConfig = field(default_factory=_opt_in_mode)
    manual: ModeConfig = field(default_factory=ModeConfig)
    bulk: ModeConfig = field(default_factory=_opt_in_mode)
    chain: ChainConfig = field(default_factory=ChainConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)

    def mode(self, mode: Mode) -> ModeConfig:
        if mode is Mode.AUTO:
            return self.auto
        if mode is Mode.MANUAL:
            return self.manual
        return self.bulk

    def search_dirs(self) -> list[Path]:
        dirs = [Path(p).expanduser() for p in self.chain.extra_paths]
        dirs.append(self.content_root)
        for extra in (self.templates_dir, self.assets_dir):
            if extra is not None:
                dirs.append(extra)
        return dirs


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _optional_path(value: Any) -> Path | None:
    if value in (None, ""):
        return None
    return Path(str(value)).expanduser()


def _to_mode(data: dict[str, Any] | None, default: ModeConfig) -> ModeConfig:
    if not data:
        return default
    merged = _merge(_mode_to_dict(default), data)
    return ModeConfig(**merged)


def _to_chain(data: dict[str, Any]) -> ChainConfig:
    chain = ChainConfig()
    # Per-tool lists replace the defaults for that tool only.
    options = dict(chain.options)
    options.update(data.pop("options", None) or {})
    chains = dict(chain.chains)
    chains.update(data.pop("chains", None) or {})
    flags = dict(chain.quality_flags)
    flags.update(data.pop("quality_flags", None) or {})
    return ChainConfig(**{**data, "options": options, "chains": chains, "quality_flags": flags})


def _to_config(data: dict[str, Any]) -> AppConfig:
    return AppConfig(
        db_path=Path(data.get("db_path", str(default_db_path()))).expanduser(),
        content_root=Path(data.get("content_root", str(default_content_root()))).expanduser(),
        log_path=Path(data.get("log_path", str(default_log_path()))).expanduser(),
        templates_dir=_optional_path(data.get("templates_dir")),
        assets_dir=_optional_path(data.get("assets_dir")),
        base_url=str(data.get("base_url", "/site/assets/files")),
        auto=_to_mode(data.get("auto"), _opt_in_mode()),
        manual=_to_mode(data.get("manual"), ModeConfig()),
        bulk=_to_mode(data.get("bulk"), _opt_in_mode()),
        chain=_to_chain(dict(data.get("chain") or {})),
        remote=RemoteConfig(**(data.get("remote") or {})),
    )


def default_config_path() -> Path:
    return config_root() / "config.yaml"


def load_config(config_path: Path | None = None, overrides: dict[str, Any] | None = None) -> AppConfig:
    path = config_path or default_config_path()
    base: dict[str, Any] = {}
    if path.exists():
        loaded = yaml.safe_load(path.read_text())
        if isinstance(loaded, dict):
            base = loaded
    if overrides:
        base = _merge(base, overrides)
    cfg = _to_config(base)
    cfg.db_path.parent.mkdir(parents=True, exist_ok=True)
    cfg.content_root.mkdir(parents=True, exist_ok=True)
    cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
    return cfg


def _mode_to_dict(mode: ModeConfig) -> dict[str, Any]:
    return {
        "engine": mode.engine,
        "quality": mode.quality,
        "optimize_originals": mode.optimize_originals,
        "optimize_variations": mode.optimize_variations,
        "backup": mode.backup,
    }


def write_default_config(path: Path | None = None) -> Path:
    target = path or default_config_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists():
        return target
    chain = ChainConfig()
    remote = RemoteConfig()
    target.write_text(
        yaml.safe_dump(
            {
                "db_path": str(default_db_path()),
                "content_root": str(default_content_root()),
                "log_path": str(default_log_path()),
                "templates_dir": None,
                "assets_dir": None,
                "base_url": "/site/assets/files",
                "auto": _mode_to_dict(_opt_in_mode()),
                "manual": _mode_to_dict(ModeConfig()),
                "bulk": _mode_to_dict(_opt_in_mode()),
                "chain": {
                    "stop_after_first": chain.stop_after_first,
                    "ignore_errors": chain.ignore_errors,
                    "threshold": chain.threshold,
                    "timeout": chain.timeout,
                    "chains": chain.chains,
                    "options": chain.options,
                    "quality_flags": chain.quality_flags,
                    "extra_paths": chain.extra_paths,
                },
                "remote": {
                    "endpoint": remote.endpoint,
                    "size_limit": remote.size_limit,
                    "connect_timeout": remote.connect_timeout,
                    "timeout": remote.timeout,
                    "threshold": remote.threshold,
                    "verify_download": remote.verify_download,
                },
            },
            sort_keys=False,
        )
    )
    return target
