from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
import logging
import threading

from imgsmush.config import AppConfig
from imgsmush.models import (
    ALLOWED_EXTENSIONS,
    Engine,
    ErrorKind,
    ImageAsset,
    Mode,
    OptimizationRequest,
    OptimizationResult,
    OptimizeError,
    OptimizerCapability,
)
from imgsmush.remote import RemoteClient
from imgsmush.tools.chain import run_chain
from imgsmush.util.logging import OPTIMIZE_LOGGER

logger = logging.getLogger(OPTIMIZE_LOGGER)

ENGINE_LABELS = {Engine.REMOTE: "reSmush.it", Engine.LOCAL: "ServerTools"}


class PathLocks:
    """One lock per resolved file path; tools rewrite files in place."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]


class Optimizer:
    def __init__(
        self,
        config: AppConfig,
        capabilities: Mapping[str, OptimizerCapability],
        remote: RemoteClient | None = None,
        url_for: Callable[[ImageAsset], str] | None = None,
    ):
        self.config = config
        self.capabilities = capabilities
        self.remote = remote or RemoteClient(config.remote)
        self.policy = config.chain.policy()
        self._url_for = url_for
        self._locks = PathLocks()

    def request(
        self,
        asset: ImageAsset,
        mode: Mode = Mode.AUTO,
        force: bool = False,
        resized: bool = False,
    ) -> OptimizationRequest:
        return OptimizationRequest(
            asset=asset,
            mode=mode,
            force=force,
            resized=resized,
            engine=self.engine_for(mode),
        )

    def optimize(self, request: OptimizationRequest) -> OptimizationResult:
        asset = request.asset
        result = OptimizationResult.for_asset(asset, url=self._url(asset))

        if not request.force and not request.resized:
            result.skipped = True
            return result

        if asset.ext not in ALLOWED_EXTENSIONS:
            logger.info(
                "(%s): Error optimizing %s, source %d bytes, unsupported extension",
                request.mode.value,
                asset.path,
                asset.size,
            )
            return result.fail(OptimizeError(ErrorKind.UNSUPPORTED_EXTENSION, "unsupported extension"))

        engine = request.engine or self.engine_for(request.mode)
        if engine is None:
            logger.info(
                "No engine selected (%s). %s, source %d bytes",
                request.mode.value,
                asset.path,
                asset.size,
            )
            return result.fail(OptimizeError(ErrorKind.NO_ENGINE_SELECTED, "No engine selected."))

        with self._locks.hold(str(asset.path)):
            outcome = self._dispatch(engine, request, result.url)

        label = f"{ENGINE_LABELS[engine]} ({request.mode.value}): "
        if outcome.error is not None:
            logger.info(
                "%sError optimizing %s, source %d bytes, %s",
                label,
                asset.path,
                outcome.src_size,
                outcome.message or outcome.error.value,
            )
            return outcome

        logger.info(
            "%s%s, source %d bytes, destination %d bytes, reduction %d%%",
            label,
            asset.path,
            outcome.src_size,
            outcome.dest_size,
            outcome.percent,
        )
        return outcome

    def engine_for(self, mode: Mode) -> Engine | None:
        try:
            return self.config.mode(mode).engine_kind
        except ValueError:
            logger.warning("unknown engine %r configured for %s mode", self.config.mode(mode).engine, mode.value)
            return None

    def _dispatch(self, engine: Engine, request: OptimizationRequest, url: str) -> OptimizationResult:
        asset = request.asset
        quality = self.config.mode(request.mode).quality
        try:
            if engine is Engine.REMOTE:
                return self.remote.optimize(asset, quality, url=url)
            return run_chain(asset, self.capabilities, self.policy, quality=quality, url=url)
        except Exception as exc:
            logger.debug("unexpected failure optimizing %s", asset.path, exc_info=True)
            kind = ErrorKind.TRANSPORT_FAILURE if engine is Engine.REMOTE else ErrorKind.OPTIMIZER_EXECUTION_FAILED
            result = OptimizationResult.for_asset(asset, url=url)
            result.engine = engine
            return result.fail(OptimizeError(kind, str(exc)))

    def _url(self, asset: ImageAsset) -> str:
        if self._url_for is None:
            return "#"
        return self._url_for(asset)
