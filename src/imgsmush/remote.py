from __future__ import annotations

import logging
import os
from pathlib import Path
import tempfile
from typing import Any

import requests

from imgsmush.config import RemoteConfig
from imgsmush.models import Engine, ErrorKind, ImageAsset, OptimizationResult, OptimizeError
from imgsmush.tools.chain import reduction_percent

logger = logging.getLogger(__name__)

API_ERROR_CODES: dict[int, str] = {
    400: "no url of image provided",
    401: "impossible to fetch the image from URL (usually a local URL)",
    402: "impossible to fetch the image from $_FILES (usually a local URL)",
    403: "forbidden file format provided. Works strictly with jpg, png, gif, tif and bmp files.",
    404: "request timeout from reSmush.it",
    501: "internal error, cannot create a local copy",
    502: "image provided too large (must be below 5MB)",
    503: "internal error, could not reach remote reSmush.it servers for image optimization",
    504: "internal error, could not fetch image from remote reSmush.it servers",
}

CHUNK_SIZE = 64 * 1024


def api_error_message(code: Any) -> str:
    try:
        return API_ERROR_CODES.get(int(code), str(code))
    except (TypeError, ValueError):
        return str(code)


def should_fetch(src_size: int, dest_size: int, threshold: int) -> bool:
    """True when the reported saving beats the minimum-gain threshold."""
    return dest_size < int((100 - threshold) / 100 * src_size)


class RemoteClient:
    def __init__(self, config: RemoteConfig, session: requests.Session | None = None):
        self.config = config
        self.session = session or requests.Session()

    @property
    def _timeout(self) -> tuple[float, float]:
        # The library default of no read timeout is not acceptable here.
        return (self.config.connect_timeout, self.config.timeout)

    def optimize(self, asset: ImageAsset, quality: int, url: str = "#") -> OptimizationResult:
        result = OptimizationResult.for_asset(asset, url=url)
        result.engine = Engine.REMOTE
        try:
            self._optimize(asset, quality, result)
        except OptimizeError as exc:
            return result.fail(exc)
        return result

    def _optimize(self, asset: ImageAsset, quality: int, result: OptimizationResult) -> None:
        local_size = asset.path.stat().st_size
        result.src_size = local_size
        result.dest_size = local_size
        if local_size >= self.config.size_limit:
            raise OptimizeError(
                ErrorKind.ASSET_TOO_LARGE,
                f"file larger than {self.config.size_limit} bytes",
            )

        payload = self._upload(asset, quality)
        if "error" in payload:
            code = payload["error"]
            raise OptimizeError(ErrorKind.REMOTE_API_ERROR, api_error_message(code), api_code=code)

        try:
            src_size = int(payload["src_size"])
            dest_size = int(payload["dest_size"])
            dest = str(payload["dest"])
            reported = int(float(payload.get("percent", 0)))
        except (KeyError, TypeError, ValueError) as exc:
            raise OptimizeError(ErrorKind.EMPTY_RESPONSE, "returned data is incomplete") from exc

        if not should_fetch(src_size, dest_size, self.config.threshold):
            logger.debug(
                "%s: service reported %d -> %d bytes, below %d%% gain",
                asset.name,
                src_size,
                dest_size,
                self.config.threshold,
            )
            return

        fetched = self._download(dest, asset.path, local_size)
        result.dest_size = fetched
        if self.config.verify_download:
            result.percent = reduction_percent(local_size, fetched)
        else:
            result.percent = reported

    def _upload(self, asset: ImageAsset, quality: int) -> dict[str, Any]:
        params = {"exif": "true", "qlty": str(quality)}
        try:
            with asset.path.open("rb") as fh:
                files = {"files": (asset.name, fh, f"image/{asset.ext}")}
                resp = self.session.post(
                    self.config.endpoint,
                    params=params,
                    files=files,
                    timeout=self._timeout,
                )
        except requests.Timeout as exc:
            raise OptimizeError(ErrorKind.TRANSPORT_FAILURE, "request timeout") from exc
        except requests.RequestException as exc:
            raise OptimizeError(ErrorKind.TRANSPORT_FAILURE, f"request failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise OptimizeError(ErrorKind.TRANSPORT_FAILURE, f"HTTP {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise OptimizeError(ErrorKind.EMPTY_RESPONSE, "returned data is empty") from exc
        if not isinstance(payload, dict) or not payload:
            raise OptimizeError(ErrorKind.EMPTY_RESPONSE, "returned data is empty")
        return payload

    def _download(self, dest: str, target: Path, local_size: int) -> int:
        """Fetch ``dest`` over ``target`` and return the new size.

        An empty download, or one not smaller than the local file, never
        replaces ``target``.
        """
        fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".part")
        tmp = Path(tmp_name)
        try:
            try:
                with os.fdopen(fd, "wb") as out:
                    with self.session.get(dest, stream=True, timeout=self._timeout) as resp:
                        resp.raise_for_status()
                        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                            if chunk:
                                out.write(chunk)
            except requests.RequestException as exc:
                raise OptimizeError(ErrorKind.DOWNLOAD_FAILED, f"error retrieving {dest}: {exc}") from exc
            except OSError as exc:
                raise OptimizeError(ErrorKind.DOWNLOAD_FAILED, f"error writing {target.name}: {exc}") from exc

            size = tmp.stat().st_size
            if size == 0:
                raise OptimizeError(ErrorKind.DOWNLOAD_FAILED, f"empty download from {dest}")
            if not size < local_size:
                raise OptimizeError(
                    ErrorKind.DOWNLOAD_FAILED,
                    f"downloaded {size} bytes, local file is {local_size} bytes",
                )
            os.replace(tmp, target)
            return size
        finally:
            tmp.unlink(missing_ok=True)
