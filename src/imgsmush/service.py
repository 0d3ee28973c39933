from __future__ import annotations

from collections.abc import Iterator, Mapping
import logging
from pathlib import Path
import shutil
import threading
from typing import Any

import requests

from imgsmush import content as content_mod
from imgsmush.bulk import BulkPage, BulkPolicy, next_page, start_job
from imgsmush.config import TOOL_NAMES, AppConfig
from imgsmush.db import Database
from imgsmush.media.image_io import read_info
from imgsmush.media.resize import create_variation
from imgsmush.models import (
    ALLOWED_EXTENSIONS,
    ImageAsset,
    Mode,
    OptimizationResult,
    OptimizerCapability,
    split_ext,
)
from imgsmush.optimizer import Optimizer
from imgsmush.output_models import (
    BulkErrorOutput,
    BulkPageOutput,
    ItemImageOutput,
    OptimizeStatusOutput,
    ToolOutput,
)
from imgsmush.remote import RemoteClient
from imgsmush.tools.discovery import discover_tools, search_path
from imgsmush.util.logging import OPTIMIZE_LOGGER, attach_optimize_log
from imgsmush.variations import BACKUP_SUFFIX, list_variations

logger = logging.getLogger(OPTIMIZE_LOGGER)


def parse_file_key(file: str, item_id: int | None = None) -> tuple[int | None, str]:
    """Split ``"1234,image.jpg"`` into (1234, "image.jpg")."""
    raw = (file or "").strip()
    if "," in raw:
        prefix, name = raw.split(",", 1)
        if item_id is None:
            try:
                item_id = int(prefix)
            except ValueError:
                item_id = None
    else:
        name = raw
    return item_id, Path(name.strip()).name


class SmushService:
    def __init__(
        self,
        config: AppConfig,
        session: requests.Session | None = None,
        capabilities: Mapping[str, OptimizerCapability] | None = None,
    ):
        self.config = config
        self.db = Database(config.db_path)
        self.db.initialize()
        attach_optimize_log(config.log_path)
        self._session = session
        self._capabilities = capabilities
        self._optimizer: Optimizer | None = None
        # One optimizer per service; its path locks must be shared by every thread.
        self._init_lock = threading.RLock()

    @property
    def capabilities(self) -> Mapping[str, OptimizerCapability]:
        with self._init_lock:
            if self._capabilities is None:
                self._capabilities = discover_tools(
                    TOOL_NAMES,
                    extra_paths=self.config.search_dirs(),
                    options=self.config.chain.options,
                )
            return self._capabilities

    @property
    def optimizer(self) -> Optimizer:
        with self._init_lock:
            if self._optimizer is None:
                self._optimizer = Optimizer(
                    self.config,
                    self.capabilities,
                    remote=RemoteClient(self.config.remote, session=self._session),
                    url_for=self.url_for,
                )
            return self._optimizer

    def url_for(self, asset: ImageAsset) -> str:
        return f"{self.config.base_url.rstrip('/')}/{asset.basedir}/{asset.name}"

    # content tree

    def field_add(self, name: str, field_type: str) -> dict[str, Any]:
        with self.db.connect() as conn:
            fid = content_mod.add_field(conn, name, field_type)
        return {"id": fid, "name": name, "type": field_type}

    def field_list(self) -> list[dict[str, Any]]:
        with self.db.connect() as conn:
            rows = content_mod.list_fields(conn)
        return [{"id": r.id, "name": r.name, "type": r.type, "created_at": r.created_at} for r in rows]

    def item_add(self, name: str, parent_id: int | None = None, field: str | None = None) -> dict[str, Any]:
        with self.db.connect() as conn:
            item_id = content_mod.add_item(conn, name, parent_id=parent_id, parent_field=field)
        content_mod.item_dir(self.config.content_root, item_id).mkdir(parents=True, exist_ok=True)
        return {"id": item_id, "name": name, "parent_id": parent_id, "parent_field": field}

    def item_list(self) -> list[dict[str, Any]]:
        with self.db.connect() as conn:
            rows = content_mod.list_items(conn)
            counts = {r.id: len(content_mod.own_images(conn, r.id)) for r in rows}
        return [
            {
                "id": r.id,
                "name": r.name,
                "parent_id": r.parent_id,
                "parent_field": r.parent_field,
                "images": counts[r.id],
            }
            for r in rows
        ]

    def item_images(self, item_id: int) -> list[dict[str, Any]]:
        with self.db.connect() as conn:
            if content_mod.get_item(conn, item_id) is None:
                raise ValueError(f"unknown item: {item_id}")
            records = content_mod.item_images(conn, item_id, depth=1)
        out: list[dict[str, Any]] = []
        for rec in records:
            directory = content_mod.item_dir(self.config.content_root, rec.item_id)
            path = directory / rec.basename
            row = ItemImageOutput(item_id=rec.item_id, field=rec.field, file=rec.basename)
            if path.is_file():
                info = read_info(path)
                row.size = info.size
                row.width = info.width
                row.height = info.height
                row.variations = list_variations(rec.basename, directory)
            out.append(row.model_dump())
        return out

    def image_add(self, item_id: int, field: str, src: Path, name: str | None = None) -> dict[str, Any]:
        """Store an uploaded file on an item and run the auto-mode upload action."""
        source = src.expanduser()
        if not source.is_file():
            raise ValueError(f"file not found: {source}")
        basename = Path(name).name if name else source.name
        target = content_mod.item_dir(self.config.content_root, item_id) / basename
        with self.db.connect() as conn:
            content_mod.add_image(conn, item_id, field, basename)
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists():
                raise ValueError(f"file already exists: {target}")
            shutil.copy2(source, target)

        payload: dict[str, Any] = {"item_id": item_id, "field": field, "file": basename, "optimized": None}
        auto = self.config.auto
        if not auto.optimize_originals or split_ext(basename) not in ALLOWED_EXTENSIONS:
            return payload
        if auto.backup:
            shutil.copy2(target, target.with_name(target.name + BACKUP_SUFFIX))
        asset = ImageAsset.from_path(target, item_id=item_id)
        result = self.optimizer.optimize(self.optimizer.request(asset, Mode.AUTO, force=True))
        payload["optimized"] = self._status(result)
        return payload

    def image_remove(self, item_id: int, filename: str) -> dict[str, Any]:
        basename = Path(filename).name
        directory = content_mod.item_dir(self.config.content_root, item_id)
        with self.db.connect() as conn:
            removed = content_mod.remove_image(conn, item_id, basename)
        if not removed:
            raise ValueError(f"unknown image: {item_id},{basename}")
        deleted: list[str] = []
        for name in [basename, *list_variations(basename, directory), basename + BACKUP_SUFFIX]:
            path = directory / name
            if path.is_file():
                path.unlink()
                deleted.append(name)
        return {"item_id": item_id, "file": basename, "deleted": deleted}

    def image_resize(
        self,
        item_id: int,
        filename: str,
        width: int,
        height: int,
        suffix: str | None = None,
    ) -> dict[str, Any]:
        """Create a variation and run the auto-mode resize action on it."""
        with self.db.connect() as conn:
            original = content_mod.resolve_image(conn, self.config.content_root, item_id, filename)
        if original is None or original.is_variation:
            raise ValueError(f"unknown image: {item_id},{filename}")
        path = create_variation(original.path, width, height, suffix=suffix, quality=self.config.auto.quality)
        payload: dict[str, Any] = {"item_id": item_id, "file": path.name, "optimized": None}
        if not self.config.auto.optimize_variations:
            return payload
        asset = ImageAsset.from_path(path, item_id=item_id, original=original.name)
        result = self.optimizer.optimize(self.optimizer.request(asset, Mode.AUTO, resized=True))
        payload["optimized"] = self._status(result)
        return payload

    # optimization

    def optimize(self, file: str, item_id: int | None = None, mode: Mode = Mode.MANUAL) -> dict[str, Any]:
        """Optimize one original or variation addressed as ``"<item_id>,<filename>"``."""
        item_id, name = parse_file_key(file, item_id)
        status = OptimizeStatusOutput()
        prefix = "bulkOptimize: " if mode is Mode.BULK else "onclickOptimize: "

        with self.db.connect() as conn:
            item = content_mod.get_item(conn, item_id) if item_id else None
            if item is None or not name:
                logger.info("%sInvalid data!", prefix)
                status.error = "invalid data"
                return status.model_dump()
            asset = content_mod.resolve_image(conn, self.config.content_root, item.id, name)

        status.file = f"{self.config.base_url.rstrip('/')}/{item.id}/{name}"
        status.basedir = str(item.id)
        if asset is None:
            logger.info("%s%s not found!", prefix, name)
            status.error = "image not found"
            return status.model_dump()
        if asset.size == 0:
            status.error = "zero file size"
            return status.model_dump()

        result = self.optimizer.optimize(self.optimizer.request(asset, mode, force=True))
        return self._status(result)

    def optimize_path(self, path: Path, mode: Mode = Mode.MANUAL, force: bool = True) -> dict[str, Any]:
        asset = ImageAsset.from_path(path)
        if asset.size == 0:
            raise ValueError(f"file not found or empty: {path}")
        result = self.optimizer.optimize(self.optimizer.request(asset, mode, force=force))
        out = self._status(result)
        out["src_size"] = result.src_size
        out["dest_size"] = result.dest_size
        out["skipped"] = result.skipped
        return out

    def bulk_policy(self) -> BulkPolicy:
        return BulkPolicy(
            optimize_originals=self.config.bulk.optimize_originals,
            optimize_variations=self.config.bulk.optimize_variations,
        )

    def bulk_page(self, start: int = 0) -> BulkPage:
        with self.db.connect() as conn:
            cursor = start_job(conn, start)
            return next_page(conn, cursor, self.bulk_policy(), self.config.content_root)

    def bulk_step(self, start: int = 0) -> dict[str, Any]:
        """One page of the bulk job in the JSON shape the polling client expects."""
        if self.optimizer.engine_for(Mode.BULK) is None:
            logger.info("No engine selected (bulk).")
            return BulkErrorOutput(error="No engine selected.").model_dump()
        page = self.bulk_page(start)
        return BulkPageOutput(**page.as_dict()).model_dump()

    def bulk_pages(self, start: int = 0) -> Iterator[BulkPage]:
        offset = start
        while True:
            page = self.bulk_page(offset)
            if page.position == 0:
                return
            yield page
            if page.done:
                return
            offset = page.cursor.offset

    # introspection

    def tools(self) -> list[dict[str, Any]]:
        return [
            ToolOutput(name=cap.name, path=cap.path, available=cap.available, options=list(cap.options)).model_dump()
            for cap in self.capabilities.values()
        ]

    def search_path(self) -> list[str]:
        return search_path([p for p in self.config.search_dirs() if p.is_dir()])

    def status(self) -> dict[str, Any]:
        with self.db.connect() as conn:
            counts = {
                "fields": int(conn.execute("SELECT COUNT(*) AS n FROM fields").fetchone()["n"]),
                "items": int(conn.execute("SELECT COUNT(*) AS n FROM items").fetchone()["n"]),
                "images": int(conn.execute("SELECT COUNT(*) AS n FROM images").fetchone()["n"]),
                "items_with_images": content_mod.count_items_with_images(conn),
            }
        counts["db_path"] = str(self.db.path)
        counts["content_root"] = str(self.config.content_root)
        counts["log_path"] = str(self.config.log_path)
        for mode in Mode:
            engine = self.optimizer.engine_for(mode)
            counts[f"{mode.value}_engine"] = engine.value if engine else None
        return counts

    @staticmethod
    def _status(result: OptimizationResult) -> dict[str, Any]:
        return OptimizeStatusOutput(**result.as_status()).model_dump()
