from pathlib import Path
import subprocess
import threading
import time

from PIL import Image
import pytest

from imgsmush.config import AppConfig, ModeConfig
from imgsmush.models import Mode, OptimizerCapability
from imgsmush import service as service_mod
from imgsmush.service import SmushService, parse_file_key
from imgsmush.tools import chain as chain_mod
from imgsmush.variations import BACKUP_SUFFIX


def _cfg(tmp_path: Path, **kw) -> AppConfig:
    base = {
        "db_path": tmp_path / "content.sqlite3",
        "content_root": tmp_path / "files",
        "log_path": tmp_path / "logs" / "imgsmush.log",
        "auto": ModeConfig(engine="local", optimize_originals=True, optimize_variations=True, backup=True),
        "manual": ModeConfig(engine="local"),
        "bulk": ModeConfig(engine="local", optimize_originals=True, optimize_variations=True),
    }
    base.update(kw)
    return AppConfig(**base)


def _svc(tmp_path: Path, **kw) -> SmushService:
    caps = {
        name: OptimizerCapability(name=name, path=f"/opt/bin/{name}")
        for name in ("jpegoptim", "pngquant", "optipng", "pngcrush", "advpng", "gifsicle")
    }
    return SmushService(_cfg(tmp_path, **kw), capabilities=caps)


@pytest.fixture
def shrink(monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    calls: list[list[str]] = []

    def _run(cmd, **kwargs):
        calls.append(list(cmd))
        target = Path(cmd[-1])
        target.write_bytes(target.read_bytes()[: target.stat().st_size // 2])
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(chain_mod.subprocess, "run", _run)
    return calls


def _upload(tmp_path: Path, name: str = "a.jpg", size: int = 1000) -> Path:
    src = tmp_path / "upload" / name
    src.parent.mkdir(parents=True, exist_ok=True)
    src.write_bytes(b"\xff" * size)
    return src


def _page(svc: SmushService) -> int:
    svc.field_add("images", "image")
    return int(svc.item_add("page")["id"])


def test_parse_file_key() -> None:
    assert parse_file_key("12,a.jpg") == (12, "a.jpg")
    assert parse_file_key("a.jpg", 3) == (3, "a.jpg")
    assert parse_file_key("x,../../etc/a.jpg") == (None, "a.jpg")
    assert parse_file_key("") == (None, "")


def test_upload_backs_up_and_optimizes(tmp_path: Path, shrink: list[list[str]]) -> None:
    svc = _svc(tmp_path)
    item_id = _page(svc)

    result = svc.image_add(item_id, "images", _upload(tmp_path))

    stored = tmp_path / "files" / str(item_id) / "a.jpg"
    backup = stored.with_name("a.jpg" + BACKUP_SUFFIX)
    assert result["optimized"]["error"] is None
    assert result["optimized"]["percentNew"] == "50"
    assert stored.stat().st_size == 500
    assert backup.stat().st_size == 1000
    assert len(shrink) == 1
    log_text = (tmp_path / "logs" / "imgsmush.log").read_text()
    assert "ServerTools (auto):" in log_text
    assert "reduction 50%" in log_text


def test_upload_without_auto_mode_keeps_file(tmp_path: Path, shrink: list[list[str]]) -> None:
    svc = _svc(tmp_path, auto=ModeConfig(optimize_originals=False))
    item_id = _page(svc)

    result = svc.image_add(item_id, "images", _upload(tmp_path))

    assert result["optimized"] is None
    assert shrink == []
    assert (tmp_path / "files" / str(item_id) / "a.jpg").stat().st_size == 1000


def test_upload_of_other_types_is_stored_only(tmp_path: Path, shrink: list[list[str]]) -> None:
    svc = _svc(tmp_path)
    item_id = _page(svc)

    result = svc.image_add(item_id, "images", _upload(tmp_path, "doc.webp"))

    assert result["optimized"] is None
    assert shrink == []


def test_upload_to_unknown_item_fails(tmp_path: Path) -> None:
    svc = _svc(tmp_path)
    svc.field_add("images", "image")
    with pytest.raises(ValueError):
        svc.image_add(99, "images", _upload(tmp_path))


def test_remove_deletes_variations_and_backup(tmp_path: Path, shrink: list[list[str]]) -> None:
    svc = _svc(tmp_path)
    item_id = _page(svc)
    svc.image_add(item_id, "images", _upload(tmp_path))
    directory = tmp_path / "files" / str(item_id)
    (directory / "a.100x100.jpg").write_bytes(b"v")
    (directory / "b.jpg").write_bytes(b"other")

    result = svc.image_remove(item_id, "a.jpg")

    assert sorted(result["deleted"]) == ["a.100x100.jpg", "a.jpg", "a.jpg" + BACKUP_SUFFIX]
    assert sorted(p.name for p in directory.iterdir()) == ["b.jpg"]
    assert svc.item_images(item_id) == []


def test_resize_optimizes_new_variation(tmp_path: Path, shrink: list[list[str]]) -> None:
    svc = _svc(tmp_path, auto=ModeConfig(engine="local", optimize_originals=False, optimize_variations=True))
    item_id = _page(svc)
    src = tmp_path / "upload" / "photo.jpg"
    src.parent.mkdir(parents=True)
    Image.new("RGB", (300, 150), (10, 120, 200)).save(src, format="JPEG")
    svc.image_add(item_id, "images", src)

    result = svc.image_resize(item_id, "photo.jpg", 100, 0)

    assert result["file"] == "photo.100x0.jpg"
    assert result["optimized"]["error"] is None
    assert len(shrink) == 1
    images = svc.item_images(item_id)
    assert images[0]["variations"] == ["photo.100x0.jpg"]
    assert (images[0]["width"], images[0]["height"]) == (300, 150)


def test_optimize_invalid_data(tmp_path: Path) -> None:
    svc = _svc(tmp_path)

    assert svc.optimize("nonsense")["error"] == "invalid data"
    assert svc.optimize("42,a.jpg")["error"] == "invalid data"


def test_optimize_image_not_found(tmp_path: Path) -> None:
    svc = _svc(tmp_path)
    item_id = _page(svc)

    status = svc.optimize(f"{item_id},ghost.jpg")

    assert status["error"] == "image not found"
    assert status["basedir"] == str(item_id)


def test_optimize_zero_file_size(tmp_path: Path, shrink: list[list[str]]) -> None:
    svc = _svc(tmp_path, auto=ModeConfig(optimize_originals=False))
    item_id = _page(svc)
    svc.image_add(item_id, "images", _upload(tmp_path, size=0))

    status = svc.optimize(f"{item_id},a.jpg")

    assert status["error"] == "zero file size"
    assert shrink == []


def test_manual_optimize_of_variation(tmp_path: Path, shrink: list[list[str]]) -> None:
    svc = _svc(tmp_path, auto=ModeConfig(optimize_originals=False))
    item_id = _page(svc)
    svc.image_add(item_id, "images", _upload(tmp_path))
    (tmp_path / "files" / str(item_id) / "a.0x260.jpg").write_bytes(b"\x01" * 400)

    status = svc.optimize(f"{item_id},a.0x260.jpg", mode=Mode.MANUAL)

    assert status["error"] is None
    assert status["percentNew"] == "50"
    assert status["url"] == f"/site/assets/files/{item_id}/a.0x260.jpg"


def test_bulk_step_without_engine(tmp_path: Path) -> None:
    svc = _svc(tmp_path, bulk=ModeConfig(engine=None))

    assert svc.bulk_step(0) == {"error": "No engine selected.", "numImages": 0}


def test_bulk_pages_walk_every_item(tmp_path: Path, shrink: list[list[str]]) -> None:
    svc = _svc(tmp_path, auto=ModeConfig(optimize_originals=False))
    svc.field_add("images", "image")
    for i in range(3):
        item_id = int(svc.item_add(f"page-{i}")["id"])
        svc.image_add(item_id, "images", _upload(tmp_path / str(i), f"p{i}.jpg"))

    pages = list(svc.bulk_pages())
    keys = [w.key for page in pages for w in page.worklist]
    statuses = [svc.optimize(key, mode=Mode.BULK) for key in keys]

    assert len(pages) == 3
    assert pages[-1].done
    assert [s["percentNew"] for s in statuses] == ["50", "50", "50"]
    step = svc.bulk_step(0)
    assert step["numBatches"] == 3
    assert step["counter"] == "Processing item 1 out of 3 - {0}% complete"


def test_status_counts(tmp_path: Path) -> None:
    svc = _svc(tmp_path)
    _page(svc)

    status = svc.status()

    assert status["fields"] == 1
    assert status["items"] == 1
    assert status["items_with_images"] == 0
    assert status["manual_engine"] == "local"


def test_concurrent_requests_share_one_optimizer(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    class SlowOptimizer(service_mod.Optimizer):
        def __init__(self, *args, **kwargs):
            time.sleep(0.1)
            super().__init__(*args, **kwargs)

    monkeypatch.setattr(service_mod, "Optimizer", SlowOptimizer)
    svc = _svc(tmp_path)
    barrier = threading.Barrier(3)
    seen: list[object] = []

    def _worker() -> None:
        barrier.wait()
        seen.append(svc.optimizer)

    threads = [threading.Thread(target=_worker) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(seen) == 3
    assert all(opt is seen[0] for opt in seen)
