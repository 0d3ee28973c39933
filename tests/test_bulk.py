from pathlib import Path
import sqlite3

from imgsmush import content
from imgsmush.bulk import BulkPolicy, collect_item_worklist, next_page, start_job
from imgsmush.db import Database


def _db(tmp_path: Path) -> Database:
    db = Database(tmp_path / "content.sqlite3")
    db.initialize()
    with db.connect() as conn:
        content.add_field(conn, "images", "image")
        content.add_field(conn, "hero", "image")
        content.add_field(conn, "gallery", "repeater")
    return db


def _put(root: Path, item_id: int, *names: str) -> None:
    directory = content.item_dir(root, item_id)
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_bytes(b"img")


def _item_with_image(conn: sqlite3.Connection, root: Path, name: str, image: str) -> int:
    item_id = content.add_item(conn, name)
    content.add_image(conn, item_id, "images", image)
    _put(root, item_id, image)
    return item_id


def test_ten_items_take_ten_calls(tmp_path: Path) -> None:
    db = _db(tmp_path)
    root = tmp_path / "files"
    with db.connect() as conn:
        for i in range(10):
            _item_with_image(conn, root, f"page-{i}", f"img{i}.jpg")

    progress: list[int] = []
    with db.connect() as conn:
        cursor = start_job(conn)
        assert cursor.total == 10
        calls = 0
        while True:
            page = next_page(conn, cursor, BulkPolicy(), root)
            calls += 1
            progress.append(page.progress)
            assert len(page.worklist) == 1
            cursor = page.cursor
            if page.done:
                break

    assert calls == 10
    assert progress == sorted(set(progress))
    assert progress[0] == 0
    assert progress[-1] == 90


def test_page_shape(tmp_path: Path) -> None:
    db = _db(tmp_path)
    root = tmp_path / "files"
    with db.connect() as conn:
        first = _item_with_image(conn, root, "one", "a.jpg")
        _item_with_image(conn, root, "two", "b.jpg")
        page = next_page(conn, start_job(conn, 0), BulkPolicy(), root)

    assert page.as_dict() == {
        "counter": "Processing item 1 out of 2 - {0}% complete",
        "numBatches": 2,
        "numImages": 1,
        "images": [f"{first},a.jpg"],
    }
    assert not page.done


def test_resume_from_start_offset(tmp_path: Path) -> None:
    db = _db(tmp_path)
    root = tmp_path / "files"
    with db.connect() as conn:
        _item_with_image(conn, root, "one", "a.jpg")
        second = _item_with_image(conn, root, "two", "b.jpg")
        page = next_page(conn, start_job(conn, 1), BulkPolicy(), root)

    assert page.worklist[0].key == f"{second},b.jpg"
    assert page.progress == 50
    assert page.done


def test_variations_are_listed_and_backups_skipped(tmp_path: Path) -> None:
    db = _db(tmp_path)
    root = tmp_path / "files"
    with db.connect() as conn:
        item_id = content.add_item(conn, "page")
        content.add_image(conn, item_id, "images", "a.jpg")
        content.add_image(conn, item_id, "images", "a2.jpg")
        _put(root, item_id, "a.jpg", "a2.jpg", "a.100x100.jpg", "a.jpg.autosmush", "a2.0x50-thumb.jpg")
        work = collect_item_worklist(conn, item_id, BulkPolicy(), root)

    assert [w.filename for w in work] == ["a.jpg", "a.100x100.jpg", "a2.jpg", "a2.0x50-thumb.jpg"]
    assert [w.is_variation for w in work] == [False, True, False, True]


def test_policy_filters_originals_and_variations(tmp_path: Path) -> None:
    db = _db(tmp_path)
    root = tmp_path / "files"
    with db.connect() as conn:
        item_id = content.add_item(conn, "page")
        content.add_image(conn, item_id, "images", "a.jpg")
        _put(root, item_id, "a.jpg", "a.100x100.jpg")
        only_vars = collect_item_worklist(conn, item_id, BulkPolicy(optimize_originals=False), root)
        only_orig = collect_item_worklist(conn, item_id, BulkPolicy(optimize_variations=False), root)

    assert [w.filename for w in only_vars] == ["a.100x100.jpg"]
    assert [w.filename for w in only_orig] == ["a.jpg"]


def test_repeater_children_belong_to_parent(tmp_path: Path) -> None:
    db = _db(tmp_path)
    root = tmp_path / "files"
    with db.connect() as conn:
        parent = content.add_item(conn, "gallery page")
        child = content.add_item(conn, "slide", parent_id=parent, parent_field="gallery")
        content.add_image(conn, child, "images", "c.jpg")
        _put(root, child, "c.jpg", "c.300x200.jpg")
        cursor = start_job(conn)
        page = next_page(conn, cursor, BulkPolicy(), root)

    assert cursor.total == 1
    assert page.as_dict()["images"] == [f"{child},c.jpg", f"{child},c.300x200.jpg"]
    assert page.done


def test_same_file_in_two_fields_is_listed_once(tmp_path: Path) -> None:
    db = _db(tmp_path)
    root = tmp_path / "files"
    with db.connect() as conn:
        item_id = content.add_item(conn, "page")
        content.add_image(conn, item_id, "images", "a.jpg")
        content.add_image(conn, item_id, "hero", "a.jpg")
        _put(root, item_id, "a.jpg", "a.10x10.jpg")
        work = collect_item_worklist(conn, item_id, BulkPolicy(), root)

    keys = [w.key for w in work]
    assert keys == [f"{item_id},a.jpg", f"{item_id},a.10x10.jpg"]


def test_items_without_images_are_not_counted(tmp_path: Path) -> None:
    db = _db(tmp_path)
    root = tmp_path / "files"
    with db.connect() as conn:
        content.add_item(conn, "empty")
        _item_with_image(conn, root, "full", "a.jpg")
        assert start_job(conn).total == 1


def test_nothing_to_do(tmp_path: Path) -> None:
    db = _db(tmp_path)
    with db.connect() as conn:
        cursor = start_job(conn)
        page = next_page(conn, cursor, BulkPolicy(), tmp_path / "files")

    assert cursor.total == 0
    assert page.done
    assert page.progress == 0
    assert page.as_dict() == {
        "counter": "Nothing to do - {0}% complete",
        "numBatches": 0,
        "numImages": 0,
        "images": [],
    }


def test_past_the_end_reports_all_done(tmp_path: Path) -> None:
    db = _db(tmp_path)
    root = tmp_path / "files"
    with db.connect() as conn:
        _item_with_image(conn, root, "one", "a.jpg")
        page = next_page(conn, start_job(conn, 5), BulkPolicy(), root)

    assert page.done
    assert page.progress == 100
    assert page.counter == "All done - {100}% complete"
