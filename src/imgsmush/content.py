from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import sqlite3

from imgsmush.models import ImageAsset
from imgsmush.util.time import now_iso
from imgsmush.variations import is_variation

FIELD_TYPES = ("image", "repeater")

# Top-level items that own an image directly or through a repeater child.
_ITEMS_WITH_IMAGES_SQL = """
FROM items i
WHERE i.parent_id IS NULL
  AND (
    EXISTS (SELECT 1 FROM images m WHERE m.item_id = i.id)
    OR EXISTS (
      SELECT 1 FROM items c JOIN images m ON m.item_id = c.id
      WHERE c.parent_id = i.id
    )
  )
"""


@dataclass(slots=True)
class ContentField:
    id: int
    name: str
    type: str
    created_at: str


@dataclass(slots=True)
class ContentItem:
    id: int
    name: str
    parent_id: int | None
    parent_field: str | None
    created_at: str


@dataclass(slots=True)
class ImageRecord:
    id: int
    item_id: int
    field: str
    basename: str
    sort: int
    created_at: str


def item_dir(content_root: Path, item_id: int) -> Path:
    return content_root / str(item_id)


def add_field(conn: sqlite3.Connection, name: str, field_type: str) -> int:
    if field_type not in FIELD_TYPES:
        raise ValueError(f"unknown field type: {field_type}")
    cur = conn.execute(
        "INSERT INTO fields(name, type, created_at) VALUES(?, ?, ?)",
        (name.strip(), field_type, now_iso()),
    )
    return int(cur.lastrowid)


def get_field(conn: sqlite3.Connection, name: str) -> ContentField | None:
    row = conn.execute("SELECT id, name, type, created_at FROM fields WHERE name = ?", (name,)).fetchone()
    if row is None:
        return None
    return ContentField(**dict(row))


def list_fields(conn: sqlite3.Connection) -> list[ContentField]:
    rows = conn.execute("SELECT id, name, type, created_at FROM fields ORDER BY name").fetchall()
    return [ContentField(**dict(r)) for r in rows]


def _require_field(conn: sqlite3.Connection, name: str, field_type: str) -> ContentField:
    fld = get_field(conn, name)
    if fld is None:
        raise ValueError(f"unknown field: {name}")
    if fld.type != field_type:
        raise ValueError(f"field {name} is a {fld.type} field, expected {field_type}")
    return fld


def add_item(
    conn: sqlite3.Connection,
    name: str,
    parent_id: int | None = None,
    parent_field: str | None = None,
) -> int:
    if parent_id is not None:
        if get_item(conn, parent_id) is None:
            raise ValueError(f"unknown item: {parent_id}")
        if not parent_field:
            raise ValueError("a repeater field is required for nested items")
        _require_field(conn, parent_field, "repeater")
    cur = conn.execute(
        "INSERT INTO items(name, parent_id, parent_field, created_at) VALUES(?, ?, ?, ?)",
        (name, parent_id, parent_field if parent_id is not None else None, now_iso()),
    )
    return int(cur.lastrowid)


def get_item(conn: sqlite3.Connection, item_id: int) -> ContentItem | None:
    row = conn.execute(
        "SELECT id, name, parent_id, parent_field, created_at FROM items WHERE id = ?",
        (item_id,),
    ).fetchone()
    if row is None:
        return None
    return ContentItem(**dict(row))


def list_items(conn: sqlite3.Connection, parent_id: int | None = None) -> list[ContentItem]:
    if parent_id is None:
        rows = conn.execute(
            "SELECT id, name, parent_id, parent_field, created_at FROM items ORDER BY id"
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT id, name, parent_id, parent_field, created_at FROM items WHERE parent_id = ? ORDER BY id",
            (parent_id,),
        ).fetchall()
    return [ContentItem(**dict(r)) for r in rows]


def remove_item(conn: sqlite3.Connection, item_id: int) -> None:
    conn.execute("DELETE FROM items WHERE id = ?", (item_id,))


def add_image(conn: sqlite3.Connection, item_id: int, field_name: str, basename: str) -> int:
    if get_item(conn, item_id) is None:
        raise ValueError(f"unknown item: {item_id}")
    _require_field(conn, field_name, "image")
    row = conn.execute(
        "SELECT COALESCE(MAX(sort), -1) + 1 AS n FROM images WHERE item_id = ? AND field = ?",
        (item_id, field_name),
    ).fetchone()
    cur = conn.execute(
        "INSERT INTO images(item_id, field, basename, sort, created_at) VALUES(?, ?, ?, ?, ?)",
        (item_id, field_name, basename, int(row["n"]), now_iso()),
    )
    return int(cur.lastrowid)


def remove_image(conn: sqlite3.Connection, item_id: int, basename: str) -> int:
    return int(conn.execute("DELETE FROM images WHERE item_id = ? AND basename = ?", (item_id, basename)).rowcount)


def own_images(conn: sqlite3.Connection, item_id: int) -> list[ImageRecord]:
    rows = conn.execute(
        """
        SELECT m.id, m.item_id, m.field, m.basename, m.sort, m.created_at
        FROM images m JOIN fields f ON f.name = m.field AND f.type = 'image'
        WHERE m.item_id = ?
        ORDER BY m.field, m.sort, m.id
        """,
        (item_id,),
    ).fetchall()
    return [ImageRecord(**dict(r)) for r in rows]


def item_images(conn: sqlite3.Connection, item_id: int, depth: int = 1) -> list[ImageRecord]:
    """Images of an item plus those of its repeater children, ``depth`` levels down."""
    out = own_images(conn, item_id)
    if depth <= 0:
        return out
    for child in list_items(conn, parent_id=item_id):
        out.extend(item_images(conn, child.id, depth=depth - 1))
    return out


def count_items_with_images(conn: sqlite3.Connection) -> int:
    row = conn.execute(f"SELECT COUNT(*) AS n {_ITEMS_WITH_IMAGES_SQL}").fetchone()
    return int(row["n"])


def item_with_images_at(conn: sqlite3.Connection, offset: int) -> int | None:
    row = conn.execute(
        f"SELECT i.id AS id {_ITEMS_WITH_IMAGES_SQL} ORDER BY i.id LIMIT 1 OFFSET ?",
        (offset,),
    ).fetchone()
    return int(row["id"]) if row else None


def resolve_image(conn: sqlite3.Connection, content_root: Path, item_id: int, filename: str) -> ImageAsset | None:
    """Find ``filename`` among the item's originals or their variations on disk."""
    name = Path(filename).name
    if not name:
        return None
    directory = item_dir(content_root, item_id)
    originals = own_images(conn, item_id)
    for record in originals:
        if record.basename == name:
            return ImageAsset.from_path(directory / name, item_id=item_id)
    candidate = directory / name
    if not candidate.is_file():
        return None
    for record in originals:
        if is_variation(record.basename, name):
            return ImageAsset.from_path(candidate, item_id=item_id, original=record.basename)
    return None
