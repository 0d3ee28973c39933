from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import sqlite3
from typing import Any

from imgsmush.content import count_items_with_images, item_dir, item_images, item_with_images_at
from imgsmush.models import BulkCursor, WorkItem
from imgsmush.variations import list_dir_files, list_variations


@dataclass(slots=True, frozen=True)
class BulkPolicy:
    optimize_originals: bool = True
    optimize_variations: bool = True


@dataclass(slots=True)
class BulkPage:
    cursor: BulkCursor
    worklist: list[WorkItem]
    progress: int
    done: bool
    position: int = 0

    @property
    def counter(self) -> str:
        # {N} marks the percentage for the polling client.
        if self.position == 0:
            if self.cursor.total == 0:
                return "Nothing to do - {0}% complete"
            return "All done - {100}% complete"
        return f"Processing item {self.position} out of {self.cursor.total} - {{{self.progress}}}% complete"

    def as_dict(self) -> dict[str, Any]:
        return {
            "counter": self.counter,
            "numBatches": self.cursor.total,
            "numImages": len(self.worklist),
            "images": [w.key for w in self.worklist],
        }


def start_job(conn: sqlite3.Connection, start: int = 0) -> BulkCursor:
    total = count_items_with_images(conn)
    return BulkCursor(total=total, offset=min(max(int(start), 0), total))


def collect_item_worklist(
    conn: sqlite3.Connection,
    item_id: int,
    policy: BulkPolicy,
    content_root: Path,
) -> list[WorkItem]:
    records = item_images(conn, item_id, depth=1)
    originals: dict[int, set[str]] = {}
    for rec in records:
        originals.setdefault(rec.item_id, set()).add(rec.basename)

    listings: dict[int, list[str]] = {}
    seen: set[str] = set()
    out: list[WorkItem] = []

    def _add(work: WorkItem) -> None:
        if work.key in seen:
            return
        seen.add(work.key)
        out.append(work)

    for rec in records:
        if policy.optimize_originals:
            _add(WorkItem(rec.item_id, rec.basename, is_variation=False))
        if not policy.optimize_variations:
            continue
        if rec.item_id not in listings:
            names = list_dir_files(item_dir(content_root, rec.item_id))
            listings[rec.item_id] = [n for n in names if n not in originals[rec.item_id]]
        directory = item_dir(content_root, rec.item_id)
        for name in list_variations(rec.basename, directory, listings[rec.item_id]):
            _add(WorkItem(rec.item_id, name, is_variation=True))
    return out


def next_page(
    conn: sqlite3.Connection,
    cursor: BulkCursor,
    policy: BulkPolicy,
    content_root: Path,
) -> BulkPage:
    """Enumerate the next content item of a bulk job.

    Exactly one top-level item is processed per call. The returned cursor only
    holds this page's worklist; callers stream or accumulate it themselves.
    """
    total = cursor.total
    if total <= 0:
        return BulkPage(cursor=BulkCursor(total=0), worklist=[], progress=0, done=True)
    if cursor.offset >= total:
        return BulkPage(cursor=BulkCursor(total=total, offset=total), worklist=[], progress=100, done=True)

    offset = max(cursor.offset, 0)
    item_id = item_with_images_at(conn, offset)
    worklist: list[WorkItem] = []
    if item_id is not None:
        worklist = collect_item_worklist(conn, item_id, policy, content_root)

    updated = BulkCursor(total=total, offset=offset + 1, worklist=worklist)
    return BulkPage(
        cursor=updated,
        worklist=worklist,
        progress=offset * 100 // total,
        done=updated.done,
        position=offset + 1,
    )
