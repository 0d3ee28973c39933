from pathlib import Path

from imgsmush.variations import BACKUP_SUFFIX, is_variation, list_dir_files, list_variations


def test_variation_matches_shared_stem() -> None:
    assert is_variation("123.jpg", "123.0x260.jpg")
    assert is_variation("123.jpg", "123.-portrait.jpg")
    assert is_variation("123.jpg", "123.800x600-crop.jpg")


def test_variation_rejects_self_and_other_stems() -> None:
    assert not is_variation("123.jpg", "123.jpg")
    assert not is_variation("123.jpg", "456.jpg")
    assert not is_variation("123.jpg", "1234.0x260.jpg")


def test_variation_match_is_loose() -> None:
    # Anything sharing the part before the first dot counts.
    assert is_variation("photo.jpg", "photo.png")
    assert is_variation("photo.jpg", "photo.notes.txt")


def test_list_variations_skips_backups_and_hidden(tmp_path: Path) -> None:
    for name in [
        "a.jpg",
        "a.100x100.jpg",
        "a.0x50-thumb.jpg",
        "a.jpg" + BACKUP_SUFFIX,
        ".a.tmp.jpg",
        "b.jpg",
    ]:
        (tmp_path / name).write_bytes(b"x")

    assert list_dir_files(tmp_path) == ["a.0x50-thumb.jpg", "a.100x100.jpg", "a.jpg", "b.jpg"]
    assert list_variations("a.jpg", tmp_path) == ["a.0x50-thumb.jpg", "a.100x100.jpg"]
    assert list_variations("b.jpg", tmp_path) == []


def test_list_variations_missing_directory(tmp_path: Path) -> None:
    assert list_variations("a.jpg", tmp_path / "nope") == []
