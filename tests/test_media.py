from pathlib import Path

from PIL import Image
import pytest

from imgsmush.media.image_io import read_info
from imgsmush.media.resize import create_variation, variation_name
from imgsmush.variations import is_variation


def _jpeg(path: Path, size: tuple[int, int] = (400, 200)) -> Path:
    Image.new("RGB", size, (200, 40, 40)).save(path, format="JPEG")
    return path


def test_variation_name() -> None:
    assert variation_name("123.jpg", 0, 260) == "123.0x260.jpg"
    assert variation_name("123.jpg", 100, 100, "Crop Top") == "123.100x100-croptop.jpg"
    assert is_variation("123.jpg", variation_name("123.jpg", 10, 10))


def test_proportional_resize(tmp_path: Path) -> None:
    src = _jpeg(tmp_path / "a.jpg")

    out = create_variation(src, 100, 0)

    assert out.name == "a.100x0.jpg"
    info = read_info(out)
    assert (info.width, info.height) == (100, 50)
    assert info.format == "JPEG"


def test_fit_crops_to_box(tmp_path: Path) -> None:
    src = _jpeg(tmp_path / "a.jpg")

    out = create_variation(src, 50, 50, suffix="thumb")

    assert out.name == "a.50x50-thumb.jpg"
    info = read_info(out)
    assert (info.width, info.height) == (50, 50)


def test_resize_needs_a_dimension(tmp_path: Path) -> None:
    src = _jpeg(tmp_path / "a.jpg")
    with pytest.raises(ValueError):
        create_variation(src, 0, 0)


def test_read_info_of_non_image(tmp_path: Path) -> None:
    path = tmp_path / "a.png"
    path.write_bytes(b"not really a png")

    info = read_info(path)

    assert info.size == 16
    assert info.width is None
    assert info.format is None
