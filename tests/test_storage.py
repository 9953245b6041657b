"""Tests for thumbnail path naming and the local storage backend."""

from pathlib import Path

import pytest

from thumbcache.thumbnails.storage import LocalStorage, get_thumbnail_path


@pytest.mark.parametrize(
    "original,expected",
    [
        ("a/b/photo.jpg", "a/b/photo_thumb.webp"),
        ("/a/photo.JPG", "a/photo_thumb.webp"),
        ("photo.tar.png", "photo.tar_thumb.webp"),
        ("noext", "noext_thumb.webp"),
    ],
)
def test_get_thumbnail_path(original: str, expected: str) -> None:
    """'<dir>/<basename>_<size>.<format>' with the extension stripped."""
    assert get_thumbnail_path(original, "thumb", "webp") == expected


def test_save_exists_and_location(tmp_path: Path) -> None:
    """save writes under the root and returns the public location."""
    storage = LocalStorage(tmp_path)
    location = storage.save("x/y_thumb.webp", b"data", "image/webp")
    assert location == "/api/thumbnails/x/y_thumb.webp"
    assert (tmp_path / "x" / "y_thumb.webp").read_bytes() == b"data"
    assert storage.exists("x/y_thumb.webp") is True
    assert storage.exists("x/missing.webp") is False


def test_resolve_rejects_traversal(tmp_path: Path) -> None:
    """Paths escaping the cache root are rejected."""
    storage = LocalStorage(tmp_path)
    with pytest.raises(ValueError):
        storage.resolve("../etc/passwd")
    with pytest.raises(ValueError):
        storage.save("a/../../b.webp", b"", "image/webp")
    assert storage.exists("../x") is False


def test_delete_missing_returns_false(tmp_path: Path) -> None:
    """Deleting an absent thumbnail is not an error."""
    assert LocalStorage(tmp_path).delete("nope_thumb.webp") is False


def test_clear_all_and_stats(tmp_path: Path) -> None:
    """stats groups files by size suffix; clear_all removes files and folders and counts files."""
    root = tmp_path / "thumbs"
    storage = LocalStorage(root)
    storage.save("a/p_thumb.webp", b"12345", "image/webp")
    storage.save("a/p_medium.webp", b"123", "image/webp")
    storage.save("b/c/my_photo_thumb.webp", b"1", "image/webp")

    stats = storage.stats()
    assert stats == {"totalFiles": 3, "totalSize": 9, "bySize": {"thumb": 2, "medium": 1}}

    assert storage.clear_all() == 3
    assert list(root.iterdir()) == []
    assert storage.stats()["totalFiles"] == 0


def test_clear_all_missing_root(tmp_path: Path) -> None:
    """Clearing a cache that was never created deletes nothing."""
    assert LocalStorage(tmp_path / "absent").clear_all() == 0


def test_clear_all_tolerates_concurrent_write(tmp_path: Path, monkeypatch) -> None:
    """A thumbnail written while clearing keeps its folder; the clear still reports what it deleted."""
    root = tmp_path / "thumbs"
    storage = LocalStorage(root)
    storage.save("a/b/p_thumb.webp", b"12345", "image/webp")
    storage.save("a/q_thumb.webp", b"1", "image/webp")
    late = root / "a" / "b" / "late_thumb.webp"
    real_unlink = Path.unlink

    def unlink_then_write(self, missing_ok=False):
        real_unlink(self, missing_ok=missing_ok)
        if not late.exists():
            late.write_bytes(b"new")

    monkeypatch.setattr(Path, "unlink", unlink_then_write)

    assert storage.clear_all() == 2
    assert late.read_bytes() == b"new"
    assert not (root / "a" / "q_thumb.webp").exists()
