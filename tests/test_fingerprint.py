"""Tests for content hashing and the remote tree scanner with a fake listing API."""

from typing import Dict
from unittest.mock import MagicMock

import httpx
import pytest

from thumbcache.errors import ConfigurationError, RootListingError
from thumbcache.scan.fingerprint import ContentFingerprintScanner, content_hash, is_image


class FakeGallery:
    """list_folder backed by a dict of folder -> listing; missing folders raise like a timeout."""

    def __init__(self, tree: Dict[str, dict]) -> None:
        self.tree = tree
        self.calls = []

    def list_folder(self, folder: str = "") -> dict:
        self.calls.append(folder)
        if folder not in self.tree:
            raise httpx.ConnectTimeout(f"timeout listing {folder}")
        return self.tree[folder]


def test_content_hash_is_stable() -> None:
    """Same inputs give the same 16-hex-digit digest."""
    h = content_hash("x.jpg", 100, "2024-01-01")
    assert h == content_hash("x.jpg", 100, "2024-01-01")
    assert len(h) == 16
    int(h, 16)


@pytest.mark.parametrize(
    "args",
    [("y.jpg", 100, "2024-01-01"), ("x.jpg", 101, "2024-01-01"), ("x.jpg", 100, "2024-01-02")],
)
def test_content_hash_changes_with_any_input(args) -> None:
    """Changing name, size or modified changes the digest."""
    assert content_hash(*args) != content_hash("x.jpg", 100, "2024-01-01")


def test_is_image_case_insensitive() -> None:
    """Allow-list matches extensions regardless of case; other files are ignored."""
    assert is_image("a/B.JPG")
    assert is_image("photo.webp")
    assert is_image("photo.avif")
    assert not is_image("notes.txt")
    assert not is_image("archive.jpg.zip")


def test_scan_walks_subfolders_and_keeps_images_only() -> None:
    """Images from root and nested folders are fingerprinted; non-images are skipped."""
    api = FakeGallery({
        "": {
            "folders": [{"name": "trips", "path": "trips"}],
            "files": [
                {"name": "a.jpg", "path": "a.jpg", "size": 10, "modified": "2024-01-01"},
                {"name": "readme.txt", "path": "readme.txt", "size": 1, "modified": "2024-01-01"},
            ],
        },
        "trips": {
            "folders": [{"name": "2024", "path": "trips/2024"}],
            "files": [{"name": "b.png", "path": "trips/b.png", "size": 20, "modified": "2024-02-01"}],
        },
        "trips/2024": {
            "folders": [],
            "files": [{"name": "c.webp", "path": "trips/2024/c.webp", "size": 30, "modified": "2024-03-01"}],
        },
    })
    result = ContentFingerprintScanner(api, max_workers=2).scan()
    by_path = {fp.path: fp for fp in result}
    assert set(by_path) == {"a.jpg", "trips/b.png", "trips/2024/c.webp"}
    assert by_path["a.jpg"].hash == content_hash("a.jpg", 10, "2024-01-01")
    assert by_path["trips/b.png"].size == 20


def test_scan_skips_failing_subfolder() -> None:
    """A subfolder whose listing fails only drops its own branch."""
    api = FakeGallery({
        "": {
            "folders": [{"name": "ok", "path": "ok"}, {"name": "broken", "path": "broken"}],
            "files": [],
        },
        "ok": {"folders": [], "files": [{"name": "x.jpg", "path": "ok/x.jpg", "size": 1, "modified": "m"}]},
    })
    result = ContentFingerprintScanner(api).scan()
    assert [fp.path for fp in result] == ["ok/x.jpg"]


def test_scan_skips_subfolder_with_error_body() -> None:
    """An {error} listing body is treated like a failed listing for that folder."""
    api = FakeGallery({
        "": {"folders": [{"name": "denied", "path": "denied"}], "files": [
            {"name": "a.jpg", "path": "a.jpg", "size": 1, "modified": "m"},
        ]},
        "denied": {"error": "Access denied"},
    })
    result = ContentFingerprintScanner(api).scan()
    assert [fp.path for fp in result] == ["a.jpg"]


def test_scan_root_failure_raises() -> None:
    """An unreachable root raises RootListingError instead of returning an empty tree."""
    api = FakeGallery({})
    with pytest.raises(RootListingError):
        ContentFingerprintScanner(api).scan()


def test_scan_root_error_body_raises() -> None:
    """An {error} body at the root is a root failure too."""
    api = FakeGallery({"": {"error": "Invalid token"}})
    with pytest.raises(RootListingError):
        ContentFingerprintScanner(api).scan()


def test_scan_propagates_configuration_error() -> None:
    """Missing endpoint configuration is not swallowed as a listing failure."""
    api = MagicMock()
    api.list_folder.side_effect = ConfigurationError("file_list_url not configured")
    with pytest.raises(ConfigurationError):
        ContentFingerprintScanner(api).scan()


def test_scan_dedupes_paths_and_cycles() -> None:
    """A folder listed twice (or referencing an ancestor) is visited once; first path wins."""
    api = FakeGallery({
        "": {"folders": [{"name": "a", "path": "a"}, {"name": "a", "path": "a"}], "files": [
            {"name": "x.jpg", "path": "x.jpg", "size": 1, "modified": "m1"},
            {"name": "x.jpg", "path": "x.jpg", "size": 2, "modified": "m2"},
        ]},
        "a": {"folders": [{"name": "a", "path": "a"}], "files": []},
    })
    result = ContentFingerprintScanner(api).scan()
    assert len(result) == 1
    assert result[0].size == 1
    assert api.calls.count("a") == 1


def test_scan_skips_item_with_invalid_size() -> None:
    """A listing item whose size is not a number is skipped; its siblings are still fingerprinted."""
    api = FakeGallery({
        "": {"folders": [{"name": "trips", "path": "trips"}], "files": []},
        "trips": {"folders": [], "files": [
            {"name": "bad.jpg", "path": "trips/bad.jpg", "size": "12 KB", "modified": "m"},
            {"name": "odd.jpg", "path": "trips/odd.jpg", "size": [1], "modified": "m"},
            {"name": "good.jpg", "path": "trips/good.jpg", "size": "42", "modified": "m"},
        ]},
    })
    result = ContentFingerprintScanner(api).scan()
    assert [(fp.path, fp.size) for fp in result] == [("trips/good.jpg", 42)]
