"""Pytest configuration: isolated settings and engine wiring for tests."""

import os
import tempfile
from pathlib import Path

import pytest

# Set before thumbcache.config is used so a stray get_settings() never touches ./data
_tmp = tempfile.mkdtemp(prefix="thumbcache_test_")
os.environ.setdefault("THUMBCACHE_DATA_DIR", _tmp)
os.environ.setdefault("THUMBCACHE_CACHE_ROOT", os.path.join(_tmp, "thumbnails"))
os.environ.setdefault("THUMBCACHE_GALLERY_BASE_URL", "https://gallery.test/")
os.environ.setdefault("THUMBCACHE_FILE_LIST_URL", "https://gallery.test/list.php")


@pytest.fixture
def settings(tmp_path: Path):
    """Settings pointing at a per-test data dir and a fake gallery."""
    from thumbcache.config import Settings

    return Settings(
        data_dir=tmp_path / "data",
        cache_root=tmp_path / "data" / "thumbnails",
        gallery_base_url="https://gallery.test/",
        file_list_url="https://gallery.test/list.php",
        file_proxy_url="https://gallery.test/file-proxy.php",
        file_upload_url="https://gallery.test/upload.php",
        file_proxy_secret="s" * 32,
        smtp_host="smtp.test",
        smtp_from="cache@gallery.test",
        admin_email="admin@gallery.test",
        thumbnail_workers=2,
        tick_seconds=1,
    )


@pytest.fixture
def store(settings):
    """Empty CacheStateStore under tmp_path."""
    from thumbcache.state.store import CacheStateStore

    return CacheStateStore.from_settings(settings)
