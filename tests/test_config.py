"""Tests for settings from environment and model defaults."""

from pathlib import Path

from thumbcache.config import Settings
from thumbcache.models import CacheConfig, EmailNotificationConfig, ThumbnailConfig


def test_settings_read_env(monkeypatch, tmp_path: Path) -> None:
    """THUMBCACHE_* environment variables override defaults."""
    monkeypatch.setenv("THUMBCACHE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("THUMBCACHE_FILE_PROTECTION_ENABLED", "true")
    monkeypatch.setenv("THUMBCACHE_THUMBNAIL_WORKERS", "5")
    settings = Settings()
    assert settings.data_dir == tmp_path
    assert settings.history_dir == tmp_path / "history"
    assert settings.file_protection_enabled is True
    assert settings.thumbnail_workers == 5


def test_settings_defaults(monkeypatch) -> None:
    """Timeouts and concurrency defaults match the engine's documented limits."""
    monkeypatch.delenv("THUMBCACHE_GALLERY_BASE_URL", raising=False)
    settings = Settings()
    assert (settings.list_timeout, settings.fetch_timeout, settings.upload_timeout, settings.probe_timeout) == (
        30.0, 60.0, 30.0, 5.0,
    )
    assert settings.list_workers == 4
    assert settings.encode_concurrency == 2
    assert settings.tick_seconds == 60
    assert settings.signed_url_expiry_seconds == 7200
    assert settings.gallery_base_url == ""


def test_config_json_uses_camel_case() -> None:
    """Persisted config uses camelCase keys."""
    data = CacheConfig().to_json_dict()
    assert set(data) == {"schedulerConfig", "thumbnailConfig", "emailNotificationConfig", "historyCleanupConfig"}
    assert data["schedulerConfig"]["workHours"] == {"startHour": 9, "endHour": 17, "intervalMinutes": 30}
    assert data["schedulerConfig"]["offHours"] == {"enabled": False, "intervalMinutes": None}
    assert data["historyCleanupConfig"] == {"autoCleanupEnabled": True, "retentionHours": 24}


def test_default_sizes_are_independent_copies() -> None:
    """Mutating one config's sizes does not leak into another."""
    a = ThumbnailConfig()
    a.sizes[0].width = 10
    assert ThumbnailConfig().sizes[0].width == 300


def test_email_defaults() -> None:
    """Notifications are disabled by default and use the admin address."""
    cfg = EmailNotificationConfig()
    assert cfg.enabled is False
    assert cfg.email == ""
    assert cfg.notify_on_rebuild is True
    assert cfg.notify_on_error is True
