"""Process settings from environment (no hardcoded secrets or endpoints)."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings from env (THUMBCACHE_*)."""

    model_config = SettingsConfigDict(env_prefix="THUMBCACHE_", extra="ignore")

    # State files (cache-config.json, history/) and the local thumbnail tree
    data_dir: Path = Path("./data")
    cache_root: Path = Path("./data/thumbnails")

    # Remote gallery. Empty = not configured; callers needing it fail fast.
    gallery_base_url: str = ""
    file_list_url: str = ""
    file_proxy_url: str = ""
    file_upload_url: str = ""
    file_proxy_secret: str = ""
    file_protection_enabled: bool = False
    signed_url_expiry_seconds: int = 7200

    # Outbound HTTP
    user_agent: str = "ContentBrowser/1.0"
    list_timeout: float = 30.0
    fetch_timeout: float = 60.0
    upload_timeout: float = 30.0
    probe_timeout: float = 5.0

    # Concurrency
    list_workers: int = 4
    thumbnail_workers: int = 2
    encode_concurrency: int = 2
    tick_seconds: int = 60

    # SMTP (rebuild / error notifications)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    admin_email: str = ""

    # Logging (empty log_file = stderr only; level DEBUG|INFO|WARNING|ERROR)
    log_level: str = "INFO"
    log_file: str = ""

    @property
    def history_dir(self) -> Path:
        """Directory holding current.json and the daily cache-YYYY-MM-DD.json files."""
        return self.data_dir / "history"


def get_settings() -> Settings:
    """Return application settings."""
    return Settings()
