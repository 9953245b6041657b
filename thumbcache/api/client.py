"""HTTP client for the remote gallery: folder listing, original fetch, thumbnail upload."""

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import httpx

from thumbcache.config import Settings, get_settings
from thumbcache.errors import ConfigurationError

log = logging.getLogger(__name__)


class GalleryAPI:
    """
    Client for the gallery file server: list folders, fetch originals, upload and probe thumbnails.
    Listing and (in protected mode) fetching use HMAC-signed, time-limited URLs.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    def _require(self, name: str) -> str:
        """Return a configured endpoint/secret or fail fast (never a silent no-op)."""
        value = (getattr(self._settings, name) or "").strip()
        if not value:
            raise ConfigurationError(f"{name} not configured (THUMBCACHE_{name.upper()})")
        return value

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json", "User-Agent": self._settings.user_agent}

    def _sign(self, message: str) -> str:
        secret = self._settings.file_proxy_secret
        if self._settings.file_protection_enabled and len(secret) < 32:
            raise ConfigurationError(
                "file_proxy_secret must be at least 32 characters when file protection is enabled"
            )
        return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    def _expires(self) -> int:
        return int(time.time()) + self._settings.signed_url_expiry_seconds

    @property
    def gallery_base_url(self) -> str:
        """Gallery base URL with exactly one trailing slash."""
        return self._require("gallery_base_url").rstrip("/") + "/"

    def list_url(self, folder: str = "") -> str:
        """Signed listing URL: token = HMAC-SHA256('list|folder|expires')."""
        base = self._require("file_list_url")
        expires = self._expires()
        token = self._sign(f"list|{folder}|{expires}")
        return f"{base}?{urlencode({'folder': folder, 'token': token, 'expires': expires})}"

    def signed_file_url(self, file_path: str) -> str:
        """Signed proxy URL for one original: token = HMAC-SHA256('path|expires')."""
        base = self._require("file_proxy_url")
        expires = self._expires()
        token = self._sign(f"{file_path}|{expires}")
        return f"{base}?{urlencode({'file': file_path, 'token': token, 'expires': expires})}"

    def original_url(self, file_path: str) -> str:
        """Fetchable URL for an original; signed when file protection is enabled."""
        if self._settings.file_protection_enabled:
            return self.signed_file_url(file_path)
        return self.gallery_base_url + quote(file_path.lstrip("/"))

    def list_folder(self, folder: str = "") -> Dict[str, Any]:
        """GET the listing for one folder. Returns {folders, files} or {error}. Raises on HTTP errors."""
        log.debug("list_folder folder=%r", folder)
        with httpx.Client(timeout=self._settings.list_timeout) as client:
            r = client.get(self.list_url(folder), headers=self._headers())
            r.raise_for_status()
            data = r.json()
            if not isinstance(data, dict):
                return {"error": f"Unexpected listing response type: {type(data).__name__}"}
            return data

    def fetch_original(self, file_path: str) -> bytes:
        """GET original image bytes. Raises httpx.HTTPStatusError (e.g. 404) or httpx.TimeoutException."""
        url = self.original_url(file_path)
        log.debug("fetch_original path=%s", file_path)
        with httpx.Client(timeout=self._settings.fetch_timeout, follow_redirects=True) as client:
            r = client.get(url, headers={"User-Agent": self._settings.user_agent})
            r.raise_for_status()
            return r.content

    def upload_thumbnail(self, folder: str, filename: str, body: bytes, content_type: str) -> None:
        """POST multipart upload of one thumbnail into 'thumbnails/<folder>' on the file server."""
        upload_url = self._require("file_upload_url")
        log.debug("upload_thumbnail folder=%s filename=%s size=%d", folder, filename, len(body))
        with httpx.Client(timeout=self._settings.upload_timeout) as client:
            r = client.post(
                upload_url,
                files={"file": (filename, body, content_type)},
                data={"path": f"thumbnails/{folder}".rstrip("/"), "secret": self._settings.file_proxy_secret},
                headers={"User-Agent": self._settings.user_agent},
            )
            r.raise_for_status()

    def remote_exists(self, url: str) -> bool:
        """HEAD probe. Any error or non-2xx status counts as missing."""
        try:
            with httpx.Client(timeout=self._settings.probe_timeout) as client:
                r = client.head(url, headers={"User-Agent": self._settings.user_agent})
                return r.is_success
        except httpx.HTTPError as e:
            log.debug("HEAD %s failed: %s", url, e)
            return False
