"""Thumbnail pipeline: fetch one original, render every configured size, save through a backend.

Sizes are independent: a failing encode or write loses only that size. A file that
cannot be decoded at all fails as a whole with InvalidImageError.
"""

import io
import logging
import threading
from typing import Dict, Optional, Union

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError

from thumbcache.api.client import GalleryAPI
from thumbcache.errors import InvalidImageError
from thumbcache.models import ThumbnailConfig, ThumbnailSize
from thumbcache.thumbnails.storage import CONTENT_TYPES, LocalStorage, RemoteStorage, get_thumbnail_path

log = logging.getLogger(__name__)

# Pillow encoder names for the configured output formats
PIL_FORMATS: Dict[str, str] = {
    "webp": "WEBP",
    "avif": "AVIF",
    "jpeg": "JPEG",
}

Backend = Union[LocalStorage, RemoteStorage]


def decode_image(body: bytes) -> Image.Image:
    """Decode original bytes, apply EXIF orientation. Raises InvalidImageError if unusable."""
    try:
        img = Image.open(io.BytesIO(body))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise InvalidImageError(f"Cannot decode image: {e}") from e
    if not img.width or not img.height:
        raise InvalidImageError("Invalid image metadata (zero width or height)")
    return ImageOps.exif_transpose(img)


def render_size(image: Image.Image, size: ThumbnailSize, fmt: str) -> bytes:
    """Fit inside size.width x size.height (never upscale) and encode to fmt at size.quality."""
    resized = image.copy()
    resized.thumbnail((size.width, size.height), Image.Resampling.LANCZOS)
    if fmt == "jpeg":
        if resized.mode != "RGB":
            resized = resized.convert("RGB")
    elif resized.mode not in ("RGB", "RGBA"):
        has_alpha = resized.mode in ("LA", "PA") or "transparency" in resized.info
        resized = resized.convert("RGBA" if has_alpha else "RGB")
    out = io.BytesIO()
    resized.save(out, format=PIL_FORMATS[fmt], quality=size.quality)
    return out.getvalue()


class ThumbnailPipeline:
    """Produces the derived sizes for originals and routes them to local or remote storage."""

    def __init__(
        self,
        api: GalleryAPI,
        local: LocalStorage,
        remote: Optional[RemoteStorage] = None,
        encode_concurrency: int = 2,
    ) -> None:
        self._api = api
        self.local = local
        self.remote = remote or RemoteStorage(api)
        self._encode_slots = threading.BoundedSemaphore(max(1, encode_concurrency))

    def backend_for(self, storage: str) -> Backend:
        return self.local if storage == "local" else self.remote

    def _render(self, image: Image.Image, size: ThumbnailSize, fmt: str) -> bytes:
        with self._encode_slots:
            return render_size(image, size, fmt)

    def generate_thumbnails(self, original_path: str, config: Optional[ThumbnailConfig] = None) -> Dict[str, str]:
        """
        Generate every configured size for one original. Returns {sizeName: location} for
        the sizes actually produced; empty if the original is gone (404).
        Raises InvalidImageError for undecodable originals and httpx errors for other fetch failures.
        """
        config = config or ThumbnailConfig()
        try:
            body = self._api.fetch_original(original_path)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                log.warning("File not found on server (404), skipping: %s", original_path)
                return {}
            raise
        image = decode_image(body)
        backend = self.backend_for(config.storage)
        content_type = CONTENT_TYPES[config.format]

        results: Dict[str, str] = {}
        for size in config.sizes:
            rel = get_thumbnail_path(original_path, size.name, config.format)
            try:
                data = self._render(image, size, config.format)
                results[size.name] = backend.save(rel, data, content_type)
            except Exception as e:
                log.error("Error generating %s for %s: %s", size.name, original_path, e)
        if results:
            log.info("Generated %d thumbnails for %s", len(results), original_path)
        return results

    def thumbnail_exists(self, original_path: str, size_name: str, fmt: str, storage: str = "local") -> bool:
        rel = get_thumbnail_path(original_path, size_name, fmt)
        return self.backend_for(storage).exists(rel)

    def thumbnail_url(self, original_path: str, size_name: str, config: ThumbnailConfig) -> str:
        """Location of the cached size if present, else the original's URL."""
        backend = self.backend_for(config.storage)
        rel = get_thumbnail_path(original_path, size_name, config.format)
        if backend.exists(rel):
            return backend.location(rel)
        return self._api.original_url(original_path)

    def delete_thumbnails(self, original_path: str, config: ThumbnailConfig) -> int:
        """Delete every configured size of one original. Returns how many files were removed."""
        backend = self.backend_for(config.storage)
        removed = 0
        for size in config.sizes:
            rel = get_thumbnail_path(original_path, size.name, config.format)
            if backend.delete(rel):
                log.debug("Deleted thumbnail: %s", rel)
                removed += 1
        return removed

    def clear_all_thumbnails(self) -> int:
        return self.local.clear_all()
