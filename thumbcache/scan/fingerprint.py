"""Remote tree scan: per-file fingerprints from cheap metadata (name, size, modified time).

The remote listing is walked level by level: every folder of one depth is listed
concurrently on a bounded pool, then the next depth. A failing subfolder only
drops its own branch; a failing root raises RootListingError so the caller never
mistakes an unreachable gallery for an empty one.
"""

import hashlib
import logging
import posixpath
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Set, Tuple

import httpx

from thumbcache.errors import ConfigurationError, ListingError, RootListingError
from thumbcache.models import FileFingerprint, utcnow

log = logging.getLogger(__name__)

IMAGE_EXTENSIONS: frozenset[str] = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif"})

SCAN_MAX_WORKERS = 4


def is_image(name: str) -> bool:
    """True if the file name has an extension in IMAGE_EXTENSIONS (case-insensitive)."""
    return posixpath.splitext(name)[1].lower() in IMAGE_EXTENSIONS


def content_hash(name: str, size: int, last_modified: str) -> str:
    """Deterministic 16-hex-digit digest of 'name:size:lastModified'. Metadata only, never file bytes."""
    fingerprint = f"{name}:{size}:{last_modified or ''}"
    return hashlib.blake2b(fingerprint.encode("utf-8"), digest_size=8).hexdigest()


def child_path(folder: str, item: Dict[str, Any]) -> str:
    path = item.get("path")
    if path:
        return str(path)
    return posixpath.join(folder, item.get("name", "")) if folder else str(item.get("name", ""))


class ContentFingerprintScanner:
    """Walks the remote gallery through GalleryAPI.list_folder and fingerprints every image."""

    def __init__(
        self,
        api,
        max_workers: int = SCAN_MAX_WORKERS,
        clock: Callable = utcnow,
    ) -> None:
        self._api = api
        self._max_workers = max(1, max_workers)
        self._clock = clock

    def list_folder(self, folder: str) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """List one folder. Returns (folders, files); raises ListingError on any failure."""
        try:
            data = self._api.list_folder(folder)
        except ConfigurationError:
            raise
        except (httpx.HTTPError, ValueError, OSError) as e:
            raise ListingError(f"Listing {folder or '/'} failed: {e}") from e
        if data.get("error"):
            raise ListingError(f"Listing {folder or '/'} failed: {data['error']}")
        return list(data.get("folders") or []), list(data.get("files") or [])

    def _collect(self, folder: str, files: List[Dict[str, Any]], out: Dict[str, FileFingerprint]) -> None:
        checked_at = self._clock()
        for item in files:
            name = str(item.get("name") or posixpath.basename(item.get("path", "")))
            if not is_image(name):
                continue
            path = child_path(folder, item)
            if path in out:
                continue
            try:
                size = int(item.get("size") or 0)
            except (TypeError, ValueError):
                log.warning("Skipping %s: invalid size %r", path, item.get("size"))
                continue
            modified = str(item.get("modified") or "")
            out[path] = FileFingerprint(
                path=path,
                hash=content_hash(name, size, modified),
                size=size,
                last_modified=modified,
                last_checked_at=checked_at,
            )

    def scan(self, root: str = "") -> List[FileFingerprint]:
        """Fingerprint every image under root. Raises RootListingError if root itself cannot be listed."""
        try:
            folders, files = self.list_folder(root)
        except ListingError as e:
            raise RootListingError(str(e)) from e

        found: Dict[str, FileFingerprint] = {}
        self._collect(root, files, found)
        seen: Set[str] = {root}
        frontier = [p for p in (child_path(root, f) for f in folders) if p not in seen]
        skipped = 0

        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            while frontier:
                frontier = list(dict.fromkeys(frontier))
                seen.update(frontier)
                futures = {executor.submit(self.list_folder, folder): folder for folder in frontier}
                frontier = []
                for fut in as_completed(futures):
                    folder = futures[fut]
                    try:
                        sub_folders, sub_files = fut.result()
                    except ListingError as e:
                        skipped += 1
                        log.warning("Skipping folder %s: %s", folder, e)
                        continue
                    self._collect(folder, sub_files, found)
                    for sub in sub_folders:
                        path = child_path(folder, sub)
                        if path not in seen:
                            frontier.append(path)

        log.info("Scanned %d images from %s (%d folders skipped)", len(found), root or "root", skipped)
        return list(found.values())
