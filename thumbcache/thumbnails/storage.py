"""Thumbnail storage: derived-path naming plus local-filesystem and remote-upload backends.

Both backends expose save / exists / delete over the same relative path, which is
always produced by get_thumbnail_path. No index of artifacts is kept anywhere.
"""

import logging
import posixpath
import re
import unicodedata
from pathlib import Path
from typing import Dict, Optional

from thumbcache.api.client import GalleryAPI

log = logging.getLogger(__name__)

LOCAL_URL_PREFIX = "/api/thumbnails/"

# Size name from '<basename>_<size>.<format>'
_SIZE_SUFFIX = re.compile(r"_([^_.]+)\.\w+$")

CONTENT_TYPES: Dict[str, str] = {
    "webp": "image/webp",
    "avif": "image/avif",
    "jpeg": "image/jpeg",
}


def get_thumbnail_path(original_path: str, size_name: str, fmt: str) -> str:
    """
    Relative location of one derived artifact: '<dir>/<basename>_<size>.<format>'.
    The only implementation of the naming convention; 'a/b/photo.jpg' + 'thumb' + 'webp'
    gives 'a/b/photo_thumb.webp'.
    """
    parts = original_path.replace("\\", "/").strip("/").split("/")
    filename = parts.pop() or "image"
    base_name = posixpath.splitext(filename)[0] or filename
    return "/".join([*parts, f"{base_name}_{size_name}.{fmt}"])


def _is_safe_path_char(c: str) -> bool:
    """True if char is allowed in a path segment (no separators, no control chars)."""
    if c in "/\\" or ord(c) < 32:
        return False
    cat = unicodedata.category(c)
    return not cat.startswith("C")


def _sanitize_segment(segment: str) -> Optional[str]:
    """Return segment if safe, else None. Rejects empty, '..', '.' and control characters."""
    if not segment or segment in (".", ".."):
        return None
    if not all(_is_safe_path_char(c) for c in segment):
        return None
    return segment


class LocalStorage:
    """Thumbnails as files under the cache root, mirroring the gallery folder structure."""

    kind = "local"

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def resolve(self, relative_path: str) -> Path:
        """Resolve a relative path under the cache root. Rejects traversal and unsafe names."""
        resolved = self.root
        for part in relative_path.replace("\\", "/").strip("/").split("/"):
            if not part:
                continue
            safe = _sanitize_segment(part)
            if not safe:
                raise ValueError(f"Unsafe path segment: {part!r}")
            resolved = resolved / safe
        if resolved == self.root:
            raise ValueError("Empty thumbnail path")
        return resolved

    def location(self, relative_path: str) -> str:
        return LOCAL_URL_PREFIX + relative_path.lstrip("/")

    def save(self, relative_path: str, body: bytes, content_type: str) -> str:
        """Write one thumbnail, creating parent folders. Returns its public location."""
        target = self.resolve(relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(body)
        return self.location(relative_path)

    def exists(self, relative_path: str) -> bool:
        try:
            return self.resolve(relative_path).is_file()
        except (OSError, ValueError):
            return False

    def delete(self, relative_path: str) -> bool:
        """
        Delete one thumbnail; returns False if it was not there. Removes now-empty parent
        folders up to (not including) the cache root so deleted gallery folders disappear too.
        """
        target = self.resolve(relative_path)
        if not target.is_file():
            return False
        target.unlink()
        parent = target.parent
        while parent != self.root and parent.exists():
            try:
                if not any(parent.iterdir()):
                    parent.rmdir()
                    parent = parent.parent
                else:
                    break
            except OSError:
                break
        return True

    def clear_all(self) -> int:
        """Delete the whole local tree (files and folders). Returns the number of files deleted."""
        if not self.root.exists():
            return 0
        deleted = 0
        for f in list(self.root.rglob("*")):
            if f.is_file() or f.is_symlink():
                f.unlink(missing_ok=True)
                deleted += 1
        dirs = sorted((d for d in self.root.rglob("*") if d.is_dir()), key=lambda d: -len(d.parts))
        for d in dirs:
            try:
                d.rmdir()
            except OSError as e:
                # A thumbnail written during the clear keeps its folder
                log.warning("Could not remove %s: %s", d, e)
        log.info("Cleared %d thumbnail files under %s", deleted, self.root)
        return deleted

    def stats(self) -> Dict[str, object]:
        """{totalFiles, totalSize, bySize} for the local tree; empty if the root does not exist yet."""
        total_files = 0
        total_size = 0
        by_size: Dict[str, int] = {}
        if self.root.exists():
            for f in self.root.rglob("*"):
                try:
                    if not f.is_file():
                        continue
                    total_size += f.stat().st_size
                except OSError:
                    continue
                total_files += 1
                m = _SIZE_SUFFIX.search(f.name)
                size_name = m.group(1) if m else "unknown"
                by_size[size_name] = by_size.get(size_name, 0) + 1
        return {"totalFiles": total_files, "totalSize": total_size, "bySize": by_size}


class RemoteStorage:
    """Thumbnails uploaded to the gallery file server under 'thumbnails/'."""

    kind = "remote"

    def __init__(self, api: GalleryAPI) -> None:
        self._api = api

    def location(self, relative_path: str) -> str:
        return f"{self._api.gallery_base_url}thumbnails/{relative_path.lstrip('/')}"

    def save(self, relative_path: str, body: bytes, content_type: str) -> str:
        folder, filename = posixpath.split(relative_path.strip("/"))
        self._api.upload_thumbnail(folder, filename, body, content_type)
        return self.location(relative_path)

    def exists(self, relative_path: str) -> bool:
        return self._api.remote_exists(self.location(relative_path))

    def delete(self, relative_path: str) -> bool:
        raise NotImplementedError("Remote thumbnail deletion not implemented")

    def clear_all(self) -> int:
        raise NotImplementedError("Remote thumbnail deletion not implemented")
