"""Pure diff of two fingerprint tables into added / modified / deleted change events."""

from typing import Dict, Iterable, List, Mapping

from thumbcache.models import ChangeEvent, ChangeStats, ChangeType, FileFingerprint, utcnow


def index_by_path(fingerprints: Iterable[FileFingerprint]) -> Dict[str, FileFingerprint]:
    """Map path -> fingerprint; the first occurrence of a path wins."""
    out: Dict[str, FileFingerprint] = {}
    for fp in fingerprints:
        out.setdefault(fp.path, fp)
    return out


def detect_changes(
    old: Mapping[str, FileFingerprint],
    new: Mapping[str, FileFingerprint],
) -> List[ChangeEvent]:
    """
    Compare two tables keyed by path. In new only => added; in both with a different
    hash => modified; in old only => deleted. All events share one timestamp.
    """
    now = utcnow()
    changes: List[ChangeEvent] = []
    for path, current in new.items():
        previous = old.get(path)
        if previous is None:
            changes.append(ChangeEvent(
                timestamp=now,
                type=ChangeType.ADDED,
                path=path,
                new_hash=current.hash,
                details=f"New file: {path}",
            ))
        elif previous.hash != current.hash:
            changes.append(ChangeEvent(
                timestamp=now,
                type=ChangeType.MODIFIED,
                path=path,
                old_hash=previous.hash,
                new_hash=current.hash,
                details=f"Modified: {path}",
            ))
    for path, previous in old.items():
        if path not in new:
            changes.append(ChangeEvent(
                timestamp=now,
                type=ChangeType.DELETED,
                path=path,
                old_hash=previous.hash,
                details=f"Deleted: {path}",
            ))
    return changes


def change_stats(events: Iterable[ChangeEvent]) -> ChangeStats:
    """Count events per type."""
    stats = ChangeStats()
    for event in events:
        if event.type is ChangeType.ADDED:
            stats.added += 1
        elif event.type is ChangeType.MODIFIED:
            stats.modified += 1
        elif event.type is ChangeType.DELETED:
            stats.deleted += 1
        stats.total += 1
    return stats
