"""Durable cache state: config, current fingerprints and run state, and daily history files.

Layout under the data directory:
    cache-config.json                 scheduler / thumbnail / email / cleanup config
    history/current.json              fingerprints, last scan run, recent history and changes
    history/cache-YYYY-MM-DD.json     append-only history and changes of one UTC day

Every write is atomic (temp file in the same directory, fsync, os.replace), so a crash
leaves either the old or the new file, never a torn one.
"""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from thumbcache.config import Settings
from thumbcache.models import (
    CacheConfig,
    ChangeEvent,
    CleanupResult,
    CurrentState,
    DailyHistory,
    EmailNotificationConfig,
    EmailNotificationConfigPatch,
    FileFingerprint,
    HistoryCleanupConfig,
    HistoryCleanupConfigPatch,
    HistoryEntry,
    LastRebuiltFolder,
    SchedulerConfig,
    SchedulerConfigPatch,
    ScanRun,
    ThumbnailConfig,
    ThumbnailConfigPatch,
    as_utc,
    utcnow,
)
from thumbcache.scan.changes import index_by_path

log = logging.getLogger(__name__)

CONFIG_FILENAME = "cache-config.json"
CURRENT_FILENAME = "current.json"
DAILY_PREFIX = "cache-"

MAX_HISTORY_ENTRIES = 500
MAX_CHANGE_ENTRIES = 1000

CONFIG_KEYS = ("schedulerConfig", "thumbnailConfig", "emailNotificationConfig", "historyCleanupConfig")
# State that older installs kept inside cache-config.json
LEGACY_STATE_KEYS = (
    "fileHashes",
    "history",
    "changeHistory",
    "lastSchedulerRun",
    "lastScanDuration",
    "lastScanChanges",
    "lastRebuiltFolder",
)

M = TypeVar("M", bound=BaseModel)


def _atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to path atomically. On failure the temp file is removed and path is untouched."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def _read_json(path: Path) -> Dict[str, Any]:
    """Read a JSON object; missing, unreadable or corrupt files read as {} (logged)."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        log.warning("Cannot read %s, using defaults: %s", path, e)
        return {}
    if not isinstance(data, dict):
        log.warning("Unexpected content in %s, using defaults", path)
        return {}
    return data


def _parse_list(model: Type[M], items: Any) -> List[M]:
    """Validate a list of records, dropping (and logging) the invalid ones."""
    out: List[M] = []
    for item in items if isinstance(items, list) else []:
        try:
            out.append(model.model_validate(item))
        except ValidationError as e:
            log.warning("Dropping invalid %s record: %s", model.__name__, e.errors()[:1])
    return out


def _day(ts: datetime) -> str:
    return as_utc(ts).strftime("%Y-%m-%d")


def _newest_first(entries: Iterable[M]) -> List[M]:
    return sorted(entries, key=lambda e: as_utc(e.timestamp), reverse=True)


def _merge_by_id(existing: List[M], new: Iterable[M]) -> List[M]:
    seen = {e.id for e in existing}
    merged = list(existing)
    for e in new:
        if e.id not in seen:
            seen.add(e.id)
            merged.append(e)
    return merged


class CacheStateStore:
    """
    Owns all persisted cache state. One re-entrant lock per instance serializes every
    read-modify-write; there is no cross-process locking.
    """

    def __init__(self, data_dir: Path, clock: Callable[[], datetime] = utcnow) -> None:
        self.data_dir = Path(data_dir)
        self.history_dir = self.data_dir / "history"
        self.config_path = self.data_dir / CONFIG_FILENAME
        self.current_path = self.history_dir / CURRENT_FILENAME
        self._clock = clock
        self._lock = threading.RLock()
        self._migrated = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheStateStore":
        return cls(settings.data_dir)

    # --- migration ---

    def _ensure_migrated(self) -> None:
        with self._lock:
            if self._migrated:
                return
            raw = _read_json(self.config_path)
            if any(key in raw for key in LEGACY_STATE_KEYS):
                self._migrate_legacy(raw)
            self._migrated = True

    def _migrate_legacy(self, raw: Dict[str, Any]) -> None:
        """Move state keys out of cache-config.json into current.json and the daily files."""
        history = _newest_first(_parse_list(HistoryEntry, raw.get("history")))
        changes = _newest_first(_parse_list(ChangeEvent, raw.get("changeHistory")))

        self._append_daily(history, changes)

        # current.json already present means an earlier migration stopped before the config rewrite
        if not self.current_path.exists():
            last_rebuilt = None
            if isinstance(raw.get("lastRebuiltFolder"), dict):
                try:
                    last_rebuilt = LastRebuiltFolder.model_validate(raw["lastRebuiltFolder"])
                except ValidationError as e:
                    log.warning("Dropping invalid lastRebuiltFolder: %s", e.errors()[:1])
            state = CurrentState(
                fingerprints=_parse_list(FileFingerprint, raw.get("fileHashes")),
                scan_run=ScanRun(
                    last_run_at=raw.get("lastSchedulerRun"),
                    last_duration_ms=raw.get("lastScanDuration"),
                    last_change_count=raw.get("lastScanChanges") or 0,
                ),
                history=history[:MAX_HISTORY_ENTRIES],
                changes=changes[:MAX_CHANGE_ENTRIES],
                last_rebuilt_folder=last_rebuilt,
            )
            _atomic_write_json(self.current_path, state.to_json_dict())

        _atomic_write_json(self.config_path, {k: raw[k] for k in CONFIG_KEYS if k in raw})
        log.info(
            "Migrated legacy cache state: %d fingerprints, %d history entries, %d changes",
            len(raw.get("fileHashes") or []),
            len(history),
            len(changes),
        )

    # --- config region ---

    def get_config(self) -> CacheConfig:
        self._ensure_migrated()
        with self._lock:
            raw = _read_json(self.config_path)
            try:
                return CacheConfig.model_validate(raw)
            except ValidationError as e:
                log.warning("Invalid %s, using defaults: %s", self.config_path, e.errors()[:1])
                return CacheConfig()

    def _update_section(self, attr: str, patch: Any) -> Any:
        with self._lock:
            config = self.get_config()
            section = patch.apply(getattr(config, attr))
            config = config.model_copy(update={attr: section})
            _atomic_write_json(self.config_path, config.to_json_dict())
            return section

    def update_scheduler_config(self, patch: Union[SchedulerConfigPatch, Dict[str, Any]]) -> SchedulerConfig:
        return self._update_section("scheduler_config", SchedulerConfigPatch.model_validate(patch))

    def update_thumbnail_config(self, patch: Union[ThumbnailConfigPatch, Dict[str, Any]]) -> ThumbnailConfig:
        return self._update_section("thumbnail_config", ThumbnailConfigPatch.model_validate(patch))

    def update_email_config(
        self, patch: Union[EmailNotificationConfigPatch, Dict[str, Any]]
    ) -> EmailNotificationConfig:
        return self._update_section("email_notification_config", EmailNotificationConfigPatch.model_validate(patch))

    def update_cleanup_config(self, patch: Union[HistoryCleanupConfigPatch, Dict[str, Any]]) -> HistoryCleanupConfig:
        return self._update_section("history_cleanup_config", HistoryCleanupConfigPatch.model_validate(patch))

    # --- current region ---

    def _read_current(self) -> CurrentState:
        raw = _read_json(self.current_path)
        try:
            return CurrentState.model_validate(raw)
        except ValidationError as e:
            log.warning("Invalid %s, using defaults: %s", self.current_path, e.errors()[:1])
            return CurrentState()

    def _write_current(self, state: CurrentState) -> None:
        _atomic_write_json(self.current_path, state.to_json_dict())

    def load_fingerprints(self) -> Dict[str, FileFingerprint]:
        """Persisted fingerprint table keyed by path."""
        self._ensure_migrated()
        with self._lock:
            return index_by_path(self._read_current().fingerprints)

    def get_scan_run(self) -> ScanRun:
        self._ensure_migrated()
        with self._lock:
            return self._read_current().scan_run

    def record_scan(
        self,
        fingerprints: Iterable[FileFingerprint],
        changes: List[ChangeEvent],
        duration_ms: int,
        ran_at: Optional[datetime] = None,
    ) -> None:
        """
        Replace the fingerprint table and scan run metadata and prepend the change events,
        all in one atomic write of current.json. The changes are then appended to the daily file.
        """
        self._ensure_migrated()
        with self._lock:
            state = self._read_current()
            state.fingerprints = list(fingerprints)
            state.scan_run = ScanRun(
                last_run_at=ran_at or self._clock(),
                last_duration_ms=duration_ms,
                last_change_count=len(changes),
            )
            state.changes = (list(reversed(changes)) + state.changes)[:MAX_CHANGE_ENTRIES]
            self._write_current(state)
            if changes:
                self._append_daily([], changes)

    def append_history(self, entry: HistoryEntry) -> HistoryEntry:
        self._ensure_migrated()
        with self._lock:
            state = self._read_current()
            state.history = [entry, *state.history][:MAX_HISTORY_ENTRIES]
            self._write_current(state)
            self._append_daily([entry], [])
        return entry

    def get_history(self, limit: int = 50) -> List[HistoryEntry]:
        """Most recent history entries, newest first."""
        self._ensure_migrated()
        with self._lock:
            return self._read_current().history[:limit]

    def get_changes(self, limit: int = 100) -> List[ChangeEvent]:
        """Most recent change events, newest first."""
        self._ensure_migrated()
        with self._lock:
            return self._read_current().changes[:limit]

    def set_last_rebuilt_folder(self, record: LastRebuiltFolder) -> None:
        self._ensure_migrated()
        with self._lock:
            state = self._read_current()
            state.last_rebuilt_folder = record
            self._write_current(state)

    def get_last_rebuilt_folder(self) -> Optional[LastRebuiltFolder]:
        self._ensure_migrated()
        with self._lock:
            return self._read_current().last_rebuilt_folder

    # --- daily region ---

    def _daily_path(self, date: str) -> Path:
        return self.history_dir / f"{DAILY_PREFIX}{date}.json"

    def get_daily(self, date: str) -> DailyHistory:
        """One day's log; empty if the file is missing or unreadable."""
        self._ensure_migrated()
        with self._lock:
            return self._read_daily(date)

    def _read_daily(self, date: str) -> DailyHistory:
        raw = _read_json(self._daily_path(date))
        return DailyHistory(
            date=date,
            history=_parse_list(HistoryEntry, raw.get("history")),
            changes=_parse_list(ChangeEvent, raw.get("changes")),
        )

    def _append_daily(self, history: Iterable[HistoryEntry], changes: Iterable[ChangeEvent]) -> None:
        by_date: Dict[str, Dict[str, list]] = {}
        for entry in history:
            by_date.setdefault(_day(entry.timestamp), {"history": [], "changes": []})["history"].append(entry)
        for change in changes:
            by_date.setdefault(_day(change.timestamp), {"history": [], "changes": []})["changes"].append(change)
        for date in sorted(by_date):
            day = self._read_daily(date)
            day.history = _merge_by_id(day.history, by_date[date]["history"])
            day.changes = _merge_by_id(day.changes, by_date[date]["changes"])
            _atomic_write_json(self._daily_path(date), day.to_json_dict())

    def list_daily_dates(self) -> List[str]:
        """Dates (YYYY-MM-DD) that have a daily file, newest first."""
        self._ensure_migrated()
        if not self.history_dir.exists():
            return []
        dates = [
            p.name[len(DAILY_PREFIX):-len(".json")]
            for p in self.history_dir.glob(f"{DAILY_PREFIX}*.json")
        ]
        return sorted(dates, reverse=True)

    # --- retention ---

    def cleanup_history(self, retention_hours: Optional[int] = None) -> CleanupResult:
        """
        Drop history and change entries at or before now - retention_hours from the current
        region and delete daily files whose whole day lies before the cutoff.
        None means the configured retention.
        """
        self._ensure_migrated()
        with self._lock:
            if retention_hours is None:
                retention_hours = self.get_config().history_cleanup_config.retention_hours
            cutoff = as_utc(self._clock()) - timedelta(hours=retention_hours)

            state = self._read_current()
            history = [e for e in state.history if as_utc(e.timestamp) > cutoff]
            changes = [c for c in state.changes if as_utc(c.timestamp) > cutoff]
            result = CleanupResult(
                history_removed=len(state.history) - len(history),
                changes_removed=len(state.changes) - len(changes),
            )
            if result.history_removed or result.changes_removed:
                state.history = history
                state.changes = changes
                self._write_current(state)

            cutoff_day = _day(cutoff)
            for date in self.list_daily_dates():
                if date < cutoff_day:
                    try:
                        self._daily_path(date).unlink()
                        result.daily_files_removed += 1
                    except FileNotFoundError:
                        pass

        log.info(
            "History cleanup (%dh): removed %d entries, %d changes, %d daily files",
            retention_hours,
            result.history_removed,
            result.changes_removed,
            result.daily_files_removed,
        )
        return result

    def clear_all_history(self) -> None:
        """Empty the recent history and changes and delete every daily file. Fingerprints are kept."""
        self._ensure_migrated()
        with self._lock:
            state = self._read_current()
            state.history = []
            state.changes = []
            self._write_current(state)
            for date in self.list_daily_dates():
                self._daily_path(date).unlink(missing_ok=True)
        log.info("Cleared all cache history")
