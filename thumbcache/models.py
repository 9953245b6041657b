"""Pydantic models: fingerprints, change events, history, config sections and their patches.

Persisted JSON uses camelCase keys (the layout older installs already have on
disk); attributes are snake_case. Legacy key spellings are accepted on read.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ThumbnailFormat = Literal["webp", "avif", "jpeg"]
StorageKind = Literal["local", "remote"]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(ts: datetime) -> datetime:
    """Aware UTC copy of ts; naive timestamps from older state files are taken as UTC."""
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)


def new_id(prefix: str) -> str:
    """Unique id for history and change records, e.g. 'hist_3f9c0a1b2c4d'."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _legacy(name: str, *legacy: str) -> Dict[str, Any]:
    """Field kwargs accepting the camelCase key, the attribute name and legacy keys."""
    camel = to_camel(name)
    return {
        "validation_alias": AliasChoices(camel, name, *legacy),
        "serialization_alias": camel,
    }


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        """Dump for persistence (camelCase, JSON-safe values)."""
        return self.model_dump(mode="json", by_alias=True)


# --- Scan state ---


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class HistoryAction(str, Enum):
    SCAN_STARTED = "scan_started"
    SCAN_COMPLETED = "scan_completed"
    CHANGES_DETECTED = "changes_detected"
    THUMBNAILS_GENERATED = "thumbnails_generated"
    ERROR = "error"


class FileFingerprint(_Model):
    """Identity of one remote image derived from cheap metadata (name, size, modified)."""

    path: str
    hash: str
    size: int = 0
    last_modified: str = ""
    last_checked_at: datetime = Field(default_factory=utcnow, **_legacy("last_checked_at", "lastChecked"))


class ChangeEvent(_Model):
    """One classified difference between two fingerprint tables. Immutable."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("change"))
    timestamp: datetime = Field(default_factory=utcnow)
    type: ChangeType
    path: str
    old_hash: Optional[str] = None
    new_hash: Optional[str] = None
    details: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _accept_legacy_type(cls, value: Any) -> Any:
        # Older state files used file_added / file_modified / file_deleted
        if isinstance(value, str) and value.startswith("file_"):
            return value[len("file_"):]
        return value


class HistoryEntry(_Model):
    id: str = Field(default_factory=lambda: new_id("hist"))
    timestamp: datetime = Field(default_factory=utcnow)
    action: HistoryAction
    details: str = ""
    duration_ms: Optional[int] = Field(default=None, **_legacy("duration_ms", "duration"))
    affected_paths: Optional[List[str]] = None


class ScanRun(_Model):
    """Metadata of the most recent scan. One mutable record, not a log."""

    last_run_at: Optional[datetime] = None
    last_duration_ms: Optional[int] = None
    last_change_count: int = 0


class LastRebuiltFolder(_Model):
    path: str
    timestamp: datetime = Field(default_factory=utcnow)
    files_processed: int = 0
    thumbnails_generated: int = 0


class CurrentState(_Model):
    """history/current.json: fingerprints, last run, recent history and changes (newest first)."""

    fingerprints: List[FileFingerprint] = Field(default_factory=list)
    scan_run: ScanRun = Field(default_factory=ScanRun)
    history: List[HistoryEntry] = Field(default_factory=list)
    changes: List[ChangeEvent] = Field(default_factory=list)
    last_rebuilt_folder: Optional[LastRebuiltFolder] = None


class DailyHistory(_Model):
    """history/cache-YYYY-MM-DD.json: append-only log of one UTC day."""

    date: str
    history: List[HistoryEntry] = Field(default_factory=list)
    changes: List[ChangeEvent] = Field(default_factory=list)


# --- Config sections ---


class WorkHours(_Model):
    start_hour: int = Field(default=9, ge=0, le=24, **_legacy("start_hour", "start"))
    end_hour: int = Field(default=17, ge=0, le=24, **_legacy("end_hour", "end"))
    interval_minutes: int = Field(default=30, gt=0)


class OffHours(_Model):
    enabled: bool = False
    # None = never scan outside work hours
    interval_minutes: Optional[int] = Field(default=None, gt=0)


class SchedulerConfig(_Model):
    enabled: bool = False
    work_hours: WorkHours = Field(default_factory=WorkHours)
    off_hours: OffHours = Field(default_factory=OffHours)
    timezone: str = "Europe/Warsaw"


class ThumbnailSize(_Model):
    name: str
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    quality: int = Field(default=80, ge=1, le=100)


DEFAULT_THUMBNAIL_SIZES = (
    ThumbnailSize(name="thumb", width=300, height=300, quality=80),
    ThumbnailSize(name="medium", width=800, height=800, quality=85),
    ThumbnailSize(name="large", width=1920, height=1920, quality=90),
)


class ThumbnailConfig(_Model):
    sizes: List[ThumbnailSize] = Field(default_factory=lambda: [s.model_copy() for s in DEFAULT_THUMBNAIL_SIZES])
    format: ThumbnailFormat = "webp"
    storage: StorageKind = "local"


class EmailNotificationConfig(_Model):
    enabled: bool = False
    email: str = ""  # empty = use the admin email from settings
    notify_on_rebuild: bool = True
    notify_on_error: bool = True


class HistoryCleanupConfig(_Model):
    auto_cleanup_enabled: bool = True
    retention_hours: int = Field(default=24, gt=0)


class CacheConfig(_Model):
    """The config region of the state store (cache-config.json)."""

    scheduler_config: SchedulerConfig = Field(default_factory=SchedulerConfig)
    thumbnail_config: ThumbnailConfig = Field(default_factory=ThumbnailConfig)
    email_notification_config: EmailNotificationConfig = Field(default_factory=EmailNotificationConfig)
    history_cleanup_config: HistoryCleanupConfig = Field(default_factory=HistoryCleanupConfig)


# --- Config patches: every field optional, only explicitly set fields are applied ---


class _Patch(_Model):
    # Fields where an explicit None is a real value rather than "leave unchanged"
    nullable_fields: ClassVar[FrozenSet[str]] = frozenset()

    def _updates(self) -> Dict[str, Any]:
        """Explicitly set fields, minus Nones the target section cannot hold."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if getattr(self, name) is not None or name in self.nullable_fields
        }

    def apply(self, current: Any) -> Any:
        """Return a new, validated copy of ``current`` with this patch applied."""
        data = current.model_dump()
        for name, value in self._updates().items():
            if isinstance(value, _Patch):
                value = value.apply(getattr(current, name)).model_dump()
            elif isinstance(value, list):
                value = [v.model_dump() if isinstance(v, BaseModel) else v for v in value]
            data[name] = value
        return type(current).model_validate(data)


class WorkHoursPatch(_Patch):
    start_hour: Optional[int] = None
    end_hour: Optional[int] = None
    interval_minutes: Optional[int] = None


class OffHoursPatch(_Patch):
    nullable_fields: ClassVar[FrozenSet[str]] = frozenset({"interval_minutes"})

    enabled: Optional[bool] = None
    interval_minutes: Optional[int] = None


class SchedulerConfigPatch(_Patch):
    enabled: Optional[bool] = None
    work_hours: Optional[WorkHoursPatch] = None
    off_hours: Optional[OffHoursPatch] = None
    timezone: Optional[str] = None


class ThumbnailConfigPatch(_Patch):
    sizes: Optional[List[ThumbnailSize]] = None
    format: Optional[ThumbnailFormat] = None
    storage: Optional[StorageKind] = None


class EmailNotificationConfigPatch(_Patch):
    enabled: Optional[bool] = None
    email: Optional[str] = None
    notify_on_rebuild: Optional[bool] = None
    notify_on_error: Optional[bool] = None


class HistoryCleanupConfigPatch(_Patch):
    auto_cleanup_enabled: Optional[bool] = None
    retention_hours: Optional[int] = None


# --- Operation results ---


class ChangeStats(_Model):
    added: int = 0
    modified: int = 0
    deleted: int = 0
    total: int = 0


class ScanResult(_Model):
    success: bool
    changes: int = 0
    duration_ms: int = 0
    error: Optional[str] = None


class RegenerateResult(_Model):
    success: bool
    generated: int = 0
    failed: int = 0
    duration_ms: int = 0


class FolderRebuildResult(_Model):
    success: bool
    files_processed: int = 0
    thumbnails_generated: int = 0
    duration_ms: int = 0


class CleanupResult(_Model):
    history_removed: int = 0
    changes_removed: int = 0
    daily_files_removed: int = 0


class SchedulerStatus(_Model):
    is_running: bool
    last_check_time: Optional[datetime] = None
    interval_active: bool = False


class ImageCacheStatus(_Model):
    path: str
    name: str
    cached: bool
    thumbnail_path: Optional[str] = None


class FolderCacheSummary(_Model):
    total: int = 0
    cached: int = 0
    uncached: int = 0
    percentage: int = 0


class FolderCacheStatus(_Model):
    success: bool = True
    folder: str
    images: List[ImageCacheStatus] = Field(default_factory=list)
    summary: FolderCacheSummary = Field(default_factory=FolderCacheSummary)
    error: Optional[str] = None
