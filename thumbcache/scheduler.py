"""Scan scheduler: time-windowed periodic scans, single-flight runs, thumbnail rebuilds.

All state (run lock, tick thread, last check time) lives on the ScanScheduler instance.
A tick that finds a run in progress is skipped, never queued.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from thumbcache.api.client import GalleryAPI
from thumbcache.config import Settings, get_settings
from thumbcache.errors import ListingError
from thumbcache.models import (
    ChangeType,
    EmailNotificationConfig,
    FolderCacheStatus,
    FolderCacheSummary,
    FolderRebuildResult,
    HistoryAction,
    HistoryEntry,
    ImageCacheStatus,
    LastRebuiltFolder,
    RegenerateResult,
    ScanResult,
    SchedulerConfig,
    SchedulerStatus,
    ThumbnailConfig,
    as_utc,
    utcnow,
)
from thumbcache.notify import RebuildReport, send_rebuild_notification
from thumbcache.scan.changes import change_stats, detect_changes, index_by_path
from thumbcache.scan.fingerprint import ContentFingerprintScanner, child_path, is_image
from thumbcache.state.store import CacheStateStore
from thumbcache.thumbnails.pipeline import ThumbnailPipeline
from thumbcache.thumbnails.storage import LocalStorage, get_thumbnail_path

log = logging.getLogger(__name__)

SCAN_IN_PROGRESS = "Scan already in progress"
# Paths listed in a changes_detected history entry
AFFECTED_PATHS_LIMIT = 20
STATUS_PROBE_SIZE = "thumb"

Notifier = Callable[[RebuildReport, Optional[str]], None]


def _zone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown timezone %r, using UTC", name)
        return timezone.utc


def _in_work_hours(config: SchedulerConfig, local_now: datetime) -> bool:
    return config.work_hours.start_hour <= local_now.hour < config.work_hours.end_hour


def active_interval(config: SchedulerConfig, now: datetime) -> Optional[int]:
    """
    Scan interval in minutes at 'now' (hour taken in the configured timezone):
    work-hours interval inside [startHour, endHour), off-hours interval when enabled, else None.
    """
    local_now = as_utc(now).astimezone(_zone(config.timezone))
    if _in_work_hours(config, local_now):
        return config.work_hours.interval_minutes
    if config.off_hours.enabled:
        return config.off_hours.interval_minutes
    return None


def next_run_time(config: SchedulerConfig, last_run: Optional[datetime], now: datetime) -> Optional[datetime]:
    """
    When the next scheduled scan is due (UTC). None if the scheduler is disabled or can never run.
    Outside any window this is the start of the next work-hours window.
    """
    if not config.enabled:
        return None
    interval = active_interval(config, now)
    if interval is None:
        start, end = config.work_hours.start_hour, config.work_hours.end_hour
        if start >= end or start > 23:
            return None
        local_now = as_utc(now).astimezone(_zone(config.timezone))
        nxt = local_now.replace(hour=start, minute=0, second=0, microsecond=0)
        if local_now.hour >= end:
            nxt += timedelta(days=1)
        return nxt.astimezone(timezone.utc)
    if last_run is not None:
        return as_utc(last_run) + timedelta(minutes=interval)
    return as_utc(now)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _in_folder(path: str, folder: str) -> bool:
    prefix = folder.strip("/")
    return not prefix or path.strip("/").startswith(prefix + "/")


class ScanScheduler:
    """
    Drives scans from the scheduler config and exposes the operator triggers.
    Scans, regenerate-all and folder rebuilds share one non-blocking lock: at most one runs.
    """

    def __init__(
        self,
        store: CacheStateStore,
        scanner: ContentFingerprintScanner,
        pipeline: ThumbnailPipeline,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._scanner = scanner
        self._pipeline = pipeline
        self._clock = clock
        self._notifier = notifier or (
            lambda report, to_email: send_rebuild_notification(report, to_email, self._settings)
        )
        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_check_time: Optional[datetime] = None

    @property
    def store(self) -> CacheStateStore:
        return self._store

    # --- helpers ---

    def _history(
        self,
        action: HistoryAction,
        details: str,
        duration_ms: Optional[int] = None,
        affected_paths: Optional[List[str]] = None,
    ) -> None:
        self._store.append_history(HistoryEntry(
            timestamp=self._clock(),
            action=action,
            details=details,
            duration_ms=duration_ms,
            affected_paths=affected_paths,
        ))

    def _notify(self, report: RebuildReport, email_config: EmailNotificationConfig) -> None:
        """Send the report if enabled for its kind. Failures are logged, never raised."""
        wanted = email_config.notify_on_rebuild if report.success else email_config.notify_on_error
        if not email_config.enabled or not wanted:
            log.debug("Email notification skipped (disabled in config)")
            return
        try:
            self._notifier(report, email_config.email or None)
        except Exception as e:
            log.error("Failed to send notification: %s", e)

    def _regenerate(self, paths: List[str], config: ThumbnailConfig) -> Tuple[int, int]:
        """Generate thumbnails for paths on a bounded pool. Returns (generated, failed); zero sizes counts as failed."""
        generated = 0
        failed = 0
        if not paths:
            return 0, 0
        with ThreadPoolExecutor(max_workers=max(1, self._settings.thumbnail_workers)) as executor:
            futures = {executor.submit(self._pipeline.generate_thumbnails, p, config): p for p in paths}
            for fut in as_completed(futures):
                path = futures[fut]
                try:
                    produced = fut.result()
                except Exception as e:
                    log.error("Failed to generate thumbnails for %s: %s", path, e)
                    failed += 1
                    continue
                if produced:
                    generated += 1
                else:
                    failed += 1
                done = generated + failed
                if done % 10 == 0:
                    log.info("Thumbnails: %d/%d files processed", done, len(paths))
        return generated, failed

    def _remove_deleted(self, paths: Iterable[str], config: ThumbnailConfig) -> int:
        removed = 0
        for path in paths:
            try:
                removed += self._pipeline.delete_thumbnails(path, config)
            except (OSError, ValueError) as e:
                log.warning("Could not delete thumbnails of %s: %s", path, e)
        if removed:
            log.info("Removed %d thumbnails of deleted originals", removed)
        return removed

    # --- scan ---

    def run_scan(self, scheduled: bool = False) -> ScanResult:
        """
        Scan the remote tree, diff against stored fingerprints, persist, regenerate changed images.
        Returns a structured result; errors are recorded in history and never raised.
        """
        if not self._run_lock.acquire(blocking=False):
            log.info("Scan requested while another run is in progress")
            return ScanResult(success=False, error=SCAN_IN_PROGRESS)
        started = time.monotonic()
        source = "[scheduled]" if scheduled else "[manual]"
        try:
            return self._scan(source, started)
        except Exception as e:
            duration = _elapsed_ms(started)
            log.exception("Scan failed: %s", e)
            try:
                self._history(HistoryAction.ERROR, f"{source} Scan failed: {e}", duration)
                email_config = self._store.get_config().email_notification_config
            except OSError as store_err:
                log.error("Could not record scan failure: %s", store_err)
                email_config = EmailNotificationConfig()
            self._notify(
                RebuildReport(success=False, duration_ms=duration, error=f"Scan failed: {e}"),
                email_config,
            )
            return ScanResult(success=False, duration_ms=duration, error=str(e))
        finally:
            self._last_check_time = self._clock()
            self._run_lock.release()

    def _scan(self, source: str, started: float) -> ScanResult:
        config = self._store.get_config()
        self._history(HistoryAction.SCAN_STARTED, f"{source} Scan started")

        previous = self._store.load_fingerprints()
        current = index_by_path(self._scanner.scan(""))
        changes = detect_changes(previous, current)
        stats = change_stats(changes)
        duration = _elapsed_ms(started)

        self._store.record_scan(current.values(), changes, duration, ran_at=self._clock())

        thumb_config = config.thumbnail_config
        if thumb_config.storage == "local":
            self._remove_deleted((c.path for c in changes if c.type is ChangeType.DELETED), thumb_config)

        if changes:
            self._history(
                HistoryAction.CHANGES_DETECTED,
                f"{source} Detected {stats.total} changes "
                f"(added: {stats.added}, modified: {stats.modified}, deleted: {stats.deleted})",
                duration,
                [c.path for c in changes[:AFFECTED_PATHS_LIMIT]],
            )
            to_generate = [
                c.path for c in changes
                if c.type in (ChangeType.ADDED, ChangeType.MODIFIED) and is_image(c.path)
            ]
            generated, failed = self._regenerate(to_generate, thumb_config)
            if generated:
                self._history(
                    HistoryAction.THUMBNAILS_GENERATED,
                    f"{source} Generated thumbnails for {generated} files",
                )
            self._notify(
                RebuildReport(
                    success=True,
                    duration_ms=_elapsed_ms(started),
                    files_processed=len(changes),
                    thumbnails_generated=generated,
                    failed=failed,
                ),
                config.email_notification_config,
            )
        else:
            self._history(
                HistoryAction.SCAN_COMPLETED,
                f"{source} Scan completed, no changes ({len(current)} files)",
                duration,
            )

        log.info("Scan completed in %dms, %d changes detected", duration, len(changes))

        if config.history_cleanup_config.auto_cleanup_enabled:
            self._store.cleanup_history()

        return ScanResult(success=True, changes=len(changes), duration_ms=duration)

    # --- rebuilds ---

    def regenerate_all_thumbnails(self) -> RegenerateResult:
        """Regenerate every tracked image, continuing past failures."""
        if not self._run_lock.acquire(blocking=False):
            log.info("Regenerate requested while another run is in progress")
            return RegenerateResult(success=False)
        started = time.monotonic()
        generated = 0
        failed = 0
        try:
            self._history(HistoryAction.SCAN_STARTED, "Regenerating all thumbnails")
            config = self._store.get_config()
            paths = [p for p in self._store.load_fingerprints() if is_image(p)]
            log.info("Regenerating thumbnails for %d files", len(paths))
            generated, failed = self._regenerate(paths, config.thumbnail_config)
            duration = _elapsed_ms(started)
            self._history(
                HistoryAction.THUMBNAILS_GENERATED,
                f"Regeneration finished: {generated} succeeded, {failed} failed",
                duration,
            )
            self._notify(
                RebuildReport(
                    success=True,
                    duration_ms=duration,
                    files_processed=len(paths),
                    thumbnails_generated=generated,
                    failed=failed,
                ),
                config.email_notification_config,
            )
            return RegenerateResult(success=True, generated=generated, failed=failed, duration_ms=duration)
        except Exception as e:
            duration = _elapsed_ms(started)
            log.exception("Regeneration failed: %s", e)
            try:
                self._history(HistoryAction.ERROR, f"Regeneration failed: {e}", duration)
                email_config = self._store.get_config().email_notification_config
            except OSError as store_err:
                log.error("Could not record regeneration failure: %s", store_err)
                email_config = EmailNotificationConfig()
            self._notify(
                RebuildReport(
                    success=False,
                    duration_ms=duration,
                    thumbnails_generated=generated,
                    failed=failed,
                    error=str(e),
                ),
                email_config,
            )
            return RegenerateResult(success=False, generated=generated, failed=failed, duration_ms=duration)
        finally:
            self._run_lock.release()

    def rebuild_folder_thumbnails(self, folder: str) -> FolderRebuildResult:
        """Regenerate tracked images under one folder and remember it as the last rebuilt folder."""
        if not self._run_lock.acquire(blocking=False):
            log.info("Folder rebuild requested while another run is in progress")
            return FolderRebuildResult(success=False)
        started = time.monotonic()
        files_processed = 0
        generated = 0
        config = None
        try:
            config = self._store.get_config()
            paths = [p for p in self._store.load_fingerprints() if _in_folder(p, folder) and is_image(p)]
            log.info("Rebuilding thumbnails for folder %s, %d files", folder, len(paths))
            generated, _ = self._regenerate(paths, config.thumbnail_config)
            files_processed = len(paths)
            duration = _elapsed_ms(started)
            self._store.set_last_rebuilt_folder(LastRebuiltFolder(
                path=folder,
                timestamp=self._clock(),
                files_processed=files_processed,
                thumbnails_generated=generated,
            ))
            self._history(
                HistoryAction.THUMBNAILS_GENERATED,
                f"Rebuilt folder {folder or '/'}: {generated} of {files_processed} files",
                duration,
            )
            return FolderRebuildResult(
                success=True,
                files_processed=files_processed,
                thumbnails_generated=generated,
                duration_ms=duration,
            )
        except Exception as e:
            duration = _elapsed_ms(started)
            log.exception("Error rebuilding folder %s: %s", folder, e)
            if config is not None:
                self._notify(
                    RebuildReport(
                        success=False,
                        duration_ms=duration,
                        files_processed=files_processed,
                        thumbnails_generated=generated,
                        error=f"Folder rebuild {folder or '/'} failed: {e}",
                    ),
                    config.email_notification_config,
                )
            return FolderRebuildResult(
                success=False,
                files_processed=files_processed,
                thumbnails_generated=generated,
                duration_ms=duration,
            )
        finally:
            self._run_lock.release()

    def generate_single(self, path: str) -> Dict[str, str]:
        """Generate all sizes for one original on demand. Errors propagate to the caller."""
        config = self._store.get_config().thumbnail_config
        return self._pipeline.generate_thumbnails(path, config)

    def clear_all_thumbnails(self) -> int:
        return self._pipeline.clear_all_thumbnails()

    def folder_status(self, folder: str = "") -> FolderCacheStatus:
        """List one remote folder and report which images already have a 'thumb' artifact."""
        try:
            _, files = self._scanner.list_folder(folder)
        except ListingError as e:
            return FolderCacheStatus(success=False, folder=folder or "/", error=str(e))
        config = self._store.get_config().thumbnail_config
        images = [
            (child_path(folder, item), str(item.get("name") or ""))
            for item in files
            if is_image(str(item.get("name") or item.get("path") or ""))
        ]

        def probe(entry: Tuple[str, str]) -> ImageCacheStatus:
            path, name = entry
            cached = self._pipeline.thumbnail_exists(path, STATUS_PROBE_SIZE, config.format, config.storage)
            return ImageCacheStatus(
                path=path,
                name=name,
                cached=cached,
                thumbnail_path=get_thumbnail_path(path, STATUS_PROBE_SIZE, config.format) if cached else None,
            )

        with ThreadPoolExecutor(max_workers=max(1, self._settings.list_workers)) as executor:
            results = list(executor.map(probe, images))
        cached = sum(1 for r in results if r.cached)
        total = len(results)
        return FolderCacheStatus(
            folder=folder or "/",
            images=results,
            summary=FolderCacheSummary(
                total=total,
                cached=cached,
                uncached=total - cached,
                percentage=round(cached * 100 / total) if total else 0,
            ),
        )

    # --- periodic loop ---

    def tick(self) -> bool:
        """One scheduler check. Returns True if it started a scan. Never raises."""
        if self.is_running():
            log.debug("Scheduler: skip, previous run still in progress")
            return False
        try:
            now = self._clock()
            self._last_check_time = now
            config = self._store.get_config().scheduler_config
            if not config.enabled:
                return False
            interval = active_interval(config, now)
            if interval is None:
                return False
            last_run = self._store.get_scan_run().last_run_at
            if last_run is not None and (as_utc(now) - as_utc(last_run)).total_seconds() / 60 < interval:
                return False
            log.info("Scheduler triggering automatic scan")
            self.run_scan(scheduled=True)
            return True
        except Exception as e:
            log.exception("Scheduler check failed: %s", e)
            return False

    def _loop(self) -> None:
        log.info("Cache scheduler started (check every %ds)", self._settings.tick_seconds)
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(timeout=self._settings.tick_seconds)
        log.info("Cache scheduler stopped")

    def start(self) -> None:
        """Start the background tick thread; the first check runs immediately."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="thumbcache-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the tick thread. A scan already running finishes first."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    # --- status ---

    def is_running(self) -> bool:
        return self._run_lock.locked()

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self.is_running(),
            last_check_time=self._last_check_time,
            interval_active=self._thread is not None and self._thread.is_alive(),
        )

    def cache_status(self) -> Dict[str, Any]:
        """Scheduler, fingerprint and thumbnail storage overview as a JSON-ready dict."""
        config = self._store.get_config()
        run = self._store.get_scan_run()
        paths = list(self._store.load_fingerprints())
        folders = {p.rsplit("/", 1)[0] if "/" in p else "" for p in paths}
        next_run = next_run_time(config.scheduler_config, run.last_run_at, self._clock())
        storage_stats = self._pipeline.local.stats()
        last_rebuilt = self._store.get_last_rebuilt_folder()
        return {
            "scheduler": {
                "enabled": config.scheduler_config.enabled,
                "nextRun": next_run.isoformat() if next_run else None,
                "lastRun": run.last_run_at.isoformat() if run.last_run_at else None,
                "lastRunDuration": run.last_duration_ms,
            },
            "hashChecker": {
                "totalFolders": len(folders),
                "totalFiles": len(paths),
                "lastScanTime": run.last_run_at.isoformat() if run.last_run_at else None,
                "changesDetected": run.last_change_count,
            },
            "thumbnails": {
                "totalGenerated": storage_stats["totalFiles"],
                "storageUsed": storage_stats["totalSize"],
                "bySize": storage_stats["bySize"],
                "storageLocation": config.thumbnail_config.storage,
            },
            "lastRebuiltFolder": last_rebuilt.to_json_dict() if last_rebuilt else None,
        }


def create_scheduler(settings: Optional[Settings] = None) -> ScanScheduler:
    """Wire the engine from settings: API client, store, scanner, pipeline, scheduler."""
    settings = settings or get_settings()
    api = GalleryAPI(settings)
    return ScanScheduler(
        store=CacheStateStore.from_settings(settings),
        scanner=ContentFingerprintScanner(api, max_workers=settings.list_workers),
        pipeline=ThumbnailPipeline(
            api,
            LocalStorage(settings.cache_root),
            encode_concurrency=settings.encode_concurrency,
        ),
        settings=settings,
    )
