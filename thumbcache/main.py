"""Entry point: logging setup and operator commands (run scheduler, scan now, regenerate, clear)."""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import Any, List, Optional

from thumbcache.config import Settings, get_settings
from thumbcache.scheduler import ScanScheduler, create_scheduler


def _setup_logging(settings: Settings) -> None:
    """Configure the 'thumbcache' logger: stderr always, plus a log file when one is configured."""
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger("thumbcache")
    root.setLevel(level)
    root.handlers.clear()
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(level)
    ch.setFormatter(fmt)
    root.addHandler(ch)
    if settings.log_file:
        fh = logging.FileHandler(settings.log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        root.addHandler(fh)
        root.info("Logging to %s", settings.log_file)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _run_forever(scheduler: ScanScheduler) -> int:
    """Run the periodic scheduler until SIGINT/SIGTERM."""
    stop = threading.Event()

    def on_signal(signum, frame) -> None:
        logging.getLogger("thumbcache.main").info("Signal %d received, stopping", signum)
        stop.set()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)
    scheduler.start()
    try:
        while not stop.wait(timeout=1):
            pass
    finally:
        scheduler.stop()
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="thumbcache", description="Thumbnail cache engine for a remote gallery")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the periodic scheduler until interrupted")
    sub.add_parser("scan", help="Scan now and regenerate thumbnails of changed images")
    regen = sub.add_parser("regenerate", help="Regenerate thumbnails for all tracked images, or one folder")
    regen.add_argument("--folder", default=None, help="Only images under this gallery folder")
    sub.add_parser("clear", help="Delete every local thumbnail")
    cleanup = sub.add_parser("cleanup-history", help="Drop history older than the retention period")
    cleanup.add_argument("--hours", type=int, default=None, help="Retention in hours (default: configured)")
    sub.add_parser("status", help="Print scheduler and cache status as JSON")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    _setup_logging(settings)
    log = logging.getLogger("thumbcache.main")
    log.info("thumbcache %s (data_dir=%s)", args.command, settings.data_dir)
    scheduler = create_scheduler(settings)

    if args.command == "run":
        return _run_forever(scheduler)
    if args.command == "scan":
        result = scheduler.run_scan()
        _print_json(result.to_json_dict())
        return 0 if result.success else 1
    if args.command == "regenerate":
        if args.folder is not None:
            result = scheduler.rebuild_folder_thumbnails(args.folder)
        else:
            result = scheduler.regenerate_all_thumbnails()
        _print_json(result.to_json_dict())
        return 0 if result.success else 1
    if args.command == "clear":
        _print_json({"deleted": scheduler.clear_all_thumbnails()})
        return 0
    if args.command == "cleanup-history":
        _print_json(scheduler.store.cleanup_history(args.hours).to_json_dict())
        return 0
    _print_json({"status": scheduler.status().to_json_dict(), "cache": scheduler.cache_status()})
    return 0


if __name__ == "__main__":
    sys.exit(main())
