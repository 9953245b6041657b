"""Smoke tests: package and main modules import without error."""


def test_thumbcache_package_imports() -> None:
    """Package can be imported and exposes a version."""
    import thumbcache

    assert thumbcache.__file__ is not None
    assert thumbcache.__version__


def test_engine_modules_import() -> None:
    """Engine modules expose their entry points."""
    from thumbcache.main import main
    from thumbcache.scheduler import ScanScheduler, create_scheduler
    from thumbcache.state.store import CacheStateStore
    from thumbcache.thumbnails.pipeline import ThumbnailPipeline

    assert callable(main)
    assert callable(create_scheduler)
    assert ScanScheduler and CacheStateStore and ThumbnailPipeline


def test_create_scheduler_wires_engine(settings) -> None:
    """create_scheduler builds a scheduler over the configured data dir without network access."""
    from thumbcache.scheduler import create_scheduler

    scheduler = create_scheduler(settings)
    assert scheduler.store.data_dir == settings.data_dir
    assert scheduler.is_running() is False
    assert scheduler.status().interval_active is False
