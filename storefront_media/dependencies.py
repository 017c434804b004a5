"""
Dependency wiring for the FastAPI app and the maintenance jobs.
"""

from __future__ import annotations

from storefront_media.cleanup import BatchDeleter, ReferenceCleaner
from storefront_media.collector import ObjectLister, ReferenceCollector
from storefront_media.config import Settings, get_settings
from storefront_media.db import DbClient, InMemoryDbClient, SqlDbClient
from storefront_media.janitor import TempFileJanitor
from storefront_media.locks import InProcessRunLock, RedisRunLock, RunLock
from storefront_media.media import MediaService
from storefront_media.reconcile import ReconciliationEngine
from storefront_media.scheduler import DailyTrigger, HourlyTrigger, MaintenanceScheduler
from storefront_media.storage import InMemoryStorageClient, S3StorageClient, StorageClient

_db_client: DbClient | None = None
_storage_client: StorageClient | None = None
_engine: ReconciliationEngine | None = None
_janitor: TempFileJanitor | None = None
_scheduler: MaintenanceScheduler | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so documents persist across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = SqlDbClient(settings.database_url)
    return _db_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.r2_bucket_name:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.r2_bucket_name,
            region=settings.r2_region,
            endpoint=settings.r2_url or "",
            access_key_id=settings.r2_access_key_id or "",
            secret_access_key=settings.r2_secret_access_key or "",
        )
    return _storage_client


def build_run_lock(settings: Settings) -> RunLock:
    if settings.redis_url and not settings.use_in_memory_backends:
        return RedisRunLock(
            url=settings.redis_url,
            key=settings.media_cleanup_lock_key,
            ttl_seconds=settings.media_cleanup_lock_ttl_seconds,
        )
    return InProcessRunLock()


def build_reconciliation_engine(
    db: DbClient, storage: StorageClient, settings: Settings
) -> ReconciliationEngine:
    return ReconciliationEngine(
        collector=ReferenceCollector(db),
        lister=ObjectLister(storage),
        deleter=BatchDeleter(storage, batch_size=settings.effective_delete_batch_size),
        cleaner=ReferenceCleaner(db),
        lock=build_run_lock(settings),
        grace_period_seconds=settings.orphan_grace_period_seconds,
    )


def get_reconciliation_engine() -> ReconciliationEngine:
    global _engine
    if _engine:
        return _engine
    _engine = build_reconciliation_engine(get_db_client(), get_storage_client(), get_settings())
    return _engine


def get_temp_janitor() -> TempFileJanitor:
    global _janitor
    if _janitor:
        return _janitor
    settings = get_settings()
    _janitor = TempFileJanitor(
        settings.temp_upload_dir, max_age_seconds=settings.temp_file_max_age_seconds
    )
    return _janitor


def get_maintenance_scheduler() -> MaintenanceScheduler:
    """
    Return the process-wide scheduler; the app starts and stops it.
    """
    global _scheduler
    if _scheduler:
        return _scheduler
    settings = get_settings()
    _scheduler = MaintenanceScheduler(
        get_reconciliation_engine(),
        get_temp_janitor(),
        media_trigger=DailyTrigger(
            hour=settings.media_cleanup_hour, minute=settings.media_cleanup_minute
        ),
        temp_trigger=HourlyTrigger(minute=settings.temp_cleanup_minute),
    )
    return _scheduler


def get_media_service() -> MediaService:
    settings = get_settings()
    return MediaService(
        get_db_client(),
        get_storage_client(),
        settings.temp_upload_dir,
        cdn_url=settings.cdn_url,
    )


def reset_dependencies() -> None:
    """Drop cached singletons (useful in tests)."""
    global _db_client, _storage_client, _engine, _janitor, _scheduler
    if _scheduler:
        _scheduler.stop()
    _db_client = None
    _storage_client = None
    _engine = None
    _janitor = None
    _scheduler = None
