"""
Media reconciliation: keeps object storage and document media references
consistent.

One run takes two snapshots (referenced keys, stored keys) before touching
anything, then deletes orphaned objects and strips dangling references.
If either snapshot fails the run aborts without mutating anything.
"""

from __future__ import annotations

import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from storefront_media.cleanup import BatchDeleter, ReferenceCleaner
from storefront_media.collector import ObjectLister, ReferenceCollector, StorageSnapshot
from storefront_media.errors import MediaCleanupError
from storefront_media.locks import InProcessRunLock, RunLock, hold

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class MediaCleanupResult:
    status: RunStatus
    orphaned_found: int = 0
    orphaned_deleted: int = 0
    orphaned_deferred: int = 0
    delete_failed: int = 0
    dangling_found: int = 0
    dangling_fixed: int = 0
    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.status != RunStatus.FAILED

    def to_response(self) -> dict:
        return {
            "status": self.status.value,
            "orphanedFilesRemoved": self.orphaned_deleted,
            "danglingReferencesFixed": self.dangling_fixed,
            "orphanedFilesFound": self.orphaned_found,
            "orphanedFilesDeferred": self.orphaned_deferred,
            "orphanedFilesFailed": self.delete_failed,
            "danglingReferencesFound": self.dangling_found,
            "reason": self.reason,
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def split_recent(
    orphaned: frozenset[str], stored: StorageSnapshot, cutoff: datetime
) -> tuple[frozenset[str], frozenset[str]]:
    """
    Split orphaned keys into (deletable, deferred).

    Objects modified after ``cutoff`` may belong to an upload whose document
    write has not landed yet. Objects without a timestamp are deletable.
    """
    deferred = frozenset(
        key
        for key in orphaned
        if stored.objects[key].last_modified is not None
        and _as_utc(stored.objects[key].last_modified) > cutoff
    )
    return orphaned - deferred, deferred


class ReconciliationEngine:
    def __init__(
        self,
        collector: ReferenceCollector,
        lister: ObjectLister,
        deleter: BatchDeleter,
        cleaner: ReferenceCleaner,
        *,
        lock: Optional[RunLock] = None,
        grace_period_seconds: float = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.collector = collector
        self.lister = lister
        self.deleter = deleter
        self.cleaner = cleaner
        self.lock = lock or InProcessRunLock()
        self.grace_period = timedelta(seconds=grace_period_seconds)
        self.clock = clock

    @property
    def running(self) -> bool:
        return self.lock.locked()

    def run(self) -> MediaCleanupResult:
        """
        Run one reconciliation pass.

        Never raises: failures come back as a ``failed`` result and a run
        that finds another one in progress returns ``skipped`` without I/O.
        """
        with hold(self.lock) as acquired:
            if not acquired:
                logger.info("Media cleanup already in progress")
                return MediaCleanupResult(status=RunStatus.SKIPPED)

            started_at = self.clock()
            try:
                result = self._run(started_at)
            except MediaCleanupError as exc:
                logger.error("Media cleanup aborted, nothing was deleted: %s", exc)
                result = MediaCleanupResult(status=RunStatus.FAILED, reason=str(exc))
            except Exception as exc:
                logger.exception("Unexpected error during media cleanup")
                result = MediaCleanupResult(
                    status=RunStatus.FAILED, reason=f"{type(exc).__name__}: {exc}"
                )
            result.started_at = started_at
            result.finished_at = self.clock()
            return result

    def _run(self, started_at: datetime) -> MediaCleanupResult:
        logger.info("Starting media cleanup")

        # Both snapshots must complete before any mutation.
        with ThreadPoolExecutor(max_workers=2) as pool:
            references_future = pool.submit(self.collector.collect)
            stored_future = pool.submit(self.lister.list_all)
            references = references_future.result()
            stored = stored_future.result()

        referenced_keys = references.keys
        stored_keys = stored.keys
        logger.info(
            "Found %d referenced media keys and %d stored objects",
            len(referenced_keys),
            len(stored_keys),
        )

        orphaned = stored_keys - referenced_keys
        dangling = referenced_keys - stored_keys
        if dangling:
            # An upload can land between the listing and the reference read.
            appeared = self.lister.existing(dangling)
            if appeared:
                logger.info("%d referenced keys appeared after listing, leaving them", len(appeared))
                dangling -= appeared
        deletable, deferred = split_recent(orphaned, stored, started_at - self.grace_period)
        logger.info(
            "Found %d orphaned objects (%d within grace period) and %d dangling references",
            len(orphaned),
            len(deferred),
            len(dangling),
        )

        delete_report = self.deleter.delete(deletable)
        clean_report = self.cleaner.clean(dangling, references)

        logger.info(
            "Media cleanup finished: %d orphaned objects deleted, %d dangling references fixed",
            delete_report.deleted,
            clean_report.fixed,
        )
        return MediaCleanupResult(
            status=RunStatus.SUCCESS,
            orphaned_found=len(orphaned),
            orphaned_deleted=delete_report.deleted,
            orphaned_deferred=len(deferred),
            delete_failed=delete_report.failed,
            dangling_found=len(dangling),
            dangling_fixed=clean_report.fixed,
        )
