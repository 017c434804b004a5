"""
Cleanup of the local upload staging directory.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

from storefront_media.locks import InProcessRunLock, hold
from storefront_media.reconcile import RunStatus

logger = logging.getLogger(__name__)


def format_kilobytes(num_bytes: int) -> str:
    return f"{round(num_bytes / 1024)} KB"


@dataclass
class TempCleanupResult:
    status: RunStatus
    files_deleted: int = 0
    bytes_freed: int = 0
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != RunStatus.FAILED

    @property
    def size_freed(self) -> str:
        return format_kilobytes(self.bytes_freed)

    def to_response(self) -> dict:
        return {
            "status": self.status.value,
            "filesDeleted": self.files_deleted,
            "sizeFreed": self.size_freed,
            "reason": self.reason,
        }


class TempFileJanitor:
    """
    Deletes staged files older than ``max_age_seconds``.

    Only regular files directly inside the staging directory are removed;
    subdirectories are left alone. Runs are single-flight on a lock that is
    separate from the media reconciliation lock.
    """

    def __init__(
        self,
        staging_dir: str,
        max_age_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.staging_dir = staging_dir
        self.max_age_seconds = max_age_seconds
        self.clock = clock
        self.lock = InProcessRunLock()

    @property
    def running(self) -> bool:
        return self.lock.locked()

    def run(self) -> TempCleanupResult:
        with hold(self.lock) as acquired:
            if not acquired:
                logger.info("Temporary file cleanup already in progress")
                return TempCleanupResult(status=RunStatus.SKIPPED)
            try:
                return self._run()
            except Exception as exc:
                logger.exception("Error during temporary file cleanup")
                return TempCleanupResult(
                    status=RunStatus.FAILED, reason=f"{type(exc).__name__}: {exc}"
                )

    def _run(self) -> TempCleanupResult:
        if not os.path.isdir(self.staging_dir):
            logger.info("Staging directory %s does not exist, creating it", self.staging_dir)
            os.makedirs(self.staging_dir, exist_ok=True)
            return TempCleanupResult(status=RunStatus.SUCCESS)

        with os.scandir(self.staging_dir) as it:
            entries = list(it)
        if not entries:
            return TempCleanupResult(status=RunStatus.SUCCESS)

        logger.info("Starting temporary file cleanup for %d items", len(entries))
        now = self.clock()
        files_deleted = 0
        bytes_freed = 0
        for entry in entries:
            try:
                if not entry.is_file(follow_symlinks=False):
                    logger.debug("Skipping non-file entry %s", entry.path)
                    continue
                stats = entry.stat(follow_symlinks=False)
                if now - stats.st_mtime <= self.max_age_seconds:
                    continue
                os.unlink(entry.path)
            except FileNotFoundError:
                logger.debug("Temporary file %s already removed", entry.path)
                continue
            except OSError:
                logger.exception("Error processing temporary item %s", entry.path)
                continue
            files_deleted += 1
            bytes_freed += stats.st_size

        if files_deleted:
            logger.info(
                "Cleaned up %d temporary files (%s)", files_deleted, format_kilobytes(bytes_freed)
            )
        return TempCleanupResult(
            status=RunStatus.SUCCESS, files_deleted=files_deleted, bytes_freed=bytes_freed
        )
