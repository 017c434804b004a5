"""
Mutating steps of a reconciliation run: deleting orphaned objects and
stripping dangling references.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable

from storefront_media.collector import ReferenceSnapshot
from storefront_media.config import MAX_DELETE_BATCH_SIZE
from storefront_media.db import DbClient
from storefront_media.media_keys import FieldKind, ReferenceField
from storefront_media.storage import StorageClient

logger = logging.getLogger(__name__)


@dataclass
class DeleteReport:
    attempted: int = 0
    deleted: int = 0
    failed: int = 0
    batches: int = 0
    failed_batches: int = 0


@dataclass
class CleanReport:
    found: int = 0
    fixed: int = 0
    documents_modified: int = 0
    failed_fields: list[str] = field(default_factory=list)


class BatchDeleter:
    """Deletes keys in provider-sized batches, one call at a time."""

    def __init__(self, storage: StorageClient, batch_size: int = MAX_DELETE_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.storage = storage
        self.batch_size = min(batch_size, MAX_DELETE_BATCH_SIZE)

    def batches(self, keys: Iterable[str]) -> list[list[str]]:
        ordered = sorted(set(keys))
        return [
            ordered[start : start + self.batch_size]
            for start in range(0, len(ordered), self.batch_size)
        ]

    def delete(self, keys: Iterable[str]) -> DeleteReport:
        report = DeleteReport()
        for batch in self.batches(keys):
            report.batches += 1
            report.attempted += len(batch)
            try:
                failed_keys = self.storage.delete_objects(batch)
            except Exception:
                # Best effort: the next run picks these up again.
                logger.exception("Failed to delete batch of %d orphaned objects", len(batch))
                report.failed_batches += 1
                report.failed += len(batch)
                continue
            if failed_keys:
                logger.warning(
                    "Storage reported %d of %d keys not deleted, e.g. %s",
                    len(failed_keys),
                    len(batch),
                    failed_keys[0],
                )
            report.failed += len(failed_keys)
            report.deleted += len(batch) - len(failed_keys)
            logger.info("Deleted batch of %d orphaned objects", len(batch) - len(failed_keys))
        return report


class ReferenceCleaner:
    """
    Removes dangling keys from the fields that hold them.

    Array fields get a pull, singular fields are set to null. Each field is
    updated independently; a failed field keeps its dangling keys until the
    next run.
    """

    def __init__(self, db: DbClient, max_workers: int = 4):
        self.db = db
        self.max_workers = max_workers

    def group(
        self, dangling: Iterable[str], references: ReferenceSnapshot
    ) -> dict[ReferenceField, frozenset[str]]:
        dangling = frozenset(dangling)
        groups = {}
        for ref_field, keys in references.by_field.items():
            matched = keys & dangling
            if matched:
                groups[ref_field] = matched
        return groups

    def _apply(self, ref_field: ReferenceField, keys: frozenset[str]) -> int:
        if ref_field.kind == FieldKind.ARRAY:
            return self.db.pull_array_values(ref_field, keys)
        return self.db.clear_singular_values(ref_field, keys)

    def clean(self, dangling: Iterable[str], references: ReferenceSnapshot) -> CleanReport:
        dangling = frozenset(dangling)
        report = CleanReport(found=len(dangling))
        groups = self.group(dangling, references)
        if not groups:
            return report

        unfixed: set[str] = set()
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(groups))) as pool:
            futures = {
                ref_field: pool.submit(self._apply, ref_field, keys)
                for ref_field, keys in groups.items()
            }
            for ref_field, future in futures.items():
                try:
                    modified = future.result()
                except Exception:
                    logger.exception(
                        "Failed to clear %d dangling references from %s",
                        len(groups[ref_field]),
                        ref_field.name,
                    )
                    report.failed_fields.append(ref_field.name)
                    unfixed.update(groups[ref_field])
                    continue
                report.documents_modified += modified
                logger.info(
                    "Cleared %d dangling references from %s (%d documents)",
                    len(groups[ref_field]),
                    ref_field.name,
                    modified,
                )
        report.fixed = len(dangling - unfixed)
        return report
