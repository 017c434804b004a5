"""
Key-set snapshots for reconciliation: referenced keys from the document
store, stored keys from object storage.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from storefront_media.db import DbClient
from storefront_media.errors import ListingError, ReferenceQueryError
from storefront_media.media_keys import (
    MANAGED_PREFIXES,
    MEDIA_REFERENCE_FIELDS,
    ReferenceField,
    is_managed_key,
    listing_prefixes,
)
from storefront_media.storage import StorageClient, StoredObject

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceSnapshot:
    """Referenced media keys, grouped by the field they were found in."""

    by_field: Mapping[ReferenceField, frozenset[str]] = field(default_factory=dict)

    @property
    def keys(self) -> frozenset[str]:
        return frozenset().union(*self.by_field.values())


@dataclass(frozen=True)
class StorageSnapshot:
    objects: Mapping[str, StoredObject] = field(default_factory=dict)

    @property
    def keys(self) -> frozenset[str]:
        return frozenset(self.objects)


class ReferenceCollector:
    """Reads every managed media key referenced by a document."""

    def __init__(
        self,
        db: DbClient,
        fields: Iterable[ReferenceField] = MEDIA_REFERENCE_FIELDS,
        prefixes: Iterable[str] = MANAGED_PREFIXES,
    ):
        self.db = db
        self.fields = tuple(fields)
        self.prefixes = tuple(prefixes)

    def collect(self) -> ReferenceSnapshot:
        by_field: dict[ReferenceField, frozenset[str]] = {}
        for ref_field in self.fields:
            try:
                values = self.db.get_reference_values(ref_field)
            except Exception as exc:
                raise ReferenceQueryError(ref_field.name, exc) from exc
            # External URLs can sit in the same fields; they are not ours.
            by_field[ref_field] = frozenset(
                value for value in values if is_managed_key(value, self.prefixes)
            )
            logger.debug(
                "Collected %d referenced keys from %s", len(by_field[ref_field]), ref_field.name
            )
        return ReferenceSnapshot(by_field=by_field)


class ObjectLister:
    """Lists every object stored under the managed prefixes."""

    def __init__(
        self,
        storage: StorageClient,
        prefixes: Iterable[str] = MANAGED_PREFIXES,
        max_workers: int = 4,
    ):
        self.storage = storage
        self.prefixes = tuple(prefixes)
        self.max_workers = max_workers

    def list_prefix(self, prefix: str) -> dict[str, StoredObject]:
        """
        Follow the listing to the end.

        Any failure part-way raises ``ListingError``; a partial listing is
        never returned.
        """
        objects: dict[str, StoredObject] = {}
        pages = 0
        try:
            for page in self.storage.list_objects(prefix):
                pages += 1
                for item in page:
                    objects[item.key] = item
        except Exception as exc:
            raise ListingError(prefix, exc) from exc
        logger.debug("Listed %d objects under %s in %d pages", len(objects), prefix, pages)
        return objects

    def list_all(self) -> StorageSnapshot:
        prefixes = listing_prefixes(self.prefixes)
        merged: dict[str, StoredObject] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(prefixes) or 1)) as pool:
            for objects in pool.map(self.list_prefix, prefixes):
                merged.update(objects)
        managed = {
            key: item for key, item in merged.items() if is_managed_key(key, self.prefixes)
        }
        return StorageSnapshot(objects=managed)

    def existing(self, keys: Iterable[str]) -> frozenset[str]:
        """
        Return the subset of ``keys`` that exists in storage right now.

        Used to recheck keys that looked missing in a listing taken while
        uploads were still landing.
        """
        keys = sorted(set(keys))
        if not keys:
            return frozenset()

        def check(key: str) -> bool:
            try:
                return self.storage.object_exists(key)
            except Exception as exc:
                raise ListingError(key, exc) from exc

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(keys))) as pool:
            return frozenset(key for key, found in zip(keys, pool.map(check, keys)) if found)
