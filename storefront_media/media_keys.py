"""
Media key layout and the document fields that reference media keys.

Keys look like ``<prefix><ownerId>/<ownerId>_<epochMillis>_<hex>.<ext>``.
Only keys under ``MANAGED_PREFIXES`` are ever listed, deleted or cleaned by
the reconciliation jobs.
"""

from __future__ import annotations

import enum
import os
import secrets
import time
from dataclasses import dataclass
from typing import Iterable, Optional

PRODUCT_IMAGE_PREFIX = "img/product/"
PRODUCT_THUMBNAIL_PREFIX = "img/product/thumbnail/"
CATEGORY_THUMBNAIL_PREFIX = "img/category/thumbnail/"

MANAGED_PREFIXES: tuple[str, ...] = (
    PRODUCT_IMAGE_PREFIX,
    PRODUCT_THUMBNAIL_PREFIX,
    CATEGORY_THUMBNAIL_PREFIX,
)


class FieldKind(str, enum.Enum):
    ARRAY = "array"
    SINGULAR = "singular"


@dataclass(frozen=True)
class ReferenceField:
    """A document field holding media keys."""

    collection: str
    field: str
    kind: FieldKind
    prefixes: tuple[str, ...]

    @property
    def name(self) -> str:
        return f"{self.collection}.{self.field}"

    def accepts(self, value: object) -> bool:
        return isinstance(value, str) and value.startswith(self.prefixes)


PRODUCT_IMAGES_FIELD = ReferenceField(
    collection="products",
    field="images",
    kind=FieldKind.ARRAY,
    prefixes=(PRODUCT_IMAGE_PREFIX,),
)
# Older products stored gallery images as thumbnails, so both prefixes count.
PRODUCT_THUMBNAIL_FIELD = ReferenceField(
    collection="products",
    field="thumbnail",
    kind=FieldKind.SINGULAR,
    prefixes=(PRODUCT_THUMBNAIL_PREFIX, PRODUCT_IMAGE_PREFIX),
)
CATEGORY_THUMBNAIL_FIELD = ReferenceField(
    collection="categories",
    field="thumbnail",
    kind=FieldKind.SINGULAR,
    prefixes=(CATEGORY_THUMBNAIL_PREFIX,),
)

MEDIA_REFERENCE_FIELDS: tuple[ReferenceField, ...] = (
    PRODUCT_IMAGES_FIELD,
    PRODUCT_THUMBNAIL_FIELD,
    CATEGORY_THUMBNAIL_FIELD,
)


def is_managed_key(value: object, prefixes: Iterable[str] = MANAGED_PREFIXES) -> bool:
    return isinstance(value, str) and value.startswith(tuple(prefixes))


def listing_prefixes(prefixes: Iterable[str] = MANAGED_PREFIXES) -> list[str]:
    """
    Collapse nested prefixes so each key is listed once.

    ``img/product/`` already covers ``img/product/thumbnail/``.
    """
    unique = sorted(set(prefixes))
    collapsed: list[str] = []
    for prefix in unique:
        if any(prefix.startswith(kept) for kept in collapsed):
            continue
        collapsed.append(prefix)
    return collapsed


def generate_file_name(owner_id: str, extension: str) -> str:
    timestamp = int(time.time() * 1000)
    suffix = secrets.token_hex(4)
    extension = extension.lstrip(".").lower()
    return f"{owner_id}_{timestamp}_{suffix}.{extension}"


def build_key(prefix: str, owner_id: str, file_name: str) -> str:
    if prefix not in MANAGED_PREFIXES:
        raise ValueError(f"Unmanaged media prefix: {prefix}")
    return f"{prefix}{owner_id}/{file_name}"


def new_media_key(prefix: str, owner_id: str, filename: str) -> str:
    """Build a fresh key for an uploaded file, keeping its extension."""
    extension = os.path.splitext(filename)[1] or ".bin"
    return build_key(prefix, owner_id, generate_file_name(owner_id, extension))


def key_from_url(value: str, cdn_url: Optional[str]) -> str:
    if cdn_url:
        base = cdn_url.rstrip("/") + "/"
        if value.startswith(base):
            return value[len(base):]
    return value
