"""
Upload and delete flows for product and category media.

Uploaded files are first written to the local staging directory, then copied
into object storage under a freshly generated key, and finally the owning
document is updated to reference that key. A crash between the storage
write and the document write leaves an orphaned object; a failed delete of
a replaced or removed image does the same. Both are repaired by reconciliation.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from storefront_media.db import CategoryRecord, DbClient, ProductRecord
from storefront_media.media_keys import (
    CATEGORY_THUMBNAIL_PREFIX,
    PRODUCT_IMAGE_PREFIX,
    PRODUCT_THUMBNAIL_PREFIX,
    is_managed_key,
    key_from_url,
    new_media_key,
)
from storefront_media.storage import StorageClient, guess_content_type

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")
MAX_IMAGE_SIZE = 5 * 1024 * 1024
MAX_IMAGES_PER_UPLOAD = 6
THUMBNAIL_UPLOAD_NAME = "thumb."
ALL_IMAGES = "__all__"


class InvalidMediaError(ValueError):
    pass


class MediaOwnerNotFoundError(LookupError):
    pass


class MediaStorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StagedFile:
    path: str
    original_name: str
    size: int


@dataclass
class UploadResult:
    image_keys: list[str] = field(default_factory=list)
    thumbnail_key: Optional[str] = None
    product: Optional[ProductRecord] = None
    category: Optional[CategoryRecord] = None


@dataclass
class ImageDeleteResult:
    removed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    product: Optional[ProductRecord] = None


@dataclass
class ThumbnailDeleteResult:
    thumbnail_deleted: bool = False
    reference_removed: bool = False
    deleted_key: Optional[str] = None
    external_url: Optional[str] = None
    product: Optional[ProductRecord] = None
    category: Optional[CategoryRecord] = None


class MediaService:
    def __init__(
        self,
        db: DbClient,
        storage: StorageClient,
        staging_dir: str,
        cdn_url: Optional[str] = None,
    ):
        self.db = db
        self.storage = storage
        self.staging_dir = staging_dir
        self.cdn_url = cdn_url

    def stage_upload(self, filename: str, data: bytes) -> StagedFile:
        extension = os.path.splitext(filename or "")[1].lower()
        if extension not in ALLOWED_EXTENSIONS:
            raise InvalidMediaError(
                f"Invalid file type. Only {', '.join(ALLOWED_EXTENSIONS)} are allowed."
            )
        if len(data) > MAX_IMAGE_SIZE:
            raise InvalidMediaError(f"File {filename} exceeds {MAX_IMAGE_SIZE} bytes")

        os.makedirs(self.staging_dir, exist_ok=True)
        staged_name = f"{int(time.time() * 1000)}-{secrets.token_hex(6)}{extension}"
        path = os.path.join(self.staging_dir, staged_name)
        with open(path, "wb") as f:
            f.write(data)
        return StagedFile(path=path, original_name=os.path.basename(filename), size=len(data))

    def discard(self, staged: list[StagedFile]) -> None:
        # Anything left behind is removed by the staging janitor.
        for item in staged:
            try:
                os.remove(item.path)
            except FileNotFoundError:
                pass
            except OSError:
                logger.warning("Failed to remove staged file %s", item.path, exc_info=True)

    def managed_key(self, value: Optional[str], prefix: str) -> Optional[str]:
        """
        Return the storage key behind a stored reference when it lives under ``prefix``.

        References may hold a bare key or a CDN URL; anything else is external.
        """
        if not value:
            return None
        key = key_from_url(value, self.cdn_url)
        return key if is_managed_key(key, (prefix,)) else None

    def _upload(self, item: StagedFile, prefix: str, owner_id: str) -> str:
        key = new_media_key(prefix, owner_id, item.original_name)
        self.storage.upload_file(item.path, key, guess_content_type(item.original_name))
        return key

    def _delete_quietly(self, key: str) -> bool:
        try:
            self.storage.delete_object(key)
        except Exception:
            logger.exception("Failed to delete media %s; left for reconciliation", key)
            return False
        return True

    def _delete_replaced(self, value: Optional[str], prefix: str) -> None:
        # External URLs and keys outside our prefix are never deleted.
        key = self.managed_key(value, prefix)
        if key:
            self._delete_quietly(key)

    def _owner_vanished(
        self, kind: str, owner_id: str, uploaded: list[str]
    ) -> MediaOwnerNotFoundError:
        logger.warning(
            "%s %s was deleted during upload, removing %d new objects", kind, owner_id, len(uploaded)
        )
        for key in uploaded:
            self._delete_quietly(key)
        return MediaOwnerNotFoundError(f"{kind} not found")

    def upload_product_images(self, product_id: str, staged: list[StagedFile]) -> UploadResult:
        """
        Add gallery images to a product.

        A file named ``thumb.*`` becomes the product thumbnail instead.
        """
        try:
            if not staged:
                raise InvalidMediaError("No images uploaded")
            if len(staged) > MAX_IMAGES_PER_UPLOAD:
                raise InvalidMediaError(f"At most {MAX_IMAGES_PER_UPLOAD} images per upload")
            product = self.db.get_product(product_id)
            if not product:
                raise MediaOwnerNotFoundError("Product not found")

            thumbnail_file = next(
                (
                    item
                    for item in staged
                    if item.original_name.lower().startswith(THUMBNAIL_UPLOAD_NAME)
                ),
                None,
            )
            previous_thumbnail = product.thumbnail
            thumbnail_key = (
                self._upload(thumbnail_file, PRODUCT_THUMBNAIL_PREFIX, product_id)
                if thumbnail_file
                else None
            )
            image_keys = [
                self._upload(item, PRODUCT_IMAGE_PREFIX, product_id)
                for item in staged
                if item is not thumbnail_file
            ]
            updated = self.db.update_product_media(
                product_id, thumbnail=thumbnail_key, add_images=image_keys
            )
            if updated is None:
                uploaded = image_keys + ([thumbnail_key] if thumbnail_key else [])
                raise self._owner_vanished("Product", product_id, uploaded)
            if thumbnail_key:
                self._delete_replaced(previous_thumbnail, PRODUCT_THUMBNAIL_PREFIX)
            logger.info(
                "Uploaded %d images%s for product %s",
                len(image_keys),
                " and thumbnail" if thumbnail_key else "",
                product_id,
            )
            return UploadResult(image_keys=image_keys, thumbnail_key=thumbnail_key, product=updated)
        finally:
            self.discard(staged)

    def upload_product_thumbnail(self, product_id: str, staged: StagedFile) -> UploadResult:
        try:
            product = self.db.get_product(product_id)
            if not product:
                raise MediaOwnerNotFoundError("Product not found")
            previous_thumbnail = product.thumbnail
            key = self._upload(staged, PRODUCT_THUMBNAIL_PREFIX, product_id)
            updated = self.db.update_product_media(product_id, thumbnail=key)
            if updated is None:
                raise self._owner_vanished("Product", product_id, [key])
            self._delete_replaced(previous_thumbnail, PRODUCT_THUMBNAIL_PREFIX)
            return UploadResult(thumbnail_key=key, product=updated)
        finally:
            self.discard([staged])

    def upload_category_thumbnail(self, category_id: str, staged: StagedFile) -> UploadResult:
        try:
            category = self.db.get_category(category_id)
            if not category:
                raise MediaOwnerNotFoundError("Category not found")
            previous_thumbnail = category.thumbnail
            key = self._upload(staged, CATEGORY_THUMBNAIL_PREFIX, category_id)
            updated = self.db.set_category_thumbnail(category_id, key)
            if updated is None:
                raise self._owner_vanished("Category", category_id, [key])
            self._delete_replaced(previous_thumbnail, CATEGORY_THUMBNAIL_PREFIX)
            return UploadResult(thumbnail_key=key, category=updated)
        finally:
            self.discard([staged])

    def delete_product_images(
        self, product_id: str, file_keys: Union[list[str], str]
    ) -> ImageDeleteResult:
        """
        Remove gallery images from a product.

        ``file_keys`` is a list of stored values or ``ALL_IMAGES``. Values the
        product does not hold are reported as missing and left alone. The
        document is updated first; objects that then fail to delete stay as
        orphans for reconciliation.
        """
        product = self.db.get_product(product_id)
        if not product:
            raise MediaOwnerNotFoundError("Product not found")

        if file_keys == ALL_IMAGES:
            targets = list(product.images)
            missing: list[str] = []
        elif isinstance(file_keys, list) and file_keys:
            held = set(product.images)
            targets = list(dict.fromkeys(value for value in file_keys if value in held))
            missing = [value for value in file_keys if value not in held]
        else:
            raise InvalidMediaError(f"fileKeys must be a list of file keys or '{ALL_IMAGES}'")

        if missing:
            logger.warning("Product %s does not hold %d requested images", product_id, len(missing))

        updated = self.db.remove_product_images(
            product_id, None if file_keys == ALL_IMAGES else targets
        )
        if updated is None:
            raise MediaOwnerNotFoundError("Product not found")

        failed = []
        for value in targets:
            key = self.managed_key(value, PRODUCT_IMAGE_PREFIX)
            if key and not self._delete_quietly(key):
                failed.append(value)
        logger.info("Removed %d images from product %s", len(targets), product_id)
        return ImageDeleteResult(removed=targets, missing=missing, failed=failed, product=updated)

    def _delete_thumbnail(
        self, value: Optional[str], prefix: str, clear: Callable[[], object]
    ) -> ThumbnailDeleteResult:
        if not value:
            return ThumbnailDeleteResult()
        key = self.managed_key(value, prefix)
        if key:
            # The reference is kept when the object cannot be removed.
            try:
                self.storage.delete_object(key)
            except Exception as exc:
                logger.exception("Failed to delete thumbnail %s", key)
                raise MediaStorageError("Failed to delete thumbnail from storage") from exc
        updated = clear()
        if updated is None:
            raise MediaOwnerNotFoundError("Owner not found")
        if key:
            return ThumbnailDeleteResult(
                thumbnail_deleted=True, reference_removed=True, deleted_key=key
            )
        return ThumbnailDeleteResult(reference_removed=True, external_url=value)

    def delete_product_thumbnail(self, product_id: str) -> ThumbnailDeleteResult:
        product = self.db.get_product(product_id)
        if not product:
            raise MediaOwnerNotFoundError("Product not found")
        result = self._delete_thumbnail(
            product.thumbnail,
            PRODUCT_THUMBNAIL_PREFIX,
            lambda: self.db.clear_product_thumbnail(product_id),
        )
        result.product = self.db.get_product(product_id) if result.reference_removed else product
        return result

    def delete_category_thumbnail(self, category_id: str) -> ThumbnailDeleteResult:
        category = self.db.get_category(category_id)
        if not category:
            raise MediaOwnerNotFoundError("Category not found")
        result = self._delete_thumbnail(
            category.thumbnail,
            CATEGORY_THUMBNAIL_PREFIX,
            lambda: self.db.set_category_thumbnail(category_id, None),
        )
        result.category = (
            self.db.get_category(category_id) if result.reference_removed else category
        )
        return result
