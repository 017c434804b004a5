"""
HTTP routes for media uploads, deletes and the admin cleanup triggers.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool

from storefront_media.config import Settings, get_settings
from storefront_media.db import CategoryRecord, ProductRecord
from storefront_media.dependencies import get_maintenance_scheduler, get_media_service
from storefront_media.media import (
    ALL_IMAGES,
    MAX_IMAGES_PER_UPLOAD,
    InvalidMediaError,
    MediaOwnerNotFoundError,
    MediaService,
    MediaStorageError,
    StagedFile,
    ThumbnailDeleteResult,
)
from storefront_media.reconcile import RunStatus
from storefront_media.scheduler import MaintenanceScheduler
from storefront_media.schemas import (
    CategoryMediaResponse,
    DeleteProductImagesRequest,
    DeleteProductImagesResponse,
    MediaCleanupResponse,
    ProductMediaResponse,
    ProductUploadResponse,
    TempCleanupResponse,
    ThumbnailDeleteResponse,
    ThumbnailUploadResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/media")


def require_admin(
    x_admin_key: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.admin_api_key:
        return
    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.admin_api_key):
        raise HTTPException(status_code=401, detail="Admin key required")


def _product_payload(product: ProductRecord) -> ProductMediaResponse:
    return ProductMediaResponse(
        product_id=product.product_id, thumbnail=product.thumbnail, images=product.images
    )


def _category_payload(category: CategoryRecord) -> CategoryMediaResponse:
    return CategoryMediaResponse(
        category_id=category.category_id, slug=category.slug, thumbnail=category.thumbnail
    )


async def _stage_files(service: MediaService, files: list[UploadFile]) -> list[StagedFile]:
    staged: list[StagedFile] = []
    try:
        for upload in files:
            data = await upload.read()
            staged.append(service.stage_upload(upload.filename or "", data))
    except InvalidMediaError as exc:
        service.discard(staged)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return staged


@router.post("/cleanup", response_model=MediaCleanupResponse, dependencies=[Depends(require_admin)])
def cleanup_media(scheduler: MaintenanceScheduler = Depends(get_maintenance_scheduler)):
    """
    Run media reconciliation now and return its counts.
    """
    result = scheduler.run_media_cleanup()
    if result.status == RunStatus.FAILED:
        raise HTTPException(
            status_code=500,
            detail={"message": "Media cleanup failed", "reason": result.reason},
        )
    return MediaCleanupResponse(**result.to_response())


@router.post(
    "/cleanup/temp", response_model=TempCleanupResponse, dependencies=[Depends(require_admin)]
)
def cleanup_temp_files(scheduler: MaintenanceScheduler = Depends(get_maintenance_scheduler)):
    result = scheduler.run_temp_cleanup()
    if result.status == RunStatus.FAILED:
        raise HTTPException(
            status_code=500,
            detail={"message": "Temporary file cleanup failed", "reason": result.reason},
        )
    return TempCleanupResponse(**result.to_response())


@router.post("/product/{product_id}/upload", response_model=ProductUploadResponse)
async def upload_product_media(
    product_id: str,
    images: list[UploadFile] = File(...),
    service: MediaService = Depends(get_media_service),
):
    if len(images) > MAX_IMAGES_PER_UPLOAD:
        raise HTTPException(
            status_code=400, detail=f"At most {MAX_IMAGES_PER_UPLOAD} images per upload"
        )
    staged = await _stage_files(service, images)
    try:
        result = await run_in_threadpool(service.upload_product_images, product_id, staged)
    except InvalidMediaError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except MediaOwnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    message = f"Successfully uploaded {len(result.image_keys)} images"
    if result.thumbnail_key:
        message += " and set thumbnail"
    return ProductUploadResponse(
        message=message,
        imageKeys=result.image_keys,
        thumbnailKey=result.thumbnail_key,
        product=_product_payload(result.product),
    )


@router.post("/product/{product_id}/thumbnail", response_model=ThumbnailUploadResponse)
async def upload_product_thumbnail(
    product_id: str,
    thumbnail: UploadFile = File(...),
    service: MediaService = Depends(get_media_service),
):
    (staged,) = await _stage_files(service, [thumbnail])
    try:
        result = await run_in_threadpool(service.upload_product_thumbnail, product_id, staged)
    except MediaOwnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ThumbnailUploadResponse(
        message="Successfully uploaded product thumbnail",
        thumbnailKey=result.thumbnail_key,
        product=_product_payload(result.product),
    )


@router.post("/category/{category_id}/thumbnail", response_model=ThumbnailUploadResponse)
async def upload_category_thumbnail(
    category_id: str,
    thumbnail: UploadFile = File(...),
    service: MediaService = Depends(get_media_service),
):
    (staged,) = await _stage_files(service, [thumbnail])
    try:
        result = await run_in_threadpool(service.upload_category_thumbnail, category_id, staged)
    except MediaOwnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ThumbnailUploadResponse(
        message="Successfully uploaded category thumbnail",
        thumbnailKey=result.thumbnail_key,
        category=_category_payload(result.category),
    )


@router.delete("/product/{product_id}/delete", response_model=DeleteProductImagesResponse)
def delete_product_media(
    product_id: str,
    body: DeleteProductImagesRequest,
    service: MediaService = Depends(get_media_service),
):
    """
    Remove gallery images from a product; ``fileKeys`` may be ``"__all__"``.
    """
    try:
        result = service.delete_product_images(product_id, body.fileKeys)
    except InvalidMediaError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except MediaOwnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    warning = None
    if result.missing:
        warning = f"Some file keys don't exist in the product: {', '.join(result.missing)}"
    if body.fileKeys == ALL_IMAGES:
        message = f"Successfully deleted all {len(result.removed)} images from product"
    else:
        message = f"Successfully deleted {len(result.removed)} images from product"
    return DeleteProductImagesResponse(
        message=message,
        deletedCount=len(result.removed),
        deletedKeys=result.removed,
        failedKeys=result.failed,
        warning=warning,
        product=_product_payload(result.product),
    )


def _thumbnail_delete_message(result: ThumbnailDeleteResult, owner: str) -> str:
    if result.thumbnail_deleted:
        return f"Successfully deleted {owner} thumbnail"
    if result.reference_removed:
        return f"Removed thumbnail reference from {owner}"
    return f"{owner.capitalize()} does not have a thumbnail to delete"


@router.delete("/product/{product_id}/thumbnail", response_model=ThumbnailDeleteResponse)
def delete_product_thumbnail(
    product_id: str,
    service: MediaService = Depends(get_media_service),
):
    try:
        result = service.delete_product_thumbnail(product_id)
    except MediaOwnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except MediaStorageError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ThumbnailDeleteResponse(
        message=_thumbnail_delete_message(result, "product"),
        thumbnailDeleted=result.thumbnail_deleted,
        referenceRemoved=result.reference_removed,
        deletedKey=result.deleted_key,
        externalUrl=result.external_url,
        product=_product_payload(result.product),
    )


@router.delete("/category/{category_id}/thumbnail", response_model=ThumbnailDeleteResponse)
def delete_category_thumbnail(
    category_id: str,
    service: MediaService = Depends(get_media_service),
):
    try:
        result = service.delete_category_thumbnail(category_id)
    except MediaOwnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except MediaStorageError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ThumbnailDeleteResponse(
        message=_thumbnail_delete_message(result, "category"),
        thumbnailDeleted=result.thumbnail_deleted,
        referenceRemoved=result.reference_removed,
        deletedKey=result.deleted_key,
        externalUrl=result.external_url,
        category=_category_payload(result.category),
    )
