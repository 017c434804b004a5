"""
Pydantic schemas for the media API.
"""

from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel


class MediaCleanupResponse(BaseModel):
    status: Literal["success", "skipped"]
    orphanedFilesRemoved: int
    danglingReferencesFixed: int
    orphanedFilesFound: int = 0
    orphanedFilesDeferred: int = 0
    orphanedFilesFailed: int = 0
    danglingReferencesFound: int = 0


class TempCleanupResponse(BaseModel):
    status: Literal["success", "skipped"]
    filesDeleted: int
    sizeFreed: str


class ProductMediaResponse(BaseModel):
    product_id: str
    thumbnail: Optional[str] = None
    images: list[str]


class CategoryMediaResponse(BaseModel):
    category_id: str
    slug: str
    thumbnail: Optional[str] = None


class ProductUploadResponse(BaseModel):
    message: str
    imageKeys: list[str]
    thumbnailKey: Optional[str] = None
    product: ProductMediaResponse


class ThumbnailUploadResponse(BaseModel):
    message: str
    thumbnailKey: str
    product: Optional[ProductMediaResponse] = None
    category: Optional[CategoryMediaResponse] = None


class DeleteProductImagesRequest(BaseModel):
    fileKeys: Union[Literal["__all__"], list[str]]


class DeleteProductImagesResponse(BaseModel):
    message: str
    deletedCount: int
    deletedKeys: list[str]
    failedKeys: list[str] = []
    warning: Optional[str] = None
    product: ProductMediaResponse


class ThumbnailDeleteResponse(BaseModel):
    message: str
    thumbnailDeleted: bool
    referenceRemoved: bool = False
    deletedKey: Optional[str] = None
    externalUrl: Optional[str] = None
    product: Optional[ProductMediaResponse] = None
    category: Optional[CategoryMediaResponse] = None
