"""
Exceptions raised by the media cleanup jobs.
"""

from __future__ import annotations


class MediaCleanupError(Exception):
    """Base class for failures that abort a reconciliation run."""


class ListingError(MediaCleanupError):
    """Object storage listing failed or was incomplete."""

    def __init__(self, prefix: str, cause: BaseException):
        super().__init__(f"Failed to list storage prefix {prefix!r}: {cause}")
        self.prefix = prefix
        self.cause = cause


class ReferenceQueryError(MediaCleanupError):
    """Reading media references from the document store failed."""

    def __init__(self, field_name: str, cause: BaseException):
        super().__init__(f"Failed to read media references from {field_name}: {cause}")
        self.field_name = field_name
        self.cause = cause
