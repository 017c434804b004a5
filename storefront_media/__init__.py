"""
Storefront media service.

This package owns the media side of the storefront backend: staging and
uploading product/category images, and keeping the object-storage bucket
consistent with the media references stored on documents.
"""
