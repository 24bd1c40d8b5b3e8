"""Blob storage providers for audio payloads."""

from .blob_store import BlobInfo, BlobStore
from .local_provider import LocalStorageProvider
from .s3_provider import S3StorageProvider
from .provider_factory import StorageProviderFactory

__all__ = [
    "BlobInfo",
    "BlobStore",
    "LocalStorageProvider",
    "S3StorageProvider",
    "StorageProviderFactory",
]
