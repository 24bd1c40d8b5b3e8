"""
Abstract base class for blob storage providers.

This module defines the interface the library core uses to persist raw audio
bytes, allowing the application to work with the local filesystem, Cloudflare
R2, Backblaze B2, AWS S3, or any other S3-compatible storage service.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Iterator, List, Optional

from shared.models import ByteRange


@dataclass
class BlobInfo:
    """Listing entry for a stored blob."""
    key: str
    size: int
    modified: float  # epoch seconds


class CountingReader:
    """File-like wrapper counting the bytes read through it."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self.stream.read(size)
        self.bytes_read += len(chunk)
        return chunk


class BlobStore(ABC):
    """
    Durable key -> bytes storage.

    Implementations raise ``BlobNotFound`` for missing keys and wrap every
    provider error into ``StorageFailure`` (``StorageWriteFailed`` for puts).
    """

    @abstractmethod
    def authenticate(self, credentials: Dict[str, Any]) -> bool:
        """
        Connect to the provider.

        Args:
            credentials: Provider specific settings (base_path, endpoint,
                         access_key_id, secret_access_key, bucket, ...)

        Returns:
            True if the store is ready for use
        """

    @abstractmethod
    def put(self, key: str, stream: BinaryIO, content_type: Optional[str] = None) -> int:
        """
        Write the whole stream under ``key``. The write is atomic: readers see
        either no blob or the complete blob.

        Returns:
            Number of bytes written
        """

    @abstractmethod
    def get(self, key: str, byte_range: Optional[ByteRange] = None) -> Iterator[bytes]:
        """
        Open a blob for reading.

        Missing keys raise ``BlobNotFound`` at call time, not on first iteration.

        Returns:
            Iterator over byte chunks of the blob, or of ``byte_range``
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete a blob. Deleting a missing key is not an error."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def size(self, key: str) -> int:
        """Size in bytes. Raises BlobNotFound."""

    @abstractmethod
    def list_blobs(self, prefix: Optional[str] = None) -> List[BlobInfo]:
        pass

    def get_url(self, key: str, expires_in: int = 3600) -> Optional[str]:
        """
        URL a remote client can fetch the blob from directly.

        Returns None when the provider cannot hand out such URLs.
        """
        return None

    def read_bytes(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        return b"".join(self.get(key, byte_range))
