"""
Exception taxonomy for the library core.

Every failure path in the core raises one of these. The ``kind`` attribute is
the stable identifier surfaced by the API layer.
"""

from typing import Optional


class TunelockerError(Exception):
    """Base class for all library errors."""

    kind = "error"

    def __init__(self, message: str = "", *, detail: Optional[dict] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.detail = detail or {}

    def to_dict(self) -> dict:
        data = {"error": self.kind, "message": self.message}
        if self.detail:
            data["detail"] = self.detail
        return data


# --- Invalid input ---

class InvalidInput(TunelockerError):
    kind = "invalid_input"


class InvalidFormat(InvalidInput):
    """Content type is not in the audio allow-list."""
    kind = "invalid_format"


class TooLarge(InvalidInput):
    """Upload exceeds the configured maximum or its declared size."""
    kind = "too_large"


class IncompleteStream(InvalidInput):
    """Stream ended (or failed) before the declared size was read."""
    kind = "incomplete_stream"


class InvalidRange(InvalidInput):
    """Byte range is malformed."""
    kind = "invalid_range"


# --- Not found ---

class NotFound(TunelockerError):
    kind = "not_found"


class SongNotFound(NotFound):
    kind = "song_not_found"


class BlobNotFound(NotFound):
    kind = "blob_not_found"


class PlaylistNotFound(NotFound):
    kind = "playlist_not_found"


# --- Storage ---

class StorageFailure(TunelockerError):
    """Adapter level I/O error. Never retried inside the core."""
    kind = "storage_failure"


class StorageWriteFailed(StorageFailure):
    kind = "storage_write_failed"


# --- Ingestion control ---

class IngestCancelled(TunelockerError):
    kind = "ingest_cancelled"


# --- Client cache ---

class CacheError(TunelockerError):
    kind = "cache_error"


class CacheFull(CacheError):
    """No unpinned entries are left to evict."""
    kind = "cache_full"


class CacheFetchFailed(CacheError):
    kind = "cache_fetch_failed"
