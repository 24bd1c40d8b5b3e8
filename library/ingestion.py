"""
Ingestion pipeline: turns an uploaded byte stream into a stored Song.

The upload is hashed while it is spooled to a temporary file, written to the
blob store, and only then recorded in the metadata store. A failure or
cancellation after the blob write deletes the blob again, so a caller never
observes a half-created song.
"""

import hashlib
import logging
import tempfile
import threading
import time
from pathlib import PurePath
from typing import BinaryIO, Callable, Iterable, Optional

from shared.constants import (
    DEFAULT_ALLOWED_CONTENT_TYPES,
    DEFAULT_MAX_UPLOAD_BYTES,
    SPOOL_MEMORY_LIMIT,
    TRACKS_PREFIX,
    UNKNOWN_ARTIST,
    UNKNOWN_TITLE,
    UPLOAD_CHUNK_SIZE,
)
from shared.database import MetadataStore
from shared.errors import (
    IncompleteStream,
    IngestCancelled,
    InvalidFormat,
    InvalidInput,
    StorageFailure,
    StorageWriteFailed,
    TooLarge,
)
from shared.models import Song, utc_now
from storage.blob_store import BlobStore
from .audio import extension_for, normalize_content_type, probe_duration

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Validates, hashes and stores uploads."""

    def __init__(self, blob_store: BlobStore, metadata_store: MetadataStore,
                 max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
                 allowed_content_types: Iterable[str] = DEFAULT_ALLOWED_CONTENT_TYPES,
                 probe_durations: bool = False,
                 spool_limit: int = SPOOL_MEMORY_LIMIT,
                 chunk_size: int = UPLOAD_CHUNK_SIZE,
                 clock: Callable[[], int] = time.time_ns):
        self.blob_store = blob_store
        self.metadata_store = metadata_store
        self.max_upload_bytes = max_upload_bytes
        self.allowed_content_types = {normalize_content_type(t) for t in allowed_content_types}
        self.probe_durations = probe_durations
        self.spool_limit = spool_limit
        self.chunk_size = chunk_size
        self.clock = clock

    def validate(self, content_type: Optional[str], declared_size) -> str:
        """
        Check the declared upload parameters before touching any store.

        Returns:
            The normalised content type

        Raises:
            InvalidFormat: content type not in the allow-list
            TooLarge: declared size above the configured maximum
            InvalidInput: declared size missing or not positive
        """
        normalized = normalize_content_type(content_type)
        if normalized not in self.allowed_content_types:
            raise InvalidFormat(
                f"Content type {content_type!r} is not an accepted audio type",
                detail={"allowed": sorted(self.allowed_content_types)},
            )
        if isinstance(declared_size, bool) or not isinstance(declared_size, int):
            raise InvalidInput("Declared size must be an integer")
        if declared_size <= 0:
            raise InvalidInput("Declared size must be greater than zero")
        if declared_size > self.max_upload_bytes:
            raise TooLarge(
                f"Upload of {declared_size} bytes exceeds the {self.max_upload_bytes} byte limit",
                detail={"max_upload_bytes": self.max_upload_bytes},
            )
        return normalized

    def blob_key_for(self, content_hash: str, content_type: str, song_id: str) -> str:
        """Content hash, timestamp and song id. Only the ingestion that owns ``song_id`` writes this key."""
        return (f"{TRACKS_PREFIX}{content_hash[:2]}/{content_hash}-{self.clock()}-{song_id}"
                f"{extension_for(content_type)}")

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise IngestCancelled("Ingestion cancelled")

    def _spool(self, stream: BinaryIO, declared_size: int, spool: BinaryIO,
               cancel_event: Optional[threading.Event]) -> str:
        """Copy exactly ``declared_size`` bytes into the spool, hashing as we go."""
        sha256 = hashlib.sha256()
        received = 0
        while received < declared_size:
            self._check_cancelled(cancel_event)
            try:
                chunk = stream.read(min(self.chunk_size, declared_size - received))
            except OSError as e:
                raise IncompleteStream(
                    f"Upload stream failed after {received} of {declared_size} bytes: {e}"
                ) from e
            if not chunk:
                raise IncompleteStream(
                    f"Upload stream ended after {received} of {declared_size} bytes",
                    detail={"received": received, "declared": declared_size},
                )
            sha256.update(chunk)
            spool.write(chunk)
            received += len(chunk)

        try:
            extra = stream.read(1)
        except OSError:
            extra = b""
        if extra:
            raise TooLarge(f"Upload stream is longer than the declared {declared_size} bytes")
        return sha256.hexdigest()

    def _compensate(self, key: str):
        try:
            self.blob_store.delete(key)
            logger.warning("Rolled back blob %s after failed ingestion", key)
        except Exception:
            logger.exception("Could not delete blob %s after failed ingestion; "
                             "it is left for orphan reconciliation", key)

    def ingest(self, stream: BinaryIO, content_type: Optional[str], declared_size: int, *,
               title: Optional[str] = None, artist: Optional[str] = None,
               original_filename: Optional[str] = None, artwork_key: Optional[str] = None,
               cancel_event: Optional[threading.Event] = None) -> Song:
        """
        Store an upload and create its Song record.

        Raises:
            InvalidFormat, TooLarge, InvalidInput, IncompleteStream,
            StorageWriteFailed, IngestCancelled
        """
        content_type = self.validate(content_type, declared_size)

        with tempfile.SpooledTemporaryFile(max_size=self.spool_limit) as spool:
            content_hash = self._spool(stream, declared_size, spool, cancel_event)
            spool.seek(0)
            duration = probe_duration(spool) if self.probe_durations else None
            song_id = Song.generate_id()
            key = self.blob_key_for(content_hash, content_type, song_id)
            self._check_cancelled(cancel_event)

            try:
                written = self.blob_store.put(key, spool, content_type)
            except StorageWriteFailed:
                raise
            except StorageFailure as e:
                raise StorageWriteFailed(f"Blob write failed: {e}") from e
            except BaseException:
                # Interrupted mid-write: the blob may or may not exist
                self._compensate(key)
                raise

        try:
            if written != declared_size:
                raise StorageWriteFailed(
                    f"Blob store wrote {written} bytes, expected {declared_size}"
                )
            self._check_cancelled(cancel_event)

            now = utc_now()
            song = Song(
                id=song_id,
                title=(title or "").strip() or self._title_from_filename(original_filename),
                artist=(artist or "").strip() or UNKNOWN_ARTIST,
                blob_key=key,
                content_length=declared_size,
                content_type=content_type,
                content_hash=content_hash,
                created_at=now,
                updated_at=now,
                duration=duration,
                artwork_key=artwork_key,
                original_filename=original_filename,
            )
            self.metadata_store.create(song)
        except (StorageWriteFailed, IngestCancelled):
            self._compensate(key)
            raise
        except Exception as e:
            self._compensate(key)
            raise StorageWriteFailed(f"Metadata write failed: {e}") from e
        except BaseException:
            self._compensate(key)
            raise

        logger.info("Ingested %s (%s, %d bytes) as %s", song.title, content_type, declared_size, song.id)
        return song

    @staticmethod
    def _title_from_filename(original_filename: Optional[str]) -> str:
        if original_filename:
            stem = PurePath(original_filename).stem.replace('_', ' ').strip()
            if stem:
                return stem
        return UNKNOWN_TITLE
