"""
Library manager: the server-side entry point wiring stores and services.

Owns the blob store and metadata store and keeps them consistent: a song
record exists exactly when its blob does. Creation goes through the ingestion
pipeline; deletion removes both sides with the same rollback discipline;
``reconcile_orphans`` cleans up whatever a crashed process left behind.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Optional

from shared.config import ServerConfig
from shared.constants import DEFAULT_ORPHAN_GRACE_SECONDS, TRACKS_PREFIX
from shared.database import MetadataStore, SqliteMetadataStore
from shared.errors import SongNotFound, StorageFailure
from shared.models import Song, SongPatch
from storage.blob_store import BlobStore
from storage.provider_factory import StorageProviderFactory
from .catalog import CatalogService
from .delivery import DeliveryService
from .ingestion import IngestionPipeline
from .playlists import PlaylistService

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """Outcome of an orphan reconciliation pass."""
    orphan_blobs: List[str] = field(default_factory=list)
    missing_blob_records: List[str] = field(default_factory=list)
    skipped_recent: int = 0
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orphan_blobs": self.orphan_blobs,
            "missing_blob_records": self.missing_blob_records,
            "skipped_recent": self.skipped_recent,
            "dry_run": self.dry_run,
        }


class LibraryManager:
    """Facade over ingestion, delivery, catalog and playlists."""

    def __init__(self, blob_store: BlobStore, metadata_store: MetadataStore,
                 config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig()
        self.blob_store = blob_store
        self.metadata_store = metadata_store
        self.ingestion = IngestionPipeline(
            blob_store,
            metadata_store,
            max_upload_bytes=self.config.max_upload_bytes,
            allowed_content_types=self.config.allowed_content_types,
            probe_durations=self.config.probe_duration,
        )
        self.delivery = DeliveryService(metadata_store, blob_store)
        self.catalog = CatalogService(metadata_store)
        self.playlists = PlaylistService(metadata_store)

    @classmethod
    def from_config(cls, config: ServerConfig) -> 'LibraryManager':
        """Connect the configured blob store and open the metadata database."""
        blob_store = StorageProviderFactory.connect(config.provider, config.credentials())
        metadata_store = SqliteMetadataStore(config.metadata_db_path)
        logger.info("Library ready (%s storage, metadata at %s)",
                    StorageProviderFactory.get_provider_name(config.provider),
                    config.metadata_db_path)
        return cls(blob_store, metadata_store, config)

    # --- Song lifecycle ---

    def ingest(self, stream: BinaryIO, content_type: Optional[str], declared_size: int,
               **kwargs) -> Song:
        return self.ingestion.ingest(stream, content_type, declared_size, **kwargs)

    def get_song(self, song_id: str) -> Song:
        return self.catalog.get(song_id)

    def update_song(self, song_id: str, patch: SongPatch) -> Song:
        """Correct editable metadata. An empty patch returns the record unchanged."""
        if patch.is_empty():
            return self.get_song(song_id)
        song = self.metadata_store.update(song_id, patch)
        logger.info("Updated metadata of %s: %s", song_id, ", ".join(patch.changes()))
        return song

    def delete_song(self, song_id: str) -> Song:
        """
        Remove a song's record and blob together.

        The record goes first so readers stop seeing the song immediately. If
        the blob cannot be deleted the record is restored and StorageFailure
        raised, leaving the song fully intact.
        """
        song = self.get_song(song_id)
        self.metadata_store.delete(song_id)
        try:
            self.blob_store.delete(song.blob_key)
        except StorageFailure as e:
            try:
                self.metadata_store.create(song)
            except StorageFailure:
                logger.exception("Could not restore record %s after failed blob delete; "
                                 "blob %s is left for orphan reconciliation", song_id, song.blob_key)
            raise StorageFailure(f"Deleting blob of {song_id} failed: {e}") from e
        logger.info("Deleted %s (%s)", song.title, song_id)
        return song

    # --- Maintenance ---

    def reconcile_orphans(self, grace_seconds: Optional[int] = None, dry_run: bool = False,
                          now: Optional[float] = None) -> ReconcileReport:
        """
        Delete blobs with no record and records with no blob.

        Blobs younger than ``grace_seconds`` are skipped since they may belong
        to an ingestion that has not written its record yet.
        """
        grace = self.config.orphan_grace_seconds if grace_seconds is None else grace_seconds
        if grace is None:
            grace = DEFAULT_ORPHAN_GRACE_SECONDS
        now = time.time() if now is None else now
        report = ReconcileReport(dry_run=dry_run)

        # Records before blobs: a listed record always had its blob written first
        records = self.metadata_store.blob_keys()
        recorded_keys = {key for _, key in records}
        blobs = self.blob_store.list_blobs(TRACKS_PREFIX)
        blob_keys = {blob.key for blob in blobs}

        for blob in blobs:
            if blob.key in recorded_keys:
                continue
            if now - blob.modified < grace:
                report.skipped_recent += 1
                continue
            report.orphan_blobs.append(blob.key)
            if not dry_run:
                self.blob_store.delete(blob.key)
                logger.warning("Deleted orphan blob %s", blob.key)

        for song_id, key in records:
            if key in blob_keys or self.blob_store.exists(key):
                continue
            report.missing_blob_records.append(song_id)
            if not dry_run:
                try:
                    self.metadata_store.delete(song_id)
                    logger.warning("Deleted record %s whose blob %s is missing", song_id, key)
                except SongNotFound:
                    pass

        return report
