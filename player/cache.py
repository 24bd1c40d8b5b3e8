"""
Offline cache for the player.

Mirrors selected songs (bytes plus a metadata snapshot) on the client so they
play without network. Capacity is a byte budget enforced with least recently
accessed eviction; entries reserved by a reader are never evicted. The index
is an SQLite database next to the media directory, so the cache survives
restarts.
"""

import logging
import os
import sqlite3
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional, Union

from shared.constants import AUDIO_CONTENT_TYPES, CACHE_INDEX_FILENAME, UPLOAD_CHUNK_SIZE
from shared.errors import CacheError, CacheFetchFailed, CacheFull, SongNotFound, TunelockerError
from shared.models import CacheEntry, CacheState, Song, parse_timestamp, utc_now
from .remote import SongSource

logger = logging.getLogger(__name__)

PARTIAL_PREFIX = ".part-"


@dataclass
class CachedSong:
    """A cache hit: where the bytes are and the metadata they were fetched with."""
    song_id: str
    path: Path
    size: int
    metadata: Song
    stale: bool = False

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


@dataclass
class ReconcileSummary:
    checked: int = 0
    stale: int = 0
    refreshed: int = 0
    removed: int = 0
    failed: int = 0


class OfflineCacheManager:
    """Manages the offline song cache with LRU eviction and reservations."""

    def __init__(self, cache_dir: str, max_size_bytes: int,
                 source: Optional[SongSource] = None,
                 index_path: Optional[str] = None):
        if max_size_bytes <= 0:
            raise CacheError("Cache capacity must be positive")
        self.cache_dir = Path(cache_dir).expanduser()
        self.max_size_bytes = max_size_bytes
        self.source = source
        self.db_path = Path(index_path).expanduser() if index_path else self.cache_dir.parent / CACHE_INDEX_FILENAME

        self.lock = threading.RLock()
        self._pins: Dict[str, int] = {}
        self._transient: Dict[str, CacheState] = {}
        self._fetches: Dict[str, threading.Event] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._init_cache()
        self._init_db()

    def _init_cache(self):
        """Ensure cache directory exists and drop leftovers of interrupted fetches."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        for leftover in self.cache_dir.glob(PARTIAL_PREFIX + "*"):
            leftover.unlink(missing_ok=True)

    def _init_db(self):
        """Initialize SQLite database for cache tracking."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.lock:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=20)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    song_id TEXT PRIMARY KEY,
                    file_path TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    metadata_json TEXT NOT NULL,
                    fetched_at TEXT NOT NULL,
                    last_accessed TEXT NOT NULL,
                    access_seq INTEGER NOT NULL,
                    stale INTEGER NOT NULL DEFAULT 0
                )
            """)
            self.conn.commit()
            row = self.conn.execute("SELECT MAX(access_seq) FROM cache_entries").fetchone()
            self._seq = row[0] or 0

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        with self.lock:
            self.conn.close()

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
        return CacheEntry(
            song_id=row["song_id"],
            file_path=row["file_path"],
            size=row["file_size"],
            metadata=Song.from_json(row["metadata_json"]),
            fetched_at=row["fetched_at"],
            last_accessed=row["last_accessed"],
            stale=bool(row["stale"]),
        )

    def _row(self, song_id: str) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM cache_entries WHERE song_id = ?", (song_id,)
        ).fetchone()

    # --- Queries ---

    def state(self, song_id: str) -> CacheState:
        with self.lock:
            if song_id in self._transient:
                return self._transient[song_id]
            row = self._row(song_id)
        if row is None:
            return CacheState.ABSENT
        return CacheState.STALE if row["stale"] else CacheState.CACHED

    def usage(self) -> int:
        """Total bytes used by cached entries."""
        with self.lock:
            result = self.conn.execute("SELECT SUM(file_size) FROM cache_entries").fetchone()[0]
        return result or 0

    def entries(self) -> List[CacheEntry]:
        """All entries, least recently accessed first."""
        with self.lock:
            rows = self.conn.execute("SELECT * FROM cache_entries ORDER BY access_seq ASC").fetchall()
        return [self._row_to_entry(row) for row in rows]

    def is_reserved(self, song_id: str) -> bool:
        with self.lock:
            return self._pins.get(song_id, 0) > 0

    # --- Reads ---

    def get(self, song_id: str) -> Optional[CachedSong]:
        """
        Cached copy of a song, or None when it must be fetched from the network.

        Updates the access time. A stale copy is still returned (flagged
        ``stale``) and a refresh is scheduled in the background.
        """
        with self.lock:
            row = self._row(song_id)
            if row is None:
                return None
            path = Path(row["file_path"])
            if not path.exists():
                # Orphaned entry cleanup
                logger.warning("Cached file for %s disappeared, dropping entry", song_id)
                self.conn.execute("DELETE FROM cache_entries WHERE song_id = ?", (song_id,))
                self.conn.commit()
                return None
            self.conn.execute(
                "UPDATE cache_entries SET last_accessed = ?, access_seq = ? WHERE song_id = ?",
                (utc_now(), self._next_seq(), song_id),
            )
            self.conn.commit()
            hit = CachedSong(
                song_id=song_id,
                path=path,
                size=row["file_size"],
                metadata=Song.from_json(row["metadata_json"]),
                stale=bool(row["stale"]),
            )
            if hit.stale and self.source is not None and song_id not in self._transient:
                self._schedule_refresh(song_id)
        return hit

    def reserve(self, song_id: str):
        """Pin an entry against eviction until the matching ``release``."""
        with self.lock:
            if self._row(song_id) is None:
                raise SongNotFound(f"Song {song_id} is not cached")
            self._pins[song_id] = self._pins.get(song_id, 0) + 1

    def release(self, song_id: str):
        with self.lock:
            count = self._pins.get(song_id, 0)
            if count <= 0:
                raise CacheError(f"Song {song_id} is not reserved")
            if count == 1:
                del self._pins[song_id]
            else:
                self._pins[song_id] = count - 1

    @contextmanager
    def reading(self, song_id: str) -> Iterator[BinaryIO]:
        """Open a cached song for reading while it is reserved."""
        with self.lock:
            hit = self.get(song_id)
            if hit is None:
                raise SongNotFound(f"Song {song_id} is not cached")
            self.reserve(song_id)
        try:
            with open(hit.path, 'rb') as f:
                yield f
        finally:
            self.release(song_id)

    def read_bytes(self, song_id: str) -> Optional[bytes]:
        """Whole cached payload, or None if not cached."""
        try:
            with self.reading(song_id) as f:
                return f.read()
        except SongNotFound:
            return None

    # --- Writes ---

    def _write_temp(self, payload: Union[bytes, BinaryIO]) -> Path:
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=PARTIAL_PREFIX)
        try:
            with os.fdopen(fd, 'wb') as out:
                if isinstance(payload, (bytes, bytearray, memoryview)):
                    out.write(payload)
                else:
                    for chunk in iter(lambda: payload.read(UPLOAD_CHUNK_SIZE), b''):
                        out.write(chunk)
        except BaseException:
            os.remove(tmp_name)
            raise
        return Path(tmp_name)

    def _make_room(self, song_id: str, new_bytes: int):
        """
        Evict unpinned entries, least recently accessed first, until
        ``new_bytes`` fits. Evicts nothing and raises CacheFull if it cannot.
        """
        if new_bytes > self.max_size_bytes:
            raise CacheFull(f"Entry of {new_bytes} bytes exceeds cache capacity of {self.max_size_bytes}")

        rows = self.conn.execute(
            "SELECT song_id, file_path, file_size FROM cache_entries "
            "WHERE song_id != ? ORDER BY access_seq ASC", (song_id,)
        ).fetchall()
        current = sum(row["file_size"] for row in rows)
        needed = current + new_bytes - self.max_size_bytes
        if needed <= 0:
            return

        victims = []
        freed = 0
        for row in rows:
            if self._pins.get(row["song_id"], 0) > 0:
                continue
            victims.append(row)
            freed += row["file_size"]
            if freed >= needed:
                break
        if freed < needed:
            raise CacheFull(f"Cannot free {needed} bytes: remaining entries are reserved")

        for row in victims:
            self._delete_entry(row["song_id"], row["file_path"])
            logger.info("Evicted %s from offline cache (%d bytes)", row["song_id"], row["file_size"])

    def _delete_entry(self, song_id: str, file_path: str):
        try:
            os.remove(file_path)
        except FileNotFoundError:
            pass
        self.conn.execute("DELETE FROM cache_entries WHERE song_id = ?", (song_id,))
        self.conn.commit()

    def _target_path(self, song: Song) -> Path:
        return self.cache_dir / f"{song.id}{AUDIO_CONTENT_TYPES.get(song.content_type, '')}"

    def _install(self, song: Song, tmp_path: Path) -> CachedSong:
        """Move a fully written temp file into place and record it."""
        size = tmp_path.stat().st_size
        try:
            with self.lock:
                self._make_room(song.id, size)
                target = self._target_path(song)
                old = self._row(song.id)
                os.replace(tmp_path, target)
                if old is not None and old["file_path"] != str(target):
                    Path(old["file_path"]).unlink(missing_ok=True)
                now = utc_now()
                self.conn.execute("""
                    INSERT OR REPLACE INTO cache_entries
                    (song_id, file_path, file_size, metadata_json, fetched_at, last_accessed, access_seq, stale)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 0)
                """, (song.id, str(target), size, song.to_json(), now, now, self._next_seq()))
                self.conn.commit()
        finally:
            tmp_path.unlink(missing_ok=True)
        logger.info("Cached %s for offline use (%d bytes)", song.id, size)
        return CachedSong(song_id=song.id, path=target, size=size, metadata=song)

    def insert(self, song: Song, payload: Union[bytes, BinaryIO]) -> CachedSong:
        """
        Add a song's bytes and metadata snapshot, evicting as needed.

        Raises:
            CacheFull: not enough unreserved space can be freed
        """
        return self._install(song, self._write_temp(payload))

    def remove(self, song_id: str) -> bool:
        """Explicitly drop an entry. Reserved entries cannot be removed."""
        with self.lock:
            if self._pins.get(song_id, 0) > 0:
                raise CacheError(f"Song {song_id} is in use")
            row = self._row(song_id)
            if row is None:
                return False
            self._delete_entry(song_id, row["file_path"])
        logger.info("Removed %s from offline cache", song_id)
        return True

    def clear(self) -> int:
        """Remove every unreserved entry. Returns the number removed."""
        removed = 0
        for entry in self.entries():
            with self.lock:
                if self._pins.get(entry.song_id, 0) > 0:
                    continue
                self._delete_entry(entry.song_id, entry.file_path)
                removed += 1
        return removed

    # --- Network fetches ---

    def _require_source(self) -> SongSource:
        if self.source is None:
            raise CacheError("No song source configured for the offline cache")
        return self.source

    def _fetch(self, song_id: str, expected: Optional[Song] = None) -> CachedSong:
        """Download bytes and metadata. Any failure becomes CacheFetchFailed."""
        source = self._require_source()
        try:
            song = expected or source.get_song(song_id)
            if song is None:
                raise SongNotFound(f"Song {song_id} does not exist on the server")
            fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=PARTIAL_PREFIX)
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, 'wb') as out:
                    written = source.download_to(song_id, out)
                if written != song.content_length:
                    raise CacheFetchFailed(
                        f"Downloaded {written} bytes for {song_id}, expected {song.content_length}"
                    )
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise
        except (CacheFetchFailed, CacheFull):
            raise
        except TunelockerError as e:
            raise CacheFetchFailed(f"Fetching {song_id} failed: {e}") from e
        except OSError as e:
            raise CacheFetchFailed(f"Fetching {song_id} failed: {e}") from e
        return self._install(song, tmp_path)

    def _wait_for(self, song_id: str, pending: threading.Event) -> CachedSong:
        """Wait for another caller's fetch or refresh of ``song_id`` and return its result."""
        pending.wait()
        hit = self.get(song_id)
        if hit is None:
            raise CacheFetchFailed(f"Concurrent fetch of {song_id} failed")
        return hit

    def save_for_offline(self, song_id: str) -> CachedSong:
        """
        Make a song available offline.

        Already cached entries are returned as is (stale ones are refreshed).
        Concurrent calls for the same song share one download or refresh.

        Raises:
            CacheFetchFailed: the song could not be fetched (entry stays absent)
            CacheFull: the song does not fit next to reserved entries
        """
        while True:
            with self.lock:
                pending = self._fetches.get(song_id)
                row = None
                if pending is None:
                    row = self._row(song_id)
                    if row is None:
                        owner_event = threading.Event()
                        self._fetches[song_id] = owner_event
                        self._transient[song_id] = CacheState.FETCHING
                        break

            if pending is not None:
                return self._wait_for(song_id, pending)
            if row["stale"]:
                try:
                    return self.refresh(song_id)
                except (CacheFetchFailed, CacheFull):
                    raise
                except TunelockerError as e:
                    raise CacheFetchFailed(f"Refreshing {song_id} failed: {e}") from e
            hit = self.get(song_id)
            if hit is not None:
                return hit
            # The cached file vanished and get() dropped the entry

        try:
            hit = self._fetch(song_id)
            logger.info("Song %s is available offline", song_id)
            return hit
        finally:
            with self.lock:
                self._transient.pop(song_id, None)
                self._fetches.pop(song_id, None)
            owner_event.set()

    # --- Staleness ---

    def mark_stale(self, song_id: str) -> bool:
        with self.lock:
            cursor = self.conn.execute(
                "UPDATE cache_entries SET stale = 1 WHERE song_id = ?", (song_id,)
            )
            self.conn.commit()
            return cursor.rowcount > 0

    def check_staleness(self, song_id: str, server_song: Optional[Song]) -> CacheState:
        """
        Compare the cached snapshot with the server's current record.

        A newer server ``updated_at`` marks the entry stale. A song the server
        no longer has is dropped unless it is reserved.
        """
        with self.lock:
            row = self._row(song_id)
            if row is None:
                return CacheState.ABSENT
            if server_song is None:
                if self._pins.get(song_id, 0) > 0:
                    return self.state(song_id)
                self._delete_entry(song_id, row["file_path"])
                logger.info("Dropped %s from offline cache: deleted on server", song_id)
                return CacheState.EVICTED
            cached = Song.from_json(row["metadata_json"])
            if parse_timestamp(server_song.updated_at) > parse_timestamp(cached.updated_at):
                self.mark_stale(song_id)
                return CacheState.STALE
            return CacheState.STALE if row["stale"] else CacheState.CACHED

    def refresh(self, song_id: str, server_song: Optional[Song] = None) -> CachedSong:
        """
        Bring a cached entry up to date with the server.

        Only the metadata snapshot is replaced when the audio is unchanged;
        otherwise the bytes are downloaded again.
        """
        source = self._require_source()
        with self.lock:
            row = self._row(song_id)
            if row is None:
                raise SongNotFound(f"Song {song_id} is not cached")
            pending = self._fetches.get(song_id)
            if pending is None:
                done = threading.Event()
                self._fetches[song_id] = done
                self._transient[song_id] = CacheState.REFRESHING
        if pending is not None:
            return self._wait_for(song_id, pending)
        try:
            if server_song is None:
                try:
                    server_song = source.get_song(song_id)
                except TunelockerError as e:
                    raise CacheFetchFailed(f"Refreshing {song_id} failed: {e}") from e
            if server_song is None:
                self.check_staleness(song_id, None)
                raise SongNotFound(f"Song {song_id} was deleted on the server")

            cached = Song.from_json(row["metadata_json"])
            if (server_song.content_hash == cached.content_hash
                    and server_song.content_length == cached.content_length
                    and Path(row["file_path"]).exists()):
                with self.lock:
                    self.conn.execute(
                        "UPDATE cache_entries SET metadata_json = ?, fetched_at = ?, stale = 0 WHERE song_id = ?",
                        (server_song.to_json(), utc_now(), song_id),
                    )
                    self.conn.commit()
                logger.info("Refreshed metadata of cached song %s", song_id)
                return CachedSong(song_id=song_id, path=Path(row["file_path"]),
                                  size=row["file_size"], metadata=server_song)
            hit = self._fetch(song_id, expected=server_song)
            logger.info("Re-downloaded cached song %s", song_id)
            return hit
        finally:
            with self.lock:
                self._transient.pop(song_id, None)
                self._fetches.pop(song_id, None)
            done.set()

    def _schedule_refresh(self, song_id: str):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cache-refresh")
        future = self._executor.submit(self.refresh, song_id)

        def _report(done):
            error = done.exception()
            if error is not None:
                logger.warning("Background refresh of %s failed: %s", song_id, error)

        future.add_done_callback(_report)

    def reconcile(self) -> ReconcileSummary:
        """
        Check every entry against the server, refreshing stale ones.

        Runs without holding the lock across network calls, so foreground
        reads are never blocked.
        """
        source = self._require_source()
        summary = ReconcileSummary()
        for entry in self.entries():
            summary.checked += 1
            try:
                server_song = source.get_song(entry.song_id)
            except TunelockerError as e:
                logger.warning("Could not check %s against the server: %s", entry.song_id, e)
                summary.failed += 1
                continue

            state = self.check_staleness(entry.song_id, server_song)
            if state == CacheState.EVICTED:
                summary.removed += 1
            elif state == CacheState.STALE:
                summary.stale += 1
                try:
                    self.refresh(entry.song_id, server_song)
                    summary.refreshed += 1
                except TunelockerError as e:
                    logger.warning("Refresh of %s failed: %s", entry.song_id, e)
                    summary.failed += 1
        logger.info("Cache reconciliation: %s", summary)
        return summary
