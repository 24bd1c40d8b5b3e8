"""
Metadata store for song records and playlists.

``MetadataStore`` is the adapter interface the library core depends on;
``SqliteMetadataStore`` is the bundled implementation. Every write is a single
SQLite transaction, so single-record writes are atomic.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from shared.errors import SongNotFound, StorageFailure, StorageWriteFailed
from shared.models import Playlist, Song, SongPatch, SortOrder, advance_timestamp

logger = logging.getLogger(__name__)

SONG_COLUMNS = (
    "id", "title", "artist", "blob_key", "content_length", "content_type",
    "content_hash", "created_at", "updated_at", "duration", "artwork_key",
    "original_filename",
)

ORDER_BY = {
    SortOrder.CREATED_DESC: "created_at DESC, id ASC",
    SortOrder.TITLE_ASC: "casefold(title) ASC, created_at DESC, id ASC",
    SortOrder.ARTIST_ASC: "casefold(artist) ASC, created_at DESC, id ASC",
}


def _casefold(value):
    return value.casefold() if isinstance(value, str) else value


class MetadataStore(ABC):
    """Durable mapping from song identity to its record, plus playlists."""

    @abstractmethod
    def create(self, song: Song) -> str:
        """Insert a new record. Raises StorageWriteFailed on any error."""

    @abstractmethod
    def get(self, song_id: str) -> Optional[Song]:
        """Return the record, or None when it does not exist."""

    @abstractmethod
    def update(self, song_id: str, patch: SongPatch) -> Song:
        """Apply ``patch`` and advance ``updated_at``. Raises SongNotFound."""

    @abstractmethod
    def delete(self, song_id: str) -> None:
        """Remove the record. Raises SongNotFound."""

    @abstractmethod
    def query(self, text: Optional[str] = None, sort: SortOrder = SortOrder.CREATED_DESC,
              limit: Optional[int] = None, offset: int = 0) -> List[Song]:
        """Case-insensitive substring match over title and artist."""

    @abstractmethod
    def count(self, text: Optional[str] = None) -> int:
        pass

    @abstractmethod
    def blob_keys(self) -> List[Tuple[str, str]]:
        """(song_id, blob_key) for every record."""

    @abstractmethod
    def save_playlist(self, playlist: Playlist) -> None:
        pass

    @abstractmethod
    def get_playlist(self, playlist_id: str) -> Optional[Playlist]:
        pass

    @abstractmethod
    def list_playlists(self) -> List[Playlist]:
        pass

    @abstractmethod
    def delete_playlist(self, playlist_id: str) -> bool:
        pass


class SqliteMetadataStore(MetadataStore):
    """SQLite implementation. A connection is opened per operation."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self, write_error=StorageFailure) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=20)
        except sqlite3.Error as e:
            raise StorageFailure(f"Cannot open metadata store: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.create_function("casefold", 1, _casefold, deterministic=True)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise write_error(f"Metadata store error: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS songs (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    artist TEXT NOT NULL,
                    blob_key TEXT NOT NULL UNIQUE,
                    content_length INTEGER NOT NULL,
                    content_type TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    duration REAL,
                    artwork_key TEXT,
                    original_filename TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_songs_created ON songs(created_at)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS playlists (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    song_ids TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    @staticmethod
    def _row_to_song(row: sqlite3.Row) -> Song:
        return Song.from_dict(dict(row))

    # --- Songs ---

    def create(self, song: Song) -> str:
        placeholders = ", ".join("?" for _ in SONG_COLUMNS)
        values = tuple(getattr(song, name) for name in SONG_COLUMNS)
        with self._connect(write_error=StorageWriteFailed) as conn:
            conn.execute(
                f"INSERT INTO songs ({', '.join(SONG_COLUMNS)}) VALUES ({placeholders})",
                values,
            )
        logger.debug("Created song record %s (%s)", song.id, song.blob_key)
        return song.id

    def get(self, song_id: str) -> Optional[Song]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM songs WHERE id = ?", (song_id,)).fetchone()
        return self._row_to_song(row) if row else None

    def update(self, song_id: str, patch: SongPatch) -> Song:
        changes = patch.changes()
        with self._connect(write_error=StorageWriteFailed) as conn:
            row = conn.execute("SELECT * FROM songs WHERE id = ?", (song_id,)).fetchone()
            if row is None:
                raise SongNotFound(f"Song {song_id} not found")
            changes["updated_at"] = advance_timestamp(row["updated_at"])
            assignments = ", ".join(f"{name} = ?" for name in changes)
            conn.execute(
                f"UPDATE songs SET {assignments} WHERE id = ?",
                (*changes.values(), song_id),
            )
            updated = conn.execute("SELECT * FROM songs WHERE id = ?", (song_id,)).fetchone()
        return self._row_to_song(updated)

    def delete(self, song_id: str) -> None:
        with self._connect(write_error=StorageWriteFailed) as conn:
            cursor = conn.execute("DELETE FROM songs WHERE id = ?", (song_id,))
            if cursor.rowcount == 0:
                raise SongNotFound(f"Song {song_id} not found")

    @staticmethod
    def _where(text: Optional[str]) -> Tuple[str, tuple]:
        if not text or not text.strip():
            return "", ()
        needle = text.strip().casefold()
        return ("WHERE instr(casefold(title), ?) > 0 OR instr(casefold(artist), ?) > 0",
                (needle, needle))

    def query(self, text: Optional[str] = None, sort: SortOrder = SortOrder.CREATED_DESC,
              limit: Optional[int] = None, offset: int = 0) -> List[Song]:
        where, params = self._where(text)
        sql = f"SELECT * FROM songs {where} ORDER BY {ORDER_BY[sort]}"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = params + (limit, offset)
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params = params + (offset,)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_song(row) for row in rows]

    def count(self, text: Optional[str] = None) -> int:
        where, params = self._where(text)
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM songs {where}", params).fetchone()[0]

    def blob_keys(self) -> List[Tuple[str, str]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id, blob_key FROM songs").fetchall()
        return [(row["id"], row["blob_key"]) for row in rows]

    # --- Playlists ---

    def save_playlist(self, playlist: Playlist) -> None:
        with self._connect(write_error=StorageWriteFailed) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO playlists (id, name, song_ids, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (playlist.id, playlist.name, json.dumps(playlist.song_ids),
                  playlist.created_at, playlist.updated_at))

    @staticmethod
    def _row_to_playlist(row: sqlite3.Row) -> Playlist:
        data = dict(row)
        data["song_ids"] = json.loads(data["song_ids"])
        return Playlist.from_dict(data)

    def get_playlist(self, playlist_id: str) -> Optional[Playlist]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM playlists WHERE id = ?", (playlist_id,)).fetchone()
        return self._row_to_playlist(row) if row else None

    def list_playlists(self) -> List[Playlist]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM playlists ORDER BY created_at ASC").fetchall()
        return [self._row_to_playlist(row) for row in rows]

    def delete_playlist(self, playlist_id: str) -> bool:
        with self._connect(write_error=StorageWriteFailed) as conn:
            cursor = conn.execute("DELETE FROM playlists WHERE id = ?", (playlist_id,))
            return cursor.rowcount > 0
