"""
Playlist management.

Playlists reference songs by id. Reading a playlist resolves every reference
against the metadata store; references to deleted songs come back as dangling
entries instead of being dropped or matched to another song.
"""

import logging
import threading
from typing import Iterable, List, Optional

from shared.database import MetadataStore
from shared.errors import InvalidInput, PlaylistNotFound, SongNotFound
from shared.models import Playlist, PlaylistEntry, PlaylistView

logger = logging.getLogger(__name__)


class PlaylistService:
    """CRUD and ordering operations on playlists."""

    def __init__(self, metadata_store: MetadataStore):
        self.metadata_store = metadata_store
        self._lock = threading.Lock()

    @staticmethod
    def _clean_name(name: Optional[str]) -> str:
        name = (name or "").strip()
        if not name:
            raise InvalidInput("Playlist name must not be empty")
        return name

    def _require_songs(self, song_ids: Iterable[str]):
        for song_id in song_ids:
            if self.metadata_store.get(song_id) is None:
                raise SongNotFound(f"Song {song_id} not found")

    def _load(self, playlist_id: str) -> Playlist:
        playlist = self.metadata_store.get_playlist(playlist_id)
        if playlist is None:
            raise PlaylistNotFound(f"Playlist {playlist_id} not found")
        return playlist

    def _save(self, playlist: Playlist) -> Playlist:
        playlist.touch()
        self.metadata_store.save_playlist(playlist)
        return playlist

    def create(self, name: str, song_ids: Iterable[str] = ()) -> Playlist:
        song_ids = list(song_ids)
        self._require_songs(song_ids)
        playlist = Playlist(id=Playlist.generate_id(), name=self._clean_name(name), song_ids=song_ids)
        self.metadata_store.save_playlist(playlist)
        logger.info("Created playlist %s (%d songs)", playlist.name, len(song_ids))
        return playlist

    def get(self, playlist_id: str) -> PlaylistView:
        """Playlist with every position resolved; missing songs are flagged dangling."""
        playlist = self._load(playlist_id)
        resolved = {}
        entries = []
        for position, song_id in enumerate(playlist.song_ids):
            if song_id not in resolved:
                resolved[song_id] = self.metadata_store.get(song_id)
            entries.append(PlaylistEntry(position=position, song_id=song_id, song=resolved[song_id]))
        return PlaylistView(playlist=playlist, entries=entries)

    def list(self) -> List[Playlist]:
        return self.metadata_store.list_playlists()

    def rename(self, playlist_id: str, name: str) -> Playlist:
        with self._lock:
            playlist = self._load(playlist_id)
            playlist.name = self._clean_name(name)
            return self._save(playlist)

    def add_song(self, playlist_id: str, song_id: str, position: Optional[int] = None) -> Playlist:
        self._require_songs([song_id])
        with self._lock:
            playlist = self._load(playlist_id)
            if position is None:
                playlist.song_ids.append(song_id)
            elif 0 <= position <= len(playlist.song_ids):
                playlist.song_ids.insert(position, song_id)
            else:
                raise InvalidInput(f"Position {position} is out of range")
            return self._save(playlist)

    def remove_at(self, playlist_id: str, position: int) -> Playlist:
        with self._lock:
            playlist = self._load(playlist_id)
            if not 0 <= position < len(playlist.song_ids):
                raise InvalidInput(f"Position {position} is out of range")
            del playlist.song_ids[position]
            return self._save(playlist)

    def move(self, playlist_id: str, from_position: int, to_position: int) -> Playlist:
        with self._lock:
            playlist = self._load(playlist_id)
            size = len(playlist.song_ids)
            if not (0 <= from_position < size and 0 <= to_position < size):
                raise InvalidInput("Move positions are out of range")
            song_id = playlist.song_ids.pop(from_position)
            playlist.song_ids.insert(to_position, song_id)
            return self._save(playlist)

    def prune_dangling(self, playlist_id: str) -> int:
        """Drop references to songs that no longer exist. Returns how many were removed."""
        with self._lock:
            playlist = self._load(playlist_id)
            existing = {sid for sid in set(playlist.song_ids) if self.metadata_store.get(sid) is not None}
            kept = [sid for sid in playlist.song_ids if sid in existing]
            removed = len(playlist.song_ids) - len(kept)
            if removed:
                playlist.song_ids = kept
                self._save(playlist)
                logger.info("Pruned %d dangling entries from playlist %s", removed, playlist.name)
            return removed

    def delete(self, playlist_id: str) -> None:
        if not self.metadata_store.delete_playlist(playlist_id):
            raise PlaylistNotFound(f"Playlist {playlist_id} not found")
