"""
Catalog queries over song metadata.

Listings always read the metadata store at call time; nothing is cached here.
"""

from typing import List, Optional, Union

from shared.database import MetadataStore
from shared.errors import InvalidInput, SongNotFound
from shared.models import Song, SortOrder


class CatalogService:
    """Search and listing over song records."""

    def __init__(self, metadata_store: MetadataStore):
        self.metadata_store = metadata_store

    @staticmethod
    def _sort(sort: Union[SortOrder, str, None]) -> SortOrder:
        if isinstance(sort, SortOrder):
            return sort
        try:
            return SortOrder.parse(sort)
        except ValueError:
            raise InvalidInput(f"Unknown sort order: {sort!r}")

    def list(self, query: Optional[str] = None, sort: Union[SortOrder, str, None] = None,
             limit: Optional[int] = None, offset: int = 0) -> List[Song]:
        """
        Songs whose title or artist contains ``query`` (case-insensitive).

        Defaults to newest first. An empty list means no matches.
        """
        if limit is not None and limit < 0:
            raise InvalidInput("limit must not be negative")
        if offset < 0:
            raise InvalidInput("offset must not be negative")
        return self.metadata_store.query(query, self._sort(sort), limit, offset)

    def count(self, query: Optional[str] = None) -> int:
        return self.metadata_store.count(query)

    def get(self, song_id: str) -> Song:
        song = self.metadata_store.get(song_id)
        if song is None:
            raise SongNotFound(f"Song {song_id} not found")
        return song
