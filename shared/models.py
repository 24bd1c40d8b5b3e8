"""
Data models for songs, playlists, byte ranges and offline cache entries.

This module defines the core data structures shared by the server-side
library core and the client-side offline cache.
"""

from dataclasses import dataclass, asdict, field, fields
from typing import List, Dict, Optional, Any
from datetime import datetime, timedelta, timezone
from enum import Enum
import json
import uuid


def utc_now() -> str:
    """Current UTC time as a fixed-width ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def advance_timestamp(previous: Optional[str]) -> str:
    """Return a timestamp strictly later than ``previous``."""
    now = datetime.now(timezone.utc)
    if previous:
        floor = parse_timestamp(previous) + timedelta(microseconds=1)
        if now < floor:
            now = floor
    return now.isoformat(timespec="microseconds")


class StorageProvider(Enum):
    """Supported blob storage backends."""
    LOCAL = "local"
    AWS_S3 = "s3"
    CLOUDFLARE_R2 = "r2"
    BACKBLAZE_B2 = "b2"


class SortOrder(Enum):
    """Catalog listing orders."""
    CREATED_DESC = "created_desc"
    TITLE_ASC = "title_asc"
    ARTIST_ASC = "artist_asc"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SortOrder":
        if not value:
            return cls.CREATED_DESC
        aliases = {"created": cls.CREATED_DESC, "title": cls.TITLE_ASC, "artist": cls.ARTIST_ASC}
        if value in aliases:
            return aliases[value]
        return cls(value)


@dataclass
class Song:
    """
    Metadata record describing one stored audio blob.

    Attributes:
        id: Unique identifier assigned at ingestion
        title: Song title
        artist: Artist name
        blob_key: Key of the audio bytes in the blob store
        content_length: Size of the blob in bytes
        content_type: MIME type declared at upload
        content_hash: SHA256 of the audio bytes
        created_at: Ingestion timestamp (UTC ISO-8601)
        updated_at: Last metadata modification timestamp
        duration: Duration in seconds, None when unknown
        artwork_key: Optional blob key of cover art
        original_filename: File name supplied by the uploader
    """
    id: str
    title: str
    artist: str
    blob_key: str
    content_length: int
    content_type: str
    content_hash: str
    created_at: str
    updated_at: str
    duration: Optional[float] = None
    artwork_key: Optional[str] = None
    original_filename: Optional[str] = None

    @staticmethod
    def generate_id() -> str:
        """Generate a unique song ID."""
        return uuid.uuid4().hex

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Song':
        """Create Song from dictionary, filtering unknown keys."""
        field_names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in field_names})

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> 'Song':
        return cls.from_dict(json.loads(json_str))


@dataclass
class SongPatch:
    """Editable subset of a Song. Fields left as None are not touched."""
    title: Optional[str] = None
    artist: Optional[str] = None
    artwork_key: Optional[str] = None
    duration: Optional[float] = None

    EDITABLE = ("title", "artist", "artwork_key", "duration")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SongPatch':
        from shared.errors import InvalidInput

        unknown = set(data) - set(cls.EDITABLE)
        if unknown:
            raise InvalidInput(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        for name in ("title", "artist"):
            value = data.get(name)
            if value is not None and not str(value).strip():
                raise InvalidInput(f"{name} must not be empty")
        duration = data.get("duration")
        if duration is not None:
            try:
                duration = float(duration)
            except (TypeError, ValueError):
                raise InvalidInput("duration must be a number")
            if duration < 0:
                raise InvalidInput("duration must not be negative")
        return cls(
            title=data.get("title"),
            artist=data.get("artist"),
            artwork_key=data.get("artwork_key"),
            duration=duration,
        )

    def changes(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.EDITABLE if getattr(self, name) is not None}

    def is_empty(self) -> bool:
        return not self.changes()


@dataclass
class Playlist:
    """
    Ordered list of song references.

    Duplicates are allowed and order is significant.
    """
    id: str
    name: str
    song_ids: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @staticmethod
    def generate_id() -> str:
        return uuid.uuid4().hex

    def touch(self) -> None:
        self.updated_at = advance_timestamp(self.updated_at)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Playlist':
        field_names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in field_names})


@dataclass
class PlaylistEntry:
    """One resolved position of a playlist. ``song`` is None when dangling."""
    position: int
    song_id: str
    song: Optional[Song] = None

    @property
    def dangling(self) -> bool:
        return self.song is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "song_id": self.song_id,
            "dangling": self.dangling,
            "song": self.song.to_dict() if self.song else None,
        }


@dataclass
class PlaylistView:
    playlist: Playlist
    entries: List[PlaylistEntry]

    @property
    def dangling(self) -> List[PlaylistEntry]:
        return [e for e in self.entries if e.dangling]

    def to_dict(self) -> Dict[str, Any]:
        data = self.playlist.to_dict()
        data["entries"] = [e.to_dict() for e in self.entries]
        data["dangling_count"] = len(self.dangling)
        return data


@dataclass(frozen=True)
class ByteRange:
    """Half-open byte range ``[start, end)``."""
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start

    def to_content_range(self, total: int) -> str:
        # HTTP ranges are inclusive
        return f"bytes {self.start}-{self.end - 1}/{total}"


class CacheState(Enum):
    """Lifecycle of an offline cache entry."""
    ABSENT = "absent"
    FETCHING = "fetching"
    CACHED = "cached"
    STALE = "stale"
    REFRESHING = "refreshing"
    EVICTED = "evicted"


@dataclass
class CacheEntry:
    """Persisted record of one song mirrored into the offline cache."""
    song_id: str
    file_path: str
    size: int
    metadata: Song
    fetched_at: str
    last_accessed: str
    stale: bool = False
