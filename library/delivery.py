"""
Delivery service: resolves a song id to a playable byte range.

Resolution is pure bookkeeping over the metadata record; bytes are only read
from the blob store when the transport asks for the payload. Streaming and
download share the same path and differ only in the disposition hint.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Tuple

from shared.constants import DEFAULT_URL_EXPIRY_SECONDS
from shared.database import MetadataStore
from shared.errors import InvalidRange, SongNotFound
from shared.models import ByteRange, Song
from storage.blob_store import BlobStore
from .audio import extension_for

logger = logging.getLogger(__name__)

RANGE_HEADER_RE = re.compile(r"^bytes=(\d*)-(\d*)$")
UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')


class DeliveryStatus(Enum):
    FULL_CONTENT = "full_content"
    PARTIAL_CONTENT = "partial_content"
    NOT_FOUND = "not_found"
    RANGE_NOT_SATISFIABLE = "range_not_satisfiable"


@dataclass
class Resolution:
    """
    Outcome of resolving a song for playback or download.

    ``total_length`` is set whenever the song exists, including when the range
    is not satisfiable, so clients can render seek bars and retry.
    """
    status: DeliveryStatus
    song_id: str
    song: Optional[Song] = None
    byte_range: Optional[ByteRange] = None
    total_length: Optional[int] = None
    content_type: Optional[str] = None
    disposition: str = "inline"
    filename: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (DeliveryStatus.FULL_CONTENT, DeliveryStatus.PARTIAL_CONTENT)

    @property
    def is_partial(self) -> bool:
        return self.status == DeliveryStatus.PARTIAL_CONTENT


def parse_range_header(header: Optional[str], total: int) -> Optional[Tuple[int, Optional[int]]]:
    """
    Parse an HTTP ``Range`` header into a half-open ``(start, end)`` request.

    ``end`` is None for open ranges. Suffix ranges (``bytes=-N``) are turned
    into absolute offsets against ``total``. Multiple ranges are not supported.

    Raises:
        InvalidRange: header is malformed
    """
    if header is None or not header.strip():
        return None
    match = RANGE_HEADER_RE.match(header.strip().replace(" ", ""))
    if not match:
        raise InvalidRange(f"Unsupported Range header: {header!r}")
    first, last = match.groups()
    if not first and not last:
        raise InvalidRange(f"Unsupported Range header: {header!r}")
    if not first:
        suffix = int(last)
        if suffix == 0:
            raise InvalidRange("Suffix range must not be empty")
        return max(0, total - suffix), None
    start = int(first)
    if not last:
        return start, None
    end_inclusive = int(last)
    if end_inclusive < start:
        raise InvalidRange(f"Range end {end_inclusive} is before start {start}")
    return start, end_inclusive + 1


def download_filename(song: Song) -> str:
    ext = extension_for(song.content_type)
    name = f"{song.artist} - {song.title}" if song.artist else song.title
    name = UNSAFE_FILENAME_CHARS.sub("_", name).strip() or song.id
    return f"{name}{ext}"


class DeliveryService:
    """Maps song ids and byte ranges to blob reads."""

    def __init__(self, metadata_store: MetadataStore, blob_store: BlobStore):
        self.metadata_store = metadata_store
        self.blob_store = blob_store

    def resolve(self, song_id: str, requested_range: Optional[Tuple[int, Optional[int]]] = None,
                *, download: bool = False) -> Resolution:
        """
        Resolve ``song_id`` and an optional half-open ``(start, end)`` range.

        A start at or past the end of the resource is not satisfiable; an end
        past it is clamped. Without a range the full content is resolved.

        Raises:
            InvalidRange: negative start or an end not after the start
        """
        if requested_range is not None:
            start, end = requested_range
            if start < 0:
                raise InvalidRange(f"Range start {start} is negative")
            if end is not None and end <= start:
                raise InvalidRange(f"Range end {end} is not after start {start}")

        song = self.metadata_store.get(song_id)
        if song is None:
            return Resolution(status=DeliveryStatus.NOT_FOUND, song_id=song_id)

        total = song.content_length
        resolution = Resolution(
            status=DeliveryStatus.FULL_CONTENT,
            song_id=song_id,
            song=song,
            total_length=total,
            content_type=song.content_type,
        )
        if download:
            resolution.disposition = "attachment"
            resolution.filename = download_filename(song)

        if requested_range is None:
            resolution.byte_range = ByteRange(0, total)
            return resolution

        start, end = requested_range
        if start >= total:
            resolution.status = DeliveryStatus.RANGE_NOT_SATISFIABLE
            return resolution

        resolution.status = DeliveryStatus.PARTIAL_CONTENT
        resolution.byte_range = ByteRange(start, total if end is None else min(end, total))
        return resolution

    def open_payload(self, resolution: Resolution) -> Iterator[bytes]:
        """
        Iterator over the resolved bytes.

        Raises:
            SongNotFound: the song does not exist
            InvalidRange: the range is not satisfiable
            BlobNotFound: the record exists but its blob does not
        """
        if resolution.status == DeliveryStatus.NOT_FOUND:
            raise SongNotFound(f"Song {resolution.song_id} not found")
        if not resolution.ok:
            raise InvalidRange(f"Range is not satisfiable for {resolution.total_length} bytes")
        return self.blob_store.get(resolution.song.blob_key, resolution.byte_range)

    def read(self, song_id: str, requested_range: Optional[Tuple[int, Optional[int]]] = None) -> bytes:
        """Resolve and read the whole payload into memory. Mostly for small ranges."""
        return b"".join(self.open_payload(self.resolve(song_id, requested_range)))

    def redirect_url(self, resolution: Resolution,
                     expires_in: int = DEFAULT_URL_EXPIRY_SECONDS) -> Optional[str]:
        """Provider URL for the blob when the store can issue one."""
        if not resolution.ok:
            return None
        return self.blob_store.get_url(resolution.song.blob_key, expires_in)
