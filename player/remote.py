"""
HTTP client for the library API, used by the offline cache to fetch songs.
"""

import logging
from abc import ABC, abstractmethod
from typing import BinaryIO, List, Optional

import requests

from shared.constants import DEFAULT_DOWNLOAD_CHUNK_SIZE, DEFAULT_NETWORK_TIMEOUT
from shared.errors import SongNotFound, StorageFailure
from shared.models import Song

logger = logging.getLogger(__name__)


class SongSource(ABC):
    """Where the offline cache gets server records and bytes from."""

    @abstractmethod
    def get_song(self, song_id: str) -> Optional[Song]:
        """Current server record, or None if the song no longer exists."""

    @abstractmethod
    def download_to(self, song_id: str, fileobj: BinaryIO) -> int:
        """Write the full audio payload to ``fileobj``. Returns bytes written."""


class RemoteLibrary(SongSource):
    """SongSource over the HTTP API."""

    def __init__(self, base_url: str, timeout: int = DEFAULT_NETWORK_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api{path}"

    def _get(self, path: str, **kwargs) -> requests.Response:
        try:
            return self.session.get(self._url(path), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise StorageFailure(f"Request to {path} failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: requests.Response, what: str):
        if response.status_code == 404:
            raise SongNotFound(f"{what} not found on server")
        if response.status_code >= 400:
            raise StorageFailure(f"Server returned {response.status_code} for {what}")

    def get_song(self, song_id: str) -> Optional[Song]:
        response = self._get(f"/songs/{song_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"song {song_id}")
        return Song.from_dict(response.json())

    def list_songs(self, query: Optional[str] = None, sort: Optional[str] = None,
                   limit: Optional[int] = None) -> List[Song]:
        params = {k: v for k, v in (('q', query), ('sort', sort), ('limit', limit)) if v}
        response = self._get("/songs", params=params)
        self._raise_for_status(response, "song listing")
        return [Song.from_dict(item) for item in response.json()["songs"]]

    def download_to(self, song_id: str, fileobj: BinaryIO) -> int:
        response = self._get(f"/songs/{song_id}/download", stream=True)
        with response:
            self._raise_for_status(response, f"song {song_id}")
            written = 0
            try:
                for chunk in response.iter_content(chunk_size=DEFAULT_DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        fileobj.write(chunk)
                        written += len(chunk)
            except requests.RequestException as e:
                raise StorageFailure(f"Download of {song_id} interrupted: {e}") from e
        logger.debug("Downloaded %s (%d bytes)", song_id, written)
        return written
