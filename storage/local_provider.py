"""
Local filesystem storage provider.
Implements the BlobStore interface on a directory tree.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterator, List, Optional

from shared.constants import STREAM_CHUNK_SIZE, UPLOAD_CHUNK_SIZE
from shared.errors import BlobNotFound, InvalidInput, StorageFailure, StorageWriteFailed
from shared.models import ByteRange
from .blob_store import BlobInfo, BlobStore

logger = logging.getLogger(__name__)


def _iter_file(f: BinaryIO, length: int, chunk_size: int) -> Iterator[bytes]:
    try:
        remaining = length
        while remaining > 0:
            chunk = f.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
    finally:
        f.close()


class LocalStorageProvider(BlobStore):
    """
    Blob store backed by the local filesystem.
    Useful for self-hosting on a NAS or local drive.
    """

    def __init__(self, base_path: Optional[str] = None, chunk_size: int = STREAM_CHUNK_SIZE):
        self.base_path: Optional[Path] = None
        self.chunk_size = chunk_size
        if base_path:
            self.authenticate({'base_path': base_path})

    def authenticate(self, credentials: Dict[str, Any]) -> bool:
        """
        'Authenticate' by setting the root directory.
        In local mode, 'base_path' or 'endpoint' is the root directory.
        """
        path = credentials.get('base_path') or credentials.get('endpoint')
        if not path:
            return False

        self.base_path = Path(path).expanduser().absolute()
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFailure(f"Cannot create blob directory {self.base_path}: {e}") from e
        return True

    def _get_path(self, key: str) -> Path:
        """Absolute path for a key, refusing keys that escape the root."""
        if self.base_path is None:
            raise StorageFailure("Local storage is not configured")
        if not key or key.startswith(("/", "\\")) or ".." in Path(key).parts:
            raise InvalidInput(f"Invalid blob key: {key!r}")
        return self.base_path / key

    def put(self, key: str, stream: BinaryIO, content_type: Optional[str] = None) -> int:
        dest_path = self._get_path(key)
        tmp_name = None
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=dest_path.parent, prefix=".upload-")
            with os.fdopen(fd, 'wb') as out:
                shutil.copyfileobj(stream, out, UPLOAD_CHUNK_SIZE)
                out.flush()
                os.fsync(out.fileno())
            written = os.path.getsize(tmp_name)
            os.replace(tmp_name, dest_path)
            tmp_name = None
            return written
        except OSError as e:
            raise StorageWriteFailed(f"Local write of {key} failed: {e}") from e
        finally:
            if tmp_name and os.path.exists(tmp_name):
                os.remove(tmp_name)

    def get(self, key: str, byte_range: Optional[ByteRange] = None) -> Iterator[bytes]:
        path = self._get_path(key)
        try:
            f = open(path, 'rb')
        except FileNotFoundError:
            raise BlobNotFound(f"Blob {key} not found")
        except OSError as e:
            raise StorageFailure(f"Local read of {key} failed: {e}") from e

        try:
            total = os.fstat(f.fileno()).st_size
            start, end = (byte_range.start, byte_range.end) if byte_range else (0, total)
            f.seek(start)
        except OSError as e:
            f.close()
            raise StorageFailure(f"Local read of {key} failed: {e}") from e
        return _iter_file(f, max(0, min(end, total) - start), self.chunk_size)

    def delete(self, key: str) -> None:
        path = self._get_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageFailure(f"Local delete of {key} failed: {e}") from e

    def exists(self, key: str) -> bool:
        return self._get_path(key).is_file()

    def size(self, key: str) -> int:
        try:
            return self._get_path(key).stat().st_size
        except FileNotFoundError:
            raise BlobNotFound(f"Blob {key} not found")

    def list_blobs(self, prefix: Optional[str] = None) -> List[BlobInfo]:
        search_path = self._get_path(prefix) if prefix else self.base_path
        if not search_path.exists():
            return []

        blobs = []
        for root, _, filenames in os.walk(search_path):
            for filename in filenames:
                # In-progress uploads are not blobs yet
                if filename.startswith(".upload-"):
                    continue
                full_path = Path(root) / filename
                try:
                    stat = full_path.stat()
                except FileNotFoundError:
                    continue
                blobs.append(BlobInfo(
                    key=full_path.relative_to(self.base_path).as_posix(),
                    size=stat.st_size,
                    modified=stat.st_mtime,
                ))
        return blobs
