import io

import pytest

from library.manager import LibraryManager
from shared.api import create_app
from shared.config import ServerConfig
from shared.database import SqliteMetadataStore
from storage.local_provider import LocalStorageProvider


def audio_bytes(size: int, seed: int = 0) -> bytes:
    """Deterministic pseudo audio payload of ``size`` bytes."""
    pattern = bytes((i * 31 + seed) % 256 for i in range(256))
    return (pattern * (size // 256 + 1))[:size]


@pytest.fixture
def blob_store(tmp_path):
    return LocalStorageProvider(str(tmp_path / "blobs"))


@pytest.fixture
def metadata_store(tmp_path):
    return SqliteMetadataStore(str(tmp_path / "library.db"))


@pytest.fixture
def server_config(tmp_path):
    return ServerConfig(
        endpoint=str(tmp_path / "blobs"),
        metadata_db_path=str(tmp_path / "library.db"),
        max_upload_bytes=20 * 1024 * 1024,
    )


@pytest.fixture
def manager(blob_store, metadata_store, server_config):
    return LibraryManager(blob_store, metadata_store, server_config)


@pytest.fixture
def ingest(manager):
    def _ingest(size=1024, content_type="audio/mpeg", seed=0, **kwargs):
        data = audio_bytes(size, seed)
        return manager.ingest(io.BytesIO(data), content_type, size, **kwargs)
    return _ingest


@pytest.fixture
def app(manager, server_config):
    application = create_app(manager, server_config)
    application.config['TESTING'] = True
    return application


@pytest.fixture
def client(app):
    return app.test_client()
