import hashlib
import io
import threading
from unittest import mock

import pytest

from conftest import audio_bytes
from library.delivery import DeliveryStatus
from shared.errors import (
    IncompleteStream,
    IngestCancelled,
    InvalidFormat,
    InvalidInput,
    StorageWriteFailed,
    TooLarge,
)
from shared.constants import TRACKS_PREFIX, UNKNOWN_ARTIST


class FailingStream(io.RawIOBase):
    """Yields ``good`` bytes, then raises on the next read."""

    def __init__(self, good: bytes):
        self._data = io.BytesIO(good)

    def readable(self):
        return True

    def read(self, size=-1):
        chunk = self._data.read(size)
        if not chunk:
            raise OSError("connection reset")
        return chunk


def _all_blobs(blob_store):
    return blob_store.list_blobs(TRACKS_PREFIX)


def test_ingest_five_megabytes_then_resolve_range(manager, ingest):
    size = 5_000_000
    song = ingest(size, "audio/mpeg")

    assert song.content_length == size
    assert song.content_type == "audio/mpeg"
    assert song.content_hash == hashlib.sha256(audio_bytes(size)).hexdigest()

    resolution = manager.delivery.resolve(song.id, (1_000_000, 2_000_000))
    assert resolution.status == DeliveryStatus.PARTIAL_CONTENT
    assert (resolution.byte_range.start, resolution.byte_range.end) == (1_000_000, 2_000_000)
    assert resolution.total_length == 5_000_000


def test_full_resolve_reports_declared_size(manager, ingest):
    for size in (1, 255, 70_000):
        song = ingest(size)
        resolution = manager.delivery.resolve(song.id)
        assert resolution.status == DeliveryStatus.FULL_CONTENT
        assert resolution.total_length == size


def test_rejects_non_audio_without_touching_stores(manager, blob_store, metadata_store):
    with mock.patch.object(blob_store, "put") as put, \
            mock.patch.object(metadata_store, "create") as create:
        with pytest.raises(InvalidInput) as excinfo:
            manager.ingest(io.BytesIO(b"\x89PNG"), "image/png", 4)
    assert isinstance(excinfo.value, InvalidFormat)
    put.assert_not_called()
    create.assert_not_called()
    assert metadata_store.count() == 0


def test_content_type_parameters_and_case_are_normalised(ingest):
    song = ingest(10, "Audio/MPEG; charset=binary")
    assert song.content_type == "audio/mpeg"


def test_declared_size_above_limit(manager, blob_store):
    manager.ingestion.max_upload_bytes = 100
    with pytest.raises(TooLarge):
        manager.ingest(io.BytesIO(b"x" * 101), "audio/mpeg", 101)
    assert _all_blobs(blob_store) == []


@pytest.mark.parametrize("declared", [0, -5, None, "12"])
def test_declared_size_must_be_positive_integer(manager, declared):
    with pytest.raises(InvalidInput):
        manager.ingest(io.BytesIO(b"abc"), "audio/mpeg", declared)


def test_short_stream_is_incomplete(manager, blob_store, metadata_store):
    with pytest.raises(IncompleteStream):
        manager.ingest(io.BytesIO(b"x" * 10), "audio/mpeg", 20)
    assert _all_blobs(blob_store) == []
    assert metadata_store.count() == 0


def test_stream_error_is_incomplete(manager, blob_store):
    with pytest.raises(IncompleteStream):
        manager.ingest(FailingStream(b"x" * 10), "audio/mpeg", 20)
    assert _all_blobs(blob_store) == []


def test_overlong_stream_is_too_large(manager, blob_store):
    with pytest.raises(TooLarge):
        manager.ingest(io.BytesIO(b"x" * 30), "audio/mpeg", 20)
    assert _all_blobs(blob_store) == []


def test_metadata_failure_removes_blob(manager, blob_store, metadata_store):
    written_keys = []
    real_put = blob_store.put

    def recording_put(key, stream, content_type=None):
        written_keys.append(key)
        return real_put(key, stream, content_type)

    with mock.patch.object(blob_store, "put", side_effect=recording_put), \
            mock.patch.object(metadata_store, "create", side_effect=StorageWriteFailed("disk full")):
        with pytest.raises(StorageWriteFailed):
            manager.ingest(io.BytesIO(audio_bytes(4096)), "audio/mpeg", 4096)

    assert len(written_keys) == 1
    assert not blob_store.exists(written_keys[0])
    assert metadata_store.count() == 0


def test_unexpected_metadata_error_is_wrapped_and_compensated(manager, blob_store, metadata_store):
    with mock.patch.object(metadata_store, "create", side_effect=RuntimeError("boom")):
        with pytest.raises(StorageWriteFailed):
            manager.ingest(io.BytesIO(b"y" * 64), "audio/mpeg", 64)
    assert _all_blobs(blob_store) == []


def test_cancel_after_blob_write_leaves_no_blob(manager, blob_store, metadata_store):
    cancel = threading.Event()
    real_put = blob_store.put

    def put_then_cancel(key, stream, content_type=None):
        written = real_put(key, stream, content_type)
        cancel.set()
        return written

    with mock.patch.object(blob_store, "put", side_effect=put_then_cancel):
        with pytest.raises(IngestCancelled):
            manager.ingest(io.BytesIO(b"z" * 128), "audio/mpeg", 128, cancel_event=cancel)

    assert _all_blobs(blob_store) == []
    assert metadata_store.count() == 0


def test_cancel_before_start_writes_nothing(manager, blob_store):
    cancel = threading.Event()
    cancel.set()
    with mock.patch.object(blob_store, "put") as put:
        with pytest.raises(IngestCancelled):
            manager.ingest(io.BytesIO(b"z" * 128), "audio/mpeg", 128, cancel_event=cancel)
    put.assert_not_called()


def test_identical_uploads_get_distinct_identities(ingest):
    first = ingest(512, seed=3)
    second = ingest(512, seed=3)
    assert first.id != second.id
    assert first.blob_key != second.blob_key
    assert first.content_hash == second.content_hash


def test_same_bytes_in_same_clock_tick_keep_both_songs(manager, ingest):
    manager.ingestion.clock = lambda: 42
    first = ingest(2048, seed=5)
    second = ingest(2048, seed=5)

    assert first.blob_key != second.blob_key
    for song in (first, second):
        assert manager.delivery.resolve(song.id).status == DeliveryStatus.FULL_CONTENT
        assert manager.delivery.read(song.id) == audio_bytes(2048, 5)


def test_failed_duplicate_ingest_leaves_first_song_intact(manager, ingest, blob_store, metadata_store):
    manager.ingestion.clock = lambda: 42
    first = ingest(2048, seed=5)

    with mock.patch.object(metadata_store, "create", side_effect=StorageWriteFailed("disk full")):
        with pytest.raises(StorageWriteFailed):
            ingest(2048, seed=5)

    assert blob_store.exists(first.blob_key)
    assert [b.key for b in _all_blobs(blob_store)] == [first.blob_key]


def test_blob_key_layout(ingest):
    song = ingest(100)
    assert song.blob_key.startswith(f"{TRACKS_PREFIX}{song.content_hash[:2]}/{song.content_hash}-")
    assert song.blob_key.endswith(f"-{song.id}.mp3")


def test_default_metadata(ingest):
    named = ingest(10, original_filename="Night_Drive.mp3")
    assert named.title == "Night Drive"
    assert named.artist == UNKNOWN_ARTIST
    assert named.duration is None
    assert named.created_at == named.updated_at

    titled = ingest(10, title="  Real Title ", artist="Band")
    assert titled.title == "Real Title"
    assert titled.artist == "Band"


def test_duration_probe_of_unrecognised_audio_is_unknown(manager, ingest):
    manager.ingestion.probe_durations = True
    song = ingest(4096)
    assert song.duration is None
