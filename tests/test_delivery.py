import pytest

from conftest import audio_bytes
from library.delivery import DeliveryStatus, download_filename, parse_range_header
from shared.errors import BlobNotFound, InvalidRange, SongNotFound


def test_unknown_song_is_not_found(manager):
    resolution = manager.delivery.resolve("missing")
    assert resolution.status == DeliveryStatus.NOT_FOUND
    assert resolution.total_length is None
    with pytest.raises(SongNotFound):
        manager.delivery.open_payload(resolution)


@pytest.mark.parametrize("start", [1000, 1001, 5000])
def test_start_at_or_past_end_is_not_satisfiable(manager, ingest, start):
    song = ingest(1000)
    resolution = manager.delivery.resolve(song.id, (start, None))
    assert resolution.status == DeliveryStatus.RANGE_NOT_SATISFIABLE
    assert resolution.total_length == 1000
    with pytest.raises(InvalidRange):
        manager.delivery.open_payload(resolution)


def test_end_is_clamped(manager, ingest):
    song = ingest(1000)
    resolution = manager.delivery.resolve(song.id, (900, 5000))
    assert resolution.status == DeliveryStatus.PARTIAL_CONTENT
    assert (resolution.byte_range.start, resolution.byte_range.end) == (900, 1000)
    assert resolution.byte_range.to_content_range(1000) == "bytes 900-999/1000"


def test_whole_range_request_is_still_partial(manager, ingest):
    song = ingest(1000)
    resolution = manager.delivery.resolve(song.id, (0, None))
    assert resolution.status == DeliveryStatus.PARTIAL_CONTENT
    assert resolution.byte_range.length == 1000


@pytest.mark.parametrize("requested", [(-1, 10), (10, 10), (10, 5)])
def test_malformed_ranges(manager, ingest, requested):
    song = ingest(100)
    with pytest.raises(InvalidRange):
        manager.delivery.resolve(song.id, requested)


def test_read_returns_exact_bytes(manager, ingest):
    song = ingest(70_000, seed=9)
    data = audio_bytes(70_000, seed=9)
    assert manager.delivery.read(song.id) == data
    assert manager.delivery.read(song.id, (65_000, 66_500)) == data[65_000:66_500]


def test_download_sets_attachment_filename(manager, ingest):
    song = ingest(10, title="Blue/Moon", artist="Trio")
    resolution = manager.delivery.resolve(song.id, download=True)
    assert resolution.disposition == "attachment"
    assert resolution.filename == "Trio - Blue_Moon.mp3"
    assert download_filename(song) == resolution.filename

    assert manager.delivery.resolve(song.id).disposition == "inline"


def test_missing_blob_surfaces_when_opened(manager, ingest, blob_store):
    song = ingest(10)
    blob_store.delete(song.blob_key)
    resolution = manager.delivery.resolve(song.id)
    assert resolution.ok
    with pytest.raises(BlobNotFound):
        manager.delivery.open_payload(resolution)


def test_local_store_has_no_redirect_url(manager, ingest):
    song = ingest(10)
    assert manager.delivery.redirect_url(manager.delivery.resolve(song.id)) is None


@pytest.mark.parametrize("header, expected", [
    (None, None),
    ("", None),
    ("bytes=0-99", (0, 100)),
    ("bytes=100-", (100, None)),
    ("bytes=-100", (900, None)),
    ("bytes=-5000", (0, None)),
    ("bytes = 10 - 19", (10, 20)),
])
def test_parse_range_header(header, expected):
    assert parse_range_header(header, 1000) == expected


@pytest.mark.parametrize("header", ["bytes=", "bytes=-0", "bytes=5-2", "items=0-1", "bytes=0-1,5-9", "bytes=a-b"])
def test_parse_range_header_rejects_garbage(header):
    with pytest.raises(InvalidRange):
        parse_range_header(header, 1000)
