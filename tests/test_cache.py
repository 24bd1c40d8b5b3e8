import hashlib
import threading
import time

import pytest

from player.cache import OfflineCacheManager
from player.reconciler import CacheReconciler
from player.remote import SongSource
from shared.errors import CacheError, CacheFetchFailed, CacheFull, SongNotFound, StorageFailure
from shared.models import CacheState, Song, advance_timestamp, utc_now

MB = 1024 * 1024


def make_song(song_id, payload, title="Song", updated_at=None):
    now = utc_now()
    return Song(
        id=song_id,
        title=title,
        artist="Artist",
        blob_key=f"tracks/{song_id}.mp3",
        content_length=len(payload),
        content_type="audio/mpeg",
        content_hash=hashlib.sha256(payload).hexdigest(),
        created_at=now,
        updated_at=updated_at or now,
    )


class FakeSource(SongSource):
    """In-memory server: song records plus their payloads."""

    def __init__(self):
        self.songs = {}
        self.payloads = {}
        self.downloads = 0
        self.fail_downloads = False
        self.gate = None
        self.started = threading.Event()

    def add(self, song_id, payload, **kwargs):
        song = make_song(song_id, payload, **kwargs)
        self.songs[song_id] = song
        self.payloads[song_id] = payload
        return song

    def get_song(self, song_id):
        return self.songs.get(song_id)

    def download_to(self, song_id, fileobj):
        self.downloads += 1
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail_downloads:
            fileobj.write(b"partial")
            raise StorageFailure("connection dropped")
        if song_id not in self.payloads:
            raise SongNotFound(song_id)
        data = self.payloads[song_id]
        fileobj.write(data)
        return len(data)


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def cache(tmp_path, source):
    manager = OfflineCacheManager(str(tmp_path / "media"), 10 * MB, source=source,
                                  index_path=str(tmp_path / "cache_index.db"))
    yield manager
    manager.close()


def _insert(cache, song_id, size):
    payload = bytes([len(song_id) % 256]) * size
    return cache.insert(make_song(song_id, payload), payload)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_three_four_megabyte_entries_evict_least_recent(cache):
    _insert(cache, "a", 4 * MB)
    _insert(cache, "b", 4 * MB)
    _insert(cache, "c", 4 * MB)

    assert cache.get("a") is None
    assert cache.state("a") == CacheState.ABSENT
    assert cache.get("b") is not None
    assert cache.get("c") is not None
    assert cache.usage() <= 10 * MB


def test_access_refreshes_lru_position(cache):
    _insert(cache, "a", 4 * MB)
    _insert(cache, "b", 4 * MB)
    cache.get("a")
    _insert(cache, "c", 4 * MB)

    assert cache.get("a") is not None
    assert cache.get("b") is None


def test_reserved_entry_is_never_evicted(cache):
    _insert(cache, "a", 4 * MB)
    _insert(cache, "b", 4 * MB)
    cache.reserve("a")

    _insert(cache, "c", 4 * MB)
    assert cache.state("a") == CacheState.CACHED
    assert cache.state("b") == CacheState.ABSENT

    _insert(cache, "d", 4 * MB)
    assert cache.state("a") == CacheState.CACHED
    assert cache.state("c") == CacheState.ABSENT

    cache.release("a")
    _insert(cache, "e", 4 * MB)
    assert cache.state("a") == CacheState.ABSENT
    assert {e.song_id for e in cache.entries()} == {"d", "e"}


def test_full_when_only_reserved_entries_remain(cache):
    _insert(cache, "a", 4 * MB)
    _insert(cache, "b", 4 * MB)
    cache.reserve("a")
    cache.reserve("b")

    with pytest.raises(CacheFull):
        _insert(cache, "c", 4 * MB)
    assert {e.song_id for e in cache.entries()} == {"a", "b"}
    assert cache.state("c") == CacheState.ABSENT


def test_entry_larger_than_capacity(cache):
    _insert(cache, "a", 1 * MB)
    with pytest.raises(CacheFull):
        _insert(cache, "huge", 11 * MB)
    assert cache.state("a") == CacheState.CACHED


def test_reading_pins_for_the_duration(cache):
    _insert(cache, "a", 4 * MB)
    _insert(cache, "b", 4 * MB)
    with cache.reading("a") as f:
        assert cache.is_reserved("a")
        _insert(cache, "c", 4 * MB)
        assert len(f.read()) == 4 * MB
    assert not cache.is_reserved("a")
    assert cache.state("b") == CacheState.ABSENT


def test_reservation_errors(cache):
    with pytest.raises(SongNotFound):
        cache.reserve("missing")
    _insert(cache, "a", 10)
    with pytest.raises(CacheError):
        cache.release("a")
    cache.reserve("a")
    with pytest.raises(CacheError):
        cache.remove("a")
    cache.release("a")
    assert cache.remove("a")
    assert not cache.remove("a")


def test_save_for_offline_fetches_bytes_and_metadata(cache, source):
    source.add("s1", b"abc" * 1000, title="Offline")
    hit = cache.save_for_offline("s1")

    assert hit.metadata.title == "Offline"
    assert hit.read_bytes() == b"abc" * 1000
    assert cache.read_bytes("s1") == b"abc" * 1000
    assert cache.state("s1") == CacheState.CACHED

    cache.save_for_offline("s1")
    assert source.downloads == 1


def test_failed_fetch_returns_to_absent(cache, source, tmp_path):
    source.add("s1", b"x" * 100)
    source.fail_downloads = True

    with pytest.raises(CacheFetchFailed):
        cache.save_for_offline("s1")
    assert cache.state("s1") == CacheState.ABSENT
    assert list((tmp_path / "media").iterdir()) == []


def test_fetch_of_unknown_song_fails(cache):
    with pytest.raises(CacheFetchFailed):
        cache.save_for_offline("ghost")
    assert cache.state("ghost") == CacheState.ABSENT


def test_truncated_download_is_rejected(cache, source):
    song = source.add("s1", b"x" * 100)
    song.content_length = 200
    with pytest.raises(CacheFetchFailed):
        cache.save_for_offline("s1")
    assert cache.get("s1") is None


def test_concurrent_saves_share_one_download(cache, source):
    source.add("s1", b"y" * 5000)
    source.gate = threading.Event()
    results = []

    def save():
        results.append(cache.save_for_offline("s1"))

    first = threading.Thread(target=save)
    first.start()
    assert source.started.wait(5)
    assert cache.state("s1") == CacheState.FETCHING
    second = threading.Thread(target=save)
    second.start()
    source.gate.set()
    first.join(5)
    second.join(5)

    assert source.downloads == 1
    assert len(results) == 2
    assert all(r.size == 5000 for r in results)


def test_newer_server_record_marks_entry_stale(cache, source):
    song = source.add("s1", b"z" * 100, title="Before")
    cache.save_for_offline("s1")

    newer = make_song("s1", b"z" * 100, title="After", updated_at=advance_timestamp(song.updated_at))
    assert cache.check_staleness("s1", song) == CacheState.CACHED
    assert cache.check_staleness("s1", newer) == CacheState.STALE


def test_stale_entry_served_while_refreshing(cache, source):
    song = source.add("s1", b"z" * 100, title="Before")
    cache.save_for_offline("s1")
    source.songs["s1"] = make_song("s1", b"z" * 100, title="After",
                                   updated_at=advance_timestamp(song.updated_at))
    cache.mark_stale("s1")

    hit = cache.get("s1")
    assert hit is not None
    assert hit.stale
    assert hit.metadata.title == "Before"
    assert hit.read_bytes() == b"z" * 100

    assert _wait_for(lambda: cache.state("s1") == CacheState.CACHED)
    assert cache.get("s1").metadata.title == "After"
    # Unchanged audio only refreshes the metadata
    assert source.downloads == 1


def test_refresh_downloads_changed_audio(cache, source):
    source.add("s1", b"old" * 10)
    cache.save_for_offline("s1")
    source.add("s1", b"new audio" * 10)

    hit = cache.refresh("s1")
    assert hit.read_bytes() == b"new audio" * 10
    assert source.downloads == 2
    assert cache.usage() == len(b"new audio" * 10)


def test_save_during_background_refresh_waits_for_it(cache, source):
    source.add("s1", b"old" * 10)
    cache.save_for_offline("s1")
    source.add("s1", b"new audio" * 10)
    cache.mark_stale("s1")
    source.started.clear()
    source.gate = threading.Event()

    assert cache.get("s1").stale
    assert source.started.wait(5)
    assert cache.state("s1") == CacheState.REFRESHING

    results = []
    saver = threading.Thread(target=lambda: results.append(cache.save_for_offline("s1")))
    saver.start()
    source.gate.set()
    saver.join(5)

    assert len(results) == 1
    assert results[0].read_bytes() == b"new audio" * 10
    assert source.downloads == 2


def test_save_for_offline_refetches_vanished_file(cache, source):
    source.add("s1", b"v" * 50)
    cache.save_for_offline("s1").path.unlink()

    hit = cache.save_for_offline("s1")
    assert hit.read_bytes() == b"v" * 50
    assert source.downloads == 2
    assert cache.state("s1") == CacheState.CACHED


def test_reconcile_removes_songs_deleted_on_server(cache, source):
    source.add("gone", b"g" * 10)
    source.add("pinned", b"p" * 10)
    source.add("kept", b"k" * 10)
    for song_id in ("gone", "pinned", "kept"):
        cache.save_for_offline(song_id)
    del source.songs["gone"]
    del source.songs["pinned"]
    cache.reserve("pinned")

    summary = cache.reconcile()

    assert summary.checked == 3
    assert summary.removed == 1
    assert cache.state("gone") == CacheState.ABSENT
    assert cache.state("pinned") == CacheState.CACHED
    assert cache.state("kept") == CacheState.CACHED


def test_reconcile_refreshes_stale_entries(cache, source):
    song = source.add("s1", b"q" * 10, title="Old")
    cache.save_for_offline("s1")
    source.songs["s1"] = make_song("s1", b"q" * 10, title="New",
                                   updated_at=advance_timestamp(song.updated_at))

    summary = cache.reconcile()
    assert summary.stale == 1
    assert summary.refreshed == 1
    assert cache.get("s1").metadata.title == "New"


def test_index_survives_restart(tmp_path, source):
    media = str(tmp_path / "media")
    index = str(tmp_path / "index.db")
    first = OfflineCacheManager(media, 10 * MB, source=source, index_path=index)
    _insert(first, "a", 4 * MB)
    _insert(first, "b", 4 * MB)
    first.get("a")
    first.close()

    second = OfflineCacheManager(media, 10 * MB, source=source, index_path=index)
    try:
        assert [e.song_id for e in second.entries()] == ["b", "a"]
        _insert(second, "c", 4 * MB)
        assert second.state("b") == CacheState.ABSENT
        assert second.state("a") == CacheState.CACHED
    finally:
        second.close()


def test_missing_file_drops_entry(cache):
    hit = _insert(cache, "a", 10)
    hit.path.unlink()
    assert cache.get("a") is None
    assert cache.entries() == []


def test_clear_keeps_reserved(cache):
    _insert(cache, "a", 10)
    _insert(cache, "b", 10)
    cache.reserve("b")
    assert cache.clear() == 1
    assert [e.song_id for e in cache.entries()] == ["b"]


def test_reconciler_runs_once(cache, source):
    source.add("s1", b"r" * 10)
    cache.save_for_offline("s1")
    reconciler = CacheReconciler(cache, interval=60)
    summary = reconciler.reconcile_once()
    assert summary.checked == 1
    assert reconciler.last_summary is summary


def test_reconciler_thread_starts_and_stops(cache):
    reconciler = CacheReconciler(cache, interval=0.01)
    reconciler.start()
    assert reconciler.running
    assert _wait_for(lambda: reconciler.last_summary is not None)
    reconciler.stop(timeout=5)
    assert not reconciler.running
