import io
import os
import time
from unittest import mock

import pytest

from shared.errors import InvalidInput, SongNotFound, StorageFailure
from shared.models import SongPatch


def test_update_song_advances_updated_at(manager, ingest):
    song = ingest(10, title="Old")
    updated = manager.update_song(song.id, SongPatch(title="New", artist="Someone"))

    assert updated.title == "New"
    assert updated.artist == "Someone"
    assert updated.created_at == song.created_at
    assert updated.updated_at > song.updated_at
    assert updated.blob_key == song.blob_key


def test_empty_patch_leaves_record_untouched(manager, ingest):
    song = ingest(10)
    assert manager.update_song(song.id, SongPatch()) == song


def test_update_unknown_song(manager):
    with pytest.raises(SongNotFound):
        manager.update_song("missing", SongPatch(title="x"))


def test_patch_rejects_non_editable_fields():
    with pytest.raises(InvalidInput):
        SongPatch.from_dict({"content_length": 1})
    with pytest.raises(InvalidInput):
        SongPatch.from_dict({"title": "  "})
    with pytest.raises(InvalidInput):
        SongPatch.from_dict({"duration": "long"})
    assert SongPatch.from_dict({"duration": "12.5"}).duration == 12.5


def test_delete_removes_record_and_blob(manager, ingest, blob_store):
    song = ingest(10)
    manager.delete_song(song.id)
    assert manager.metadata_store.get(song.id) is None
    assert not blob_store.exists(song.blob_key)
    with pytest.raises(SongNotFound):
        manager.delete_song(song.id)


def test_failed_blob_delete_restores_record(manager, ingest, blob_store):
    song = ingest(10)
    with mock.patch.object(blob_store, "delete", side_effect=StorageFailure("bucket offline")):
        with pytest.raises(StorageFailure):
            manager.delete_song(song.id)

    assert manager.get_song(song.id) == song
    assert blob_store.exists(song.blob_key)


def _age(blob_store, key, seconds):
    path = blob_store._get_path(key)
    past = time.time() - seconds
    os.utime(path, (past, past))


def test_reconcile_removes_aged_orphans_only(manager, ingest, blob_store):
    kept = ingest(10)
    blob_store.put("tracks/aa/old-orphan.mp3", io.BytesIO(b"old"))
    blob_store.put("tracks/bb/new-orphan.mp3", io.BytesIO(b"new"))
    _age(blob_store, "tracks/aa/old-orphan.mp3", 3600)

    report = manager.reconcile_orphans(grace_seconds=600)

    assert report.orphan_blobs == ["tracks/aa/old-orphan.mp3"]
    assert report.skipped_recent == 1
    assert not blob_store.exists("tracks/aa/old-orphan.mp3")
    assert blob_store.exists("tracks/bb/new-orphan.mp3")
    assert blob_store.exists(kept.blob_key)


def test_reconcile_removes_records_without_blob(manager, ingest, blob_store):
    song = ingest(10)
    other = ingest(10, seed=1)
    os.remove(blob_store._get_path(song.blob_key))

    report = manager.reconcile_orphans(grace_seconds=0)

    assert report.missing_blob_records == [song.id]
    assert manager.metadata_store.get(song.id) is None
    assert manager.metadata_store.get(other.id) is not None


def test_reconcile_dry_run_changes_nothing(manager, ingest, blob_store):
    song = ingest(10)
    blob_store.put("tracks/cc/orphan.mp3", io.BytesIO(b"o"))
    os.remove(blob_store._get_path(song.blob_key))

    report = manager.reconcile_orphans(grace_seconds=0, dry_run=True)

    assert report.dry_run
    assert report.orphan_blobs == ["tracks/cc/orphan.mp3"]
    assert report.missing_blob_records == [song.id]
    assert blob_store.exists("tracks/cc/orphan.mp3")
    assert manager.metadata_store.get(song.id) is not None
