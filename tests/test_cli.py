import json
from unittest import mock

import pytest
from click.testing import CliRunner

from library.cli import cli


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "server.json"
    path.write_text(json.dumps({
        "endpoint": str(tmp_path / "blobs"),
        "metadata_db_path": str(tmp_path / "library.db"),
    }))
    return str(path)


def test_upload_list_and_remove(tmp_path, config_file):
    track = tmp_path / "Morning_Song.mp3"
    track.write_bytes(b"\xff\xfb" * 500)
    runner = CliRunner()

    result = runner.invoke(cli, ["--config", config_file, "upload", str(track), "--artist", "Lark"])
    assert result.exit_code == 0, result.output
    assert "1 uploaded, 0 failed" in result.output

    result = runner.invoke(cli, ["--config", config_file, "ls", "morning"])
    assert result.exit_code == 0
    assert "Morning" in result.output


def test_upload_rejects_non_audio(tmp_path, config_file):
    image = tmp_path / "cover.png"
    image.write_bytes(b"\x89PNG")
    result = CliRunner().invoke(cli, ["--config", config_file, "upload", str(image)])
    assert result.exit_code == 1
    assert "0 uploaded, 1 failed" in result.output


def test_unknown_song_exits_non_zero(config_file):
    result = CliRunner().invoke(cli, ["--config", config_file, "info", "missing"])
    assert result.exit_code == 1
    assert "song_not_found" in result.output


@pytest.fixture
def client_config_file(tmp_path):
    path = tmp_path / "client.json"
    path.write_text(json.dumps({
        "server_url": "http://127.0.0.1:9",
        "cache_dir": str(tmp_path / "cache" / "media"),
        "reconcile_interval_minutes": 7,
    }))
    return str(path)


def test_cache_watch_runs_reconciler_until_interrupted(client_config_file):
    with mock.patch("library.cli.CacheReconciler") as reconciler_cls, \
            mock.patch("library.cli.time.sleep", side_effect=KeyboardInterrupt):
        result = CliRunner().invoke(cli, ["--client-config", client_config_file, "cache", "watch"])

    assert result.exit_code == 0, result.output
    assert reconciler_cls.call_args[0][1] == 7 * 60
    reconciler = reconciler_cls.return_value
    reconciler.reconcile_once.assert_called_once_with()
    reconciler.start.assert_called_once_with()
    reconciler.stop.assert_called_once_with()
    assert "Stopping cache watch" in result.output


def test_cache_watch_interval_option(client_config_file):
    with mock.patch("library.cli.CacheReconciler") as reconciler_cls, \
            mock.patch("library.cli.time.sleep", side_effect=KeyboardInterrupt):
        result = CliRunner().invoke(cli, ["--client-config", client_config_file,
                                          "cache", "watch", "--interval", "2"])
    assert result.exit_code == 0, result.output
    assert reconciler_cls.call_args[0][1] == 120
