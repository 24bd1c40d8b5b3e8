"""
HTTP API for the library core.

A thin Flask transport over ``LibraryManager``: request parsing, status codes
and headers live here, every decision about songs, ranges and playlists is
made by the services underneath.
"""

import logging
from typing import Optional

from flask import Flask, Response, jsonify, redirect, request, stream_with_context
from flask_cors import CORS

from library.delivery import DeliveryStatus, parse_range_header
from library.manager import LibraryManager
from shared.config import ServerConfig
from shared.errors import (
    InvalidFormat,
    InvalidInput,
    NotFound,
    StorageFailure,
    StorageWriteFailed,
    TooLarge,
    TunelockerError,
)
from shared.models import SongPatch

logger = logging.getLogger(__name__)

EXPOSED_HEADERS = ['Content-Range', 'Content-Length', 'Accept-Ranges']


def _status_for(error: TunelockerError) -> int:
    if isinstance(error, InvalidFormat):
        return 415
    if isinstance(error, TooLarge):
        return 413
    if isinstance(error, InvalidInput):
        return 400
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, StorageWriteFailed):
        return 500
    if isinstance(error, StorageFailure):
        return 502
    return 500


def _int_arg(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidInput(f"{name} must be an integer")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidInput("Request body must be a JSON object")
    return data


def create_app(manager: LibraryManager, config: Optional[ServerConfig] = None) -> Flask:
    """Build the Flask application serving ``manager``."""
    config = config or manager.config
    app = Flask(__name__)
    app.config['LIBRARY_MANAGER'] = manager
    CORS(app, expose_headers=EXPOSED_HEADERS, allow_headers=['Range', 'Content-Type'])

    @app.errorhandler(TunelockerError)
    def handle_library_error(error: TunelockerError):
        status = _status_for(error)
        if status >= 500:
            logger.error("API: %s failed: %s", request.path, error)
        return jsonify(error.to_dict()), status

    # --- Health ---

    @app.route('/api/health')
    def health_check():
        return jsonify({"status": "healthy", "songs": manager.catalog.count()})

    # --- Songs ---

    @app.route('/api/songs', methods=['POST'])
    def upload_song():
        upload = request.files.get('file') if request.mimetype == 'multipart/form-data' else None
        if upload is not None:
            stream = upload.stream
            content_type = upload.mimetype or request.form.get('content_type')
            try:
                declared_size = int(request.form.get('size', ''))
            except ValueError:
                raise InvalidInput("Multipart uploads must include an integer 'size' field")
            fields = request.form
            filename = upload.filename
        else:
            stream = request.stream
            content_type = request.mimetype
            declared_size = request.content_length
            if declared_size is None:
                raise InvalidInput("Content-Length header is required")
            fields = request.args
            filename = request.args.get('filename')

        song = manager.ingest(
            stream,
            content_type,
            declared_size,
            title=fields.get('title'),
            artist=fields.get('artist'),
            original_filename=filename,
        )
        return jsonify(song.to_dict()), 201

    @app.route('/api/songs', methods=['GET'])
    def list_songs():
        query = request.args.get('q')
        songs = manager.catalog.list(
            query=query,
            sort=request.args.get('sort'),
            limit=_int_arg('limit'),
            offset=_int_arg('offset', 0),
        )
        return jsonify({
            "songs": [s.to_dict() for s in songs],
            "total": manager.catalog.count(query),
        })

    @app.route('/api/songs/<song_id>', methods=['GET'])
    def get_song(song_id):
        return jsonify(manager.get_song(song_id).to_dict())

    @app.route('/api/songs/<song_id>', methods=['PATCH'])
    def update_song(song_id):
        patch = SongPatch.from_dict(_json_body())
        return jsonify(manager.update_song(song_id, patch).to_dict())

    @app.route('/api/songs/<song_id>', methods=['DELETE'])
    def delete_song(song_id):
        manager.delete_song(song_id)
        return jsonify({"status": "deleted", "id": song_id})

    def _deliver(song_id: str, download: bool):
        resolution = manager.delivery.resolve(song_id, None, download=download)
        if resolution.status == DeliveryStatus.NOT_FOUND:
            return jsonify({"error": "song_not_found", "message": f"Song {song_id} not found"}), 404

        requested = parse_range_header(request.headers.get('Range'), resolution.total_length)
        if requested is not None:
            resolution = manager.delivery.resolve(song_id, requested, download=download)
            # Deleted between the two resolutions
            if resolution.status == DeliveryStatus.NOT_FOUND:
                return jsonify({"error": "song_not_found", "message": f"Song {song_id} not found"}), 404

        if resolution.status == DeliveryStatus.RANGE_NOT_SATISFIABLE:
            response = jsonify({
                "error": "range_not_satisfiable",
                "message": f"Range is not satisfiable for {resolution.total_length} bytes",
            })
            response.status_code = 416
            response.headers['Content-Range'] = f"bytes */{resolution.total_length}"
            response.headers['Accept-Ranges'] = 'bytes'
            return response

        if config.stream_mode == 'redirect':
            url = manager.delivery.redirect_url(resolution)
            if url:
                return redirect(url, code=302)

        # Open eagerly so a missing blob surfaces as an error response, not a broken stream
        payload = manager.delivery.open_payload(resolution)
        response = Response(
            stream_with_context(payload),
            status=206 if resolution.is_partial else 200,
            mimetype=resolution.content_type,
            direct_passthrough=True,
        )
        response.headers['Accept-Ranges'] = 'bytes'
        response.headers['Content-Length'] = str(resolution.byte_range.length)
        if resolution.is_partial:
            response.headers['Content-Range'] = resolution.byte_range.to_content_range(resolution.total_length)
        if download:
            response.headers.set('Content-Disposition', 'attachment', filename=resolution.filename)
        return response

    @app.route('/api/songs/<song_id>/stream', methods=['GET'])
    def stream_song(song_id):
        return _deliver(song_id, download=False)

    @app.route('/api/songs/<song_id>/download', methods=['GET'])
    def download_song(song_id):
        return _deliver(song_id, download=True)

    # --- Playlists ---

    @app.route('/api/playlists', methods=['GET'])
    def list_playlists():
        return jsonify({"playlists": [p.to_dict() for p in manager.playlists.list()]})

    @app.route('/api/playlists', methods=['POST'])
    def create_playlist():
        data = _json_body()
        song_ids = data.get('song_ids', [])
        if not isinstance(song_ids, list):
            raise InvalidInput("song_ids must be a list")
        playlist = manager.playlists.create(data.get('name'), song_ids)
        return jsonify(playlist.to_dict()), 201

    @app.route('/api/playlists/<playlist_id>', methods=['GET'])
    def get_playlist(playlist_id):
        return jsonify(manager.playlists.get(playlist_id).to_dict())

    @app.route('/api/playlists/<playlist_id>', methods=['PATCH'])
    def rename_playlist(playlist_id):
        playlist = manager.playlists.rename(playlist_id, _json_body().get('name'))
        return jsonify(playlist.to_dict())

    @app.route('/api/playlists/<playlist_id>', methods=['DELETE'])
    def delete_playlist(playlist_id):
        manager.playlists.delete(playlist_id)
        return jsonify({"status": "deleted", "id": playlist_id})

    @app.route('/api/playlists/<playlist_id>/songs', methods=['POST'])
    def add_playlist_song(playlist_id):
        data = _json_body()
        song_id = data.get('song_id')
        if not song_id:
            raise InvalidInput("song_id is required")
        position = data.get('position')
        if position is not None and not isinstance(position, int):
            raise InvalidInput("position must be an integer")
        playlist = manager.playlists.add_song(playlist_id, song_id, position)
        return jsonify(playlist.to_dict())

    @app.route('/api/playlists/<playlist_id>/songs/<int:position>', methods=['DELETE'])
    def remove_playlist_song(playlist_id, position):
        return jsonify(manager.playlists.remove_at(playlist_id, position).to_dict())

    @app.route('/api/playlists/<playlist_id>/move', methods=['POST'])
    def move_playlist_song(playlist_id):
        data = _json_body()
        try:
            from_position = int(data['from'])
            to_position = int(data['to'])
        except (KeyError, TypeError, ValueError):
            raise InvalidInput("'from' and 'to' positions are required")
        return jsonify(manager.playlists.move(playlist_id, from_position, to_position).to_dict())

    @app.route('/api/playlists/<playlist_id>/prune', methods=['POST'])
    def prune_playlist(playlist_id):
        removed = manager.playlists.prune_dangling(playlist_id)
        return jsonify({"removed": removed})

    # --- Maintenance ---

    @app.route('/api/maintenance/reconcile', methods=['POST'])
    def reconcile():
        data = request.get_json(silent=True) or {}
        report = manager.reconcile_orphans(
            grace_seconds=data.get('grace_seconds'),
            dry_run=bool(data.get('dry_run', False)),
        )
        return jsonify(report.to_dict())

    return app


def start_api(manager: LibraryManager, config: ServerConfig, debug: bool = False):
    app = create_app(manager, config)
    logger.info("Serving library API on http://%s:%d", config.host, config.port)
    app.run(host=config.host, port=config.port, debug=debug, threaded=True)
