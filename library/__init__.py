"""Server-side library core: ingestion, delivery, catalog and playlists."""
