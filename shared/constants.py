"""
Shared constants used across the platform.
"""

# Blob layout
TRACKS_PREFIX = "tracks/"

# Audio formats accepted at ingestion (content type -> file extension)
AUDIO_CONTENT_TYPES = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/aac": ".aac",
    "audio/flac": ".flac",
    "audio/x-flac": ".flac",
    "audio/ogg": ".ogg",
    "audio/opus": ".opus",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/webm": ".webm",
}

DEFAULT_ALLOWED_CONTENT_TYPES = sorted(AUDIO_CONTENT_TYPES)

# Upload settings
DEFAULT_MAX_UPLOAD_BYTES = 500 * 1024 * 1024  # 500MB
UPLOAD_CHUNK_SIZE = 1024 * 1024  # 1MB
SPOOL_MEMORY_LIMIT = 8 * 1024 * 1024  # spill uploads to disk above 8MB

# Delivery settings
STREAM_CHUNK_SIZE = 64 * 1024
DEFAULT_URL_EXPIRY_SECONDS = 3600

# Maintenance
DEFAULT_ORPHAN_GRACE_SECONDS = 15 * 60

# Cache settings
DEFAULT_CACHE_SIZE_MB = 2048
MIN_CACHE_SIZE_MB = 16
DEFAULT_RECONCILE_INTERVAL_MINUTES = 18

# Configuration paths
DEFAULT_CONFIG_DIR = "~/.config/tunelocker"
DEFAULT_CACHE_DIR = "~/.cache/tunelocker"
DEFAULT_DATA_DIR = "~/.local/share/tunelocker"
SERVER_CONFIG_FILENAME = "server.json"
CLIENT_CONFIG_FILENAME = "client.json"
METADATA_DB_FILENAME = "library.db"
CACHE_INDEX_FILENAME = "cache_index.db"

# Network Settings
DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 5005
DEFAULT_SERVER_URL = f"http://{DEFAULT_SERVER_HOST}:{DEFAULT_SERVER_PORT}"
DEFAULT_NETWORK_TIMEOUT = 30  # seconds
DEFAULT_DOWNLOAD_CHUNK_SIZE = 8192  # bytes

# Fallback metadata
UNKNOWN_TITLE = "Unknown Title"
UNKNOWN_ARTIST = "Unknown Artist"

# S3 Provider endpoints
CLOUDFLARE_R2_ENDPOINT_TEMPLATE = "https://{account_id}.r2.cloudflarestorage.com"
BACKBLAZE_B2_ENDPOINT_TEMPLATE = "https://s3.{region}.backblazeb2.com"
AWS_S3_ENDPOINT_TEMPLATE = "https://s3.{region}.amazonaws.com"
