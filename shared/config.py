"""
Server and client configuration.

Configs are JSON files under ~/.config/tunelocker/. Any field can be overridden
from the environment (or a .env file) with a TUNELOCKER_ prefixed variable,
e.g. TUNELOCKER_MAX_UPLOAD_BYTES=1048576.
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from shared.constants import (
    CACHE_INDEX_FILENAME,
    CLIENT_CONFIG_FILENAME,
    DEFAULT_ALLOWED_CONTENT_TYPES,
    DEFAULT_CACHE_DIR,
    DEFAULT_CACHE_SIZE_MB,
    DEFAULT_CONFIG_DIR,
    DEFAULT_DATA_DIR,
    DEFAULT_MAX_UPLOAD_BYTES,
    DEFAULT_NETWORK_TIMEOUT,
    DEFAULT_ORPHAN_GRACE_SECONDS,
    DEFAULT_RECONCILE_INTERVAL_MINUTES,
    DEFAULT_SERVER_HOST,
    DEFAULT_SERVER_PORT,
    DEFAULT_SERVER_URL,
    METADATA_DB_FILENAME,
    MIN_CACHE_SIZE_MB,
    SERVER_CONFIG_FILENAME,
)
from shared.crypto import CredentialManager
from shared.errors import InvalidInput
from shared.models import StorageProvider

logger = logging.getLogger(__name__)

ENV_PREFIX = "TUNELOCKER_"
SECRET_FIELDS = ("access_key_id", "secret_access_key")
STREAM_MODES = ("proxy", "redirect")


def _coerce(value: str, target: Any) -> Any:
    """Convert an environment string to the type of the current field value."""
    if isinstance(target, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(target, int):
        return int(value)
    if isinstance(target, float):
        return float(value)
    if isinstance(target, list):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _apply_env(data: Dict[str, Any], names: List[str]) -> Dict[str, Any]:
    load_dotenv()
    for name in names:
        raw = os.getenv(ENV_PREFIX + name.upper())
        if raw is None:
            continue
        try:
            data[name] = _coerce(raw, data.get(name, ""))
        except ValueError:
            raise InvalidInput(f"Invalid value for {ENV_PREFIX + name.upper()}: {raw!r}")
    return data


def _filter_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    field_names = {f.name for f in dataclasses.fields(cls)}
    return {k: v for k, v in data.items() if k in field_names}


@dataclass
class ServerConfig:
    """
    Server-side configuration: blob store, metadata store and ingestion limits.

    Credentials are encrypted on disk and decrypted in memory.
    """
    provider: StorageProvider = StorageProvider.LOCAL
    endpoint: str = DEFAULT_DATA_DIR + "/blobs"
    bucket: str = "tunelocker"
    access_key_id: str = ""
    secret_access_key: str = ""
    region: Optional[str] = None
    metadata_db_path: str = DEFAULT_DATA_DIR + "/" + METADATA_DB_FILENAME
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    allowed_content_types: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_CONTENT_TYPES))
    stream_mode: str = "proxy"
    orphan_grace_seconds: int = DEFAULT_ORPHAN_GRACE_SECONDS
    probe_duration: bool = False
    host: str = DEFAULT_SERVER_HOST
    port: int = DEFAULT_SERVER_PORT

    def __post_init__(self):
        if isinstance(self.provider, str):
            self.provider = StorageProvider(self.provider)
        if self.max_upload_bytes <= 0:
            raise InvalidInput("max_upload_bytes must be positive")
        if self.stream_mode not in STREAM_MODES:
            raise InvalidInput(f"stream_mode must be one of {', '.join(STREAM_MODES)}")
        self.allowed_content_types = [t.lower() for t in self.allowed_content_types]

    def credentials(self) -> Dict[str, Any]:
        """Credentials dict in the shape the provider factory expects."""
        return {
            'base_path': self.endpoint,
            'endpoint': self.endpoint,
            'bucket': self.bucket,
            'access_key_id': self.access_key_id,
            'secret_access_key': self.secret_access_key,
            'region': self.region,
        }

    def to_dict(self, encrypt: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        data['provider'] = self.provider.value
        if encrypt:
            for name in SECRET_FIELDS:
                data[name] = CredentialManager.encrypt(data[name])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServerConfig':
        filtered = _filter_fields(cls, data)
        for name in SECRET_FIELDS:
            if filtered.get(name):
                decrypted = CredentialManager.decrypt(filtered[name])
                # Wrong machine: keep the token, authentication will fail later
                if decrypted is not None:
                    filtered[name] = decrypted
        return cls(**filtered)


@dataclass
class ClientConfig:
    """Client-side configuration for the offline cache and server access."""
    server_url: str = DEFAULT_SERVER_URL
    cache_dir: str = DEFAULT_CACHE_DIR + "/media"
    cache_max_size_mb: int = DEFAULT_CACHE_SIZE_MB
    reconcile_interval_minutes: int = DEFAULT_RECONCILE_INTERVAL_MINUTES
    network_timeout: int = DEFAULT_NETWORK_TIMEOUT

    def __post_init__(self):
        if self.cache_max_size_mb < MIN_CACHE_SIZE_MB:
            raise InvalidInput(f"cache_max_size_mb must be at least {MIN_CACHE_SIZE_MB}")

    @property
    def cache_max_size_bytes(self) -> int:
        return self.cache_max_size_mb * 1024 * 1024

    @property
    def cache_index_path(self) -> Path:
        return Path(self.cache_dir).expanduser().parent / CACHE_INDEX_FILENAME

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClientConfig':
        return cls(**_filter_fields(cls, data))


def default_config_path(filename: str) -> Path:
    return Path(DEFAULT_CONFIG_DIR).expanduser() / filename


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise InvalidInput(f"Corrupt config file {path}: {e}")


def load_server_config(path: Optional[str] = None) -> ServerConfig:
    config_path = Path(path).expanduser() if path else default_config_path(SERVER_CONFIG_FILENAME)
    data = _read_json(config_path)
    defaults = ServerConfig().to_dict(encrypt=False)
    merged = _apply_env({**defaults, **data}, list(defaults))
    config = ServerConfig.from_dict(merged)
    logger.debug("Loaded server config from %s (provider=%s)", config_path, config.provider.value)
    return config


def save_server_config(config: ServerConfig, path: Optional[str] = None) -> Path:
    config_path = Path(path).expanduser() if path else default_config_path(SERVER_CONFIG_FILENAME)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(config.to_dict(encrypt=True), indent=2))
    return config_path


def load_client_config(path: Optional[str] = None) -> ClientConfig:
    config_path = Path(path).expanduser() if path else default_config_path(CLIENT_CONFIG_FILENAME)
    data = _read_json(config_path)
    defaults = ClientConfig().to_dict()
    merged = _apply_env({**defaults, **data}, list(defaults))
    return ClientConfig.from_dict(merged)


def save_client_config(config: ClientConfig, path: Optional[str] = None) -> Path:
    config_path = Path(path).expanduser() if path else default_config_path(CLIENT_CONFIG_FILENAME)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(config.to_dict(), indent=2))
    return config_path
