"""
Service configuration.

Sources, lowest to highest precedence:
    1. Built-in defaults
    2. YAML file (default: ./.sbupload/config.yaml, schema version 1)
    3. Environment variables

Example config.yaml:

    version: 1
    metadata:
      backend: sqlite          # none | sqlite | firestore
      path: .sbupload/metadata.db
    blob:
      backend: local           # local | s3
      path: .sbupload/blobs
      public_base_url: http://localhost:3000/files
    server:
      port: 3000
      max_upload_bytes: 5242880

A metadata backend that is selected but missing credentials is not fatal:
the factory logs a warning and returns None, and uploads continue without
build tracking.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .core.errors import ConfigError

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATH = Path(".sbupload") / "config.yaml"
DEFAULT_DB_PATH = Path(".sbupload") / "metadata.db"
DEFAULT_BLOB_PATH = Path(".sbupload") / "blobs"
DEFAULT_PORT = 3000
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024


# ================================
# Backend Enums
# ================================


class MetadataBackend(str, Enum):
    NONE = "none"
    SQLITE = "sqlite"
    FIRESTORE = "firestore"


class BlobBackend(str, Enum):
    LOCAL = "local"
    S3 = "s3"


# ================================
# Domain Model
# ================================


@dataclass(frozen=True)
class MetadataConfig:
    backend: MetadataBackend = MetadataBackend.NONE

    # SQLite
    path: Path = DEFAULT_DB_PATH

    # Firestore
    project_id: Optional[str] = None
    client_email: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)
    service_account_id: str = "upload-service"
    strict_counter: bool = False

    def __post_init__(self):
        if not isinstance(self.backend, MetadataBackend):
            raise ConfigError(f"Invalid metadata backend: {self.backend}")
        object.__setattr__(self, "path", Path(self.path).expanduser())
        if not self.service_account_id:
            raise ConfigError("metadata.service_account_id must be non-empty.")

    @property
    def has_firestore_credentials(self) -> bool:
        return bool(self.project_id and self.client_email and self.private_key)


@dataclass(frozen=True)
class BlobConfig:
    backend: BlobBackend = BlobBackend.LOCAL

    # Local
    path: Path = DEFAULT_BLOB_PATH
    public_base_url: Optional[str] = None

    # S3 / R2
    bucket: Optional[str] = None
    account_id: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = field(default=None, repr=False)
    endpoint_url: Optional[str] = None
    region: str = "auto"

    def __post_init__(self):
        if not isinstance(self.backend, BlobBackend):
            raise ConfigError(f"Invalid blob backend: {self.backend}")
        object.__setattr__(self, "path", Path(self.path).expanduser())

        if self.backend is BlobBackend.S3 and not self.bucket:
            raise ConfigError("S3 blob backend requires 'bucket'.")


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES

    # None: required whenever an API key store is configured
    require_api_key: Optional[bool] = None

    def __post_init__(self):
        if not 0 < self.port < 65536:
            raise ConfigError(f"Invalid port: {self.port}")
        if self.max_upload_bytes <= 0:
            raise ConfigError("server.max_upload_bytes must be positive.")

    def api_keys_required(self, has_key_store: bool) -> bool:
        if self.require_api_key is None:
            return has_key_store
        return self.require_api_key


@dataclass(frozen=True)
class Settings:
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    blob: BlobConfig = field(default_factory=BlobConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


# ================================
# Environment Overlay
# ================================

# env var -> (section, key)
ENV_VARS = {
    "SBUPLOAD_METADATA_BACKEND": ("metadata", "backend"),
    "SBUPLOAD_METADATA_PATH": ("metadata", "path"),
    "FIREBASE_PROJECT_ID": ("metadata", "project_id"),
    "FIREBASE_CLIENT_EMAIL": ("metadata", "client_email"),
    "FIREBASE_PRIVATE_KEY": ("metadata", "private_key"),
    "FIRESTORE_SERVICE_ACCOUNT_ID": ("metadata", "service_account_id"),
    "SBUPLOAD_STRICT_COUNTER": ("metadata", "strict_counter"),
    "SBUPLOAD_BLOB_BACKEND": ("blob", "backend"),
    "SBUPLOAD_BLOB_PATH": ("blob", "path"),
    "SBUPLOAD_PUBLIC_BASE_URL": ("blob", "public_base_url"),
    "R2_ACCOUNT_ID": ("blob", "account_id"),
    "R2_S3_ACCESS_KEY_ID": ("blob", "access_key_id"),
    "R2_S3_SECRET_ACCESS_KEY": ("blob", "secret_access_key"),
    "R2_BUCKET_NAME": ("blob", "bucket"),
    "SBUPLOAD_HOST": ("server", "host"),
    "PORT": ("server", "port"),
    "SBUPLOAD_MAX_UPLOAD_BYTES": ("server", "max_upload_bytes"),
    "SBUPLOAD_REQUIRE_API_KEY": ("server", "require_api_key"),
}


def apply_env(raw: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """
    Overlay environment variables onto a raw config mapping.

    When no backend is named anywhere, Firestore credentials select the
    firestore metadata backend and an R2 bucket selects the s3 blob backend.
    """
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in raw.items()}

    for var, (section, key) in ENV_VARS.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        merged.setdefault(section, {})
        merged[section][key] = value

    metadata = merged.setdefault("metadata", {})
    if "backend" not in metadata and metadata.get("project_id"):
        metadata["backend"] = MetadataBackend.FIRESTORE.value

    blob = merged.setdefault("blob", {})
    if "backend" not in blob and blob.get("bucket"):
        blob["backend"] = BlobBackend.S3.value

    return merged


# ================================
# Serialization Layer
# ================================


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def _as_enum(enum_cls, value: Any, name: str):
    try:
        return enum_cls(str(value).lower())
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"{name} must be one of: {allowed} (got {value!r})") from e


class SettingsSchema:
    """
    Responsible ONLY for (de)serialization.
    """

    VERSION = 1

    @classmethod
    def load(cls, raw: Optional[Dict[str, Any]]) -> Settings:
        raw = raw or {}

        version = raw.get("version", cls.VERSION)
        if version != cls.VERSION:
            raise ConfigError(
                f"Unsupported config version: {version}. Expected version {cls.VERSION}."
            )

        m = raw.get("metadata") or {}
        b = raw.get("blob") or {}
        s = raw.get("server") or {}

        metadata = MetadataConfig(
            backend=_as_enum(MetadataBackend, m.get("backend", "none"), "metadata.backend"),
            path=Path(m.get("path", DEFAULT_DB_PATH)),
            project_id=m.get("project_id"),
            client_email=m.get("client_email"),
            private_key=m.get("private_key"),
            service_account_id=m.get("service_account_id", "upload-service"),
            strict_counter=_as_bool(m.get("strict_counter", False), "metadata.strict_counter"),
        )

        blob = BlobConfig(
            backend=_as_enum(BlobBackend, b.get("backend", "local"), "blob.backend"),
            path=Path(b.get("path", DEFAULT_BLOB_PATH)),
            public_base_url=b.get("public_base_url"),
            bucket=b.get("bucket"),
            account_id=b.get("account_id"),
            access_key_id=b.get("access_key_id"),
            secret_access_key=b.get("secret_access_key"),
            endpoint_url=b.get("endpoint_url"),
            region=b.get("region", "auto"),
        )

        require = s.get("require_api_key")
        server = ServerConfig(
            host=s.get("host", "0.0.0.0"),
            port=_as_int(s.get("port", DEFAULT_PORT), "server.port"),
            max_upload_bytes=_as_int(
                s.get("max_upload_bytes", DEFAULT_MAX_UPLOAD_BYTES), "server.max_upload_bytes"
            ),
            require_api_key=None if require is None else _as_bool(require, "server.require_api_key"),
        )

        return Settings(metadata=metadata, blob=blob, server=server)

    @classmethod
    def dump(cls, settings: Settings) -> Dict[str, Any]:
        """Non-secret settings only. Credentials stay in the environment."""
        m, b, s = settings.metadata, settings.blob, settings.server

        data: Dict[str, Any] = {
            "version": cls.VERSION,
            "metadata": {
                "backend": m.backend.value,
                "path": str(m.path),
                "service_account_id": m.service_account_id,
                "strict_counter": m.strict_counter,
            },
            "blob": {
                "backend": b.backend.value,
                "path": str(b.path),
            },
            "server": {
                "host": s.host,
                "port": s.port,
                "max_upload_bytes": s.max_upload_bytes,
            },
        }

        if m.project_id:
            data["metadata"]["project_id"] = m.project_id
        for key in ("public_base_url", "bucket", "account_id", "endpoint_url"):
            if getattr(b, key):
                data["blob"][key] = getattr(b, key)
        if s.require_api_key is not None:
            data["server"]["require_api_key"] = s.require_api_key

        return data


# ================================
# Loading / Saving
# ================================


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Load settings from YAML (if present) and the environment.

    An explicitly given config_path must exist.
    """
    environ = os.environ if environ is None else environ

    if config_path is not None and not Path(config_path).exists():
        raise ConfigError(f"Config file not found: {config_path}")

    path = Path(config_path) if config_path else Path.cwd() / DEFAULT_CONFIG_PATH

    raw: Dict[str, Any] = {}
    if path.exists():
        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Malformed YAML configuration: {path}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {path}") from e

        if not isinstance(raw, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")
        logger.debug(f"Loaded configuration from {path}")

    return SettingsSchema.load(apply_env(raw, environ))


def save_settings(settings: Settings, config_path: Path) -> None:
    """Atomic write (temp file + os.replace)."""
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = SettingsSchema.dump(settings)
    tmp_fd, tmp_path = tempfile.mkstemp(dir=config_path.parent)

    try:
        with os.fdopen(tmp_fd, "w") as tmp_file:
            yaml.safe_dump(data, tmp_file, sort_keys=False)
        os.replace(tmp_path, config_path)
    except Exception:
        os.unlink(tmp_path)
        raise


# ================================
# Factories
# ================================


def _firestore_client(config: MetadataConfig):
    from .metadata.credentials import ServiceAccountCredentials
    from .metadata.rest import FirestoreRestClient

    credentials = ServiceAccountCredentials(
        project_id=config.project_id,
        client_email=config.client_email,
        private_key=config.private_key,
    )
    return FirestoreRestClient(credentials)


def build_metadata_store(settings: Settings):
    """
    Returns:
        BuildMetadataStore, or None when tracking is disabled or the
        selected backend lacks credentials.
    """
    config = settings.metadata

    if config.backend is MetadataBackend.NONE:
        logger.info("Build metadata tracking disabled")
        return None

    if config.backend is MetadataBackend.SQLITE:
        from .metadata.sqlite import SQLiteMetadataStore

        store = SQLiteMetadataStore(config.path, service_account_id=config.service_account_id)
        store.init_schema()
        logger.info(f"Build metadata: SQLite at {store.db_path}")
        return store

    if not config.has_firestore_credentials:
        logger.warning(
            "Firestore metadata backend selected but FIREBASE_PROJECT_ID, "
            "FIREBASE_CLIENT_EMAIL or FIREBASE_PRIVATE_KEY is missing; "
            "build tracking disabled"
        )
        return None

    from .metadata.firestore import FirestoreRestMetadataStore

    logger.info(f"Build metadata: Firestore project {config.project_id}")
    return FirestoreRestMetadataStore(
        _firestore_client(config),
        service_account_id=config.service_account_id,
        strict_counter=config.strict_counter,
    )


def build_api_key_store(settings: Settings):
    """API keys live next to build metadata; None when there is no store."""
    config = settings.metadata

    if config.backend is MetadataBackend.SQLITE:
        from .apikeys.sqlite import SQLiteApiKeyStore

        store = SQLiteApiKeyStore(config.path)
        store.init_schema()
        return store

    if config.backend is MetadataBackend.FIRESTORE and config.has_firestore_credentials:
        from .apikeys.firestore import FirestoreApiKeyStore

        return FirestoreApiKeyStore(_firestore_client(config))

    return None


def build_blob_store(settings: Settings):
    config = settings.blob

    if config.backend is BlobBackend.LOCAL:
        from .blob.local import LocalBlobStore

        return LocalBlobStore(config.path, public_base_url=config.public_base_url)

    from .blob.s3 import S3BlobStore

    if config.account_id and not config.endpoint_url:
        if not (config.access_key_id and config.secret_access_key):
            raise ConfigError("R2 blob backend requires access_key_id and secret_access_key.")
        return S3BlobStore.for_r2(
            config.account_id,
            config.bucket,
            config.access_key_id,
            config.secret_access_key,
            public_base_url=config.public_base_url,
        )

    return S3BlobStore(
        config.bucket,
        endpoint_url=config.endpoint_url,
        access_key_id=config.access_key_id,
        secret_access_key=config.secret_access_key,
        region_name=config.region,
        public_base_url=config.public_base_url,
    )


__all__ = [
    "MetadataBackend",
    "BlobBackend",
    "MetadataConfig",
    "BlobConfig",
    "ServerConfig",
    "Settings",
    "SettingsSchema",
    "apply_env",
    "load_settings",
    "save_settings",
    "build_metadata_store",
    "build_api_key_store",
    "build_blob_store",
]
