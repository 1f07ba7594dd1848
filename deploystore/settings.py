"""Environment-backed settings for deploystore.

Resolution order: env var > legacy env var alias > default.
All settings are defined in SETTING_DEFS. load_config() turns them into a
StorageConfig and fails at startup when something required is missing.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettingDef:
    """Definition of a single setting."""

    key: str
    env_var: str
    default: str
    is_secret: bool
    description: str
    group: str  # e.g. "database", "blob", "gcs"
    aliases: tuple[str, ...] = ()


# ── Registry ─────────────────────────────────────────────────────────────────

SETTING_DEFS: dict[str, SettingDef] = {}


def _reg(
    key: str,
    env_var: str,
    default: str,
    is_secret: bool,
    description: str,
    group: str,
    aliases: tuple[str, ...] = (),
):
    SETTING_DEFS[key] = SettingDef(key, env_var, default, is_secret, description, group, aliases)


# Document store
_reg(
    "database.url",
    "DEPLOYSTORE_DATABASE_URL",
    "sqlite:///deploystore.db",
    True,
    "SQLAlchemy URL of the document store database",
    "database",
)

# Blob store
_reg(
    "blob.backend",
    "DEPLOYSTORE_BLOB_BACKEND",
    "local",
    False,
    "Blob store backend: local or gcs",
    "blob",
)
_reg(
    "blob.url_ttl_seconds",
    "DEPLOYSTORE_BLOB_URL_TTL_SECONDS",
    "3600",
    False,
    "Lifetime of issued blob download URLs in seconds",
    "blob",
)
_reg(
    "local.blob_path",
    "DEPLOYSTORE_BLOB_PATH",
    ".blobs",
    False,
    "Directory holding blobs for the local backend",
    "local",
)
_reg(
    "local.base_url",
    "DEPLOYSTORE_BLOB_BASE_URL",
    "http://localhost:8080",
    False,
    "Public base URL used in local blob download links",
    "local",
)
_reg(
    "local.signing_secret",
    "DEPLOYSTORE_BLOB_SIGNING_SECRET",
    "",
    True,
    "Secret used to sign local blob download tokens (HS256)",
    "local",
)

# Google Cloud Storage
_reg(
    "gcs.project_id",
    "GOOGLE_CLOUD_PROJECT",
    "",
    False,
    "Google Cloud project ID",
    "gcs",
    aliases=("GCP_PROJECT_ID",),
)
_reg(
    "gcs.bucket_name",
    "GCS_BUCKET_NAME",
    "",
    False,
    "Bucket holding release blobs",
    "gcs",
    aliases=("GCP_BUCKET_NAME",),
)
_reg(
    "gcs.credentials_file",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "",
    False,
    "Path to a service account JSON file",
    "gcs",
)
_reg(
    "gcs.credentials_json",
    "GCP_CREDENTIALS",
    "",
    True,
    "Inline service account JSON (takes precedence over the file)",
    "gcs",
)


# ── Accessors ────────────────────────────────────────────────────────────────


def _lookup(defn: SettingDef) -> tuple[str, str]:
    for env_var in (defn.env_var, *defn.aliases):
        value = os.environ.get(env_var, "")
        if value:
            return value, "env"
    return defn.default, "default"


def get_setting(key: str) -> str:
    """Return the effective value for *key*.

    Raises KeyError for unknown keys.
    """
    defn = SETTING_DEFS.get(key)
    if defn is None:
        raise KeyError(f"Unknown setting: {key}")
    return _lookup(defn)[0]


def get_setting_int(key: str, fallback: int | None = None) -> int:
    """get_setting() coerced to int."""
    raw = get_setting(key)
    try:
        return int(raw)
    except (ValueError, TypeError):
        if fallback is not None:
            return fallback
        raise


def get_setting_source(key: str) -> str:
    """Return where the effective value comes from: 'env' or 'default'."""
    defn = SETTING_DEFS.get(key)
    if defn is None:
        raise KeyError(f"Unknown setting: {key}")
    return _lookup(defn)[1]


def _mask_secret(value: str) -> str:
    """Mask a secret value for display."""
    if not value or len(value) <= 8:
        return "****"
    return value[:4] + "****" + value[-4:]


def log_settings_sources() -> None:
    """Log the source of each setting on startup."""
    for defn in SETTING_DEFS.values():
        value, source = _lookup(defn)
        if defn.is_secret and value:
            value = _mask_secret(value)
        logger.info(f"Setting {defn.key}: source={source}, value={value or '(empty)'}")


# ── Startup configuration ────────────────────────────────────────────────────

BLOB_BACKENDS = ("local", "gcs")


@dataclass(frozen=True)
class StorageConfig:
    """Everything needed to build a Storage instance."""

    database_url: str
    blob_backend: str = "local"
    blob_url_ttl: int = 3600
    local_blob_path: str = ".blobs"
    local_base_url: str = "http://localhost:8080"
    local_signing_secret: str = field(default="", repr=False)
    gcs_project_id: str = ""
    gcs_bucket_name: str = ""
    gcs_credentials_file: str = ""
    gcs_credentials_info: dict | None = field(default=None, repr=False)


def load_config() -> StorageConfig:
    """Build the StorageConfig from settings.

    Raises RuntimeError when required configuration is missing or malformed.
    """
    backend = get_setting("blob.backend").strip().lower()
    if backend not in BLOB_BACKENDS:
        raise RuntimeError(
            f"Unknown blob backend {backend!r}; expected one of {', '.join(BLOB_BACKENDS)}"
        )

    ttl = get_setting_int("blob.url_ttl_seconds", fallback=3600)
    if ttl <= 0:
        raise RuntimeError("DEPLOYSTORE_BLOB_URL_TTL_SECONDS must be positive")

    credentials_info = None
    raw_credentials = get_setting("gcs.credentials_json")
    if raw_credentials:
        try:
            credentials_info = json.loads(raw_credentials)
        except json.JSONDecodeError as e:
            raise RuntimeError(f"GCP_CREDENTIALS is not valid JSON: {e}") from e

    config = StorageConfig(
        database_url=get_setting("database.url"),
        blob_backend=backend,
        blob_url_ttl=ttl,
        local_blob_path=get_setting("local.blob_path"),
        local_base_url=get_setting("local.base_url"),
        local_signing_secret=get_setting("local.signing_secret"),
        gcs_project_id=get_setting("gcs.project_id"),
        gcs_bucket_name=get_setting("gcs.bucket_name"),
        gcs_credentials_file=get_setting("gcs.credentials_file"),
        gcs_credentials_info=credentials_info,
    )

    missing = []
    if backend == "gcs" and not config.gcs_bucket_name:
        missing.append("GCS_BUCKET_NAME")
    if backend == "local" and not config.local_signing_secret:
        missing.append("DEPLOYSTORE_BLOB_SIGNING_SECRET")
    if missing:
        raise RuntimeError(
            f"Blob backend {backend!r} requires configuration: {', '.join(missing)}"
        )
    return config
