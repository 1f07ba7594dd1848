"""Build a Storage from configuration."""

from __future__ import annotations

import logging

from .blobs import BlobStore, GCSBlobStore, LocalBlobStore
from .database import create_db_engine, init_db
from .documents import SQLDocumentStore
from .settings import StorageConfig, load_config
from .storage import Storage

logger = logging.getLogger(__name__)


def create_document_store(config: StorageConfig) -> SQLDocumentStore:
    engine = create_db_engine(config.database_url)
    init_db(engine)
    return SQLDocumentStore(engine)


def create_blob_store(config: StorageConfig) -> BlobStore:
    if config.blob_backend == "gcs":
        return GCSBlobStore(
            bucket_name=config.gcs_bucket_name,
            project_id=config.gcs_project_id or None,
            credentials_file=config.gcs_credentials_file or None,
            credentials_info=config.gcs_credentials_info,
        )
    return LocalBlobStore(
        root=config.local_blob_path,
        base_url=config.local_base_url,
        signing_secret=config.local_signing_secret,
    )


def create_storage(config: StorageConfig | None = None) -> Storage:
    """Wire a Storage with its document and blob stores.

    Without *config* the environment is read via load_config(), which
    raises RuntimeError when required settings are missing.
    """
    config = config or load_config()
    storage = Storage(
        create_document_store(config),
        create_blob_store(config),
        blob_url_ttl=config.blob_url_ttl,
    )
    logger.info(f"Storage initialized (blob backend: {config.blob_backend})")
    return storage
