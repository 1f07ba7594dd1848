"""Connectivity checks for the backing stores."""

from __future__ import annotations

import logging

from .blobs import BlobStore
from .documents import DocumentStore
from .errors import ErrorCode, StorageError, translate_error

logger = logging.getLogger(__name__)


def check_health(documents: DocumentStore, blobs: BlobStore) -> None:
    """Raise CONNECTION_FAILED unless both stores answer.

    The document store gets a trivial read, the blob store an existence
    check of its root container. The message names the failing dependency.
    """
    try:
        documents.ping()
    except Exception as e:
        message = f"Document store health check failed: {translate_error(e).message}"
        logger.warning(message)
        raise StorageError(ErrorCode.CONNECTION_FAILED, message) from e

    try:
        exists = blobs.root_exists()
    except Exception as e:
        message = f"Blob store health check failed: {translate_error(e).message}"
        logger.warning(message)
        raise StorageError(ErrorCode.CONNECTION_FAILED, message) from e

    if not exists:
        message = "Blob store health check failed: root container does not exist"
        logger.warning(message)
        raise StorageError(ErrorCode.CONNECTION_FAILED, message)
