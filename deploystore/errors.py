"""Storage error taxonomy and translation of backing-store failures.

Every facade operation either returns a result or raises a StorageError
carrying one ErrorCode. Errors raised by SQLAlchemy, the Google Cloud
clients or the filesystem are converted with translate_error() before they
leave the storage layer.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import Enum

from google.api_core import exceptions as gcloud_exceptions
from google.auth import exceptions as gauth_exceptions
from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    CONNECTION_FAILED = "ConnectionFailed"
    EXPIRED = "Expired"
    INVALID = "Invalid"
    NOT_IMPLEMENTED = "NotImplemented"
    OTHER = "Other"


class StorageError(Exception):
    """Base exception for all storage-related errors."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self) -> str:
        return f"StorageError({self.code.value}, {self.message!r})"


def not_found(message: str) -> StorageError:
    return StorageError(ErrorCode.NOT_FOUND, message)


def already_exists(message: str) -> StorageError:
    return StorageError(ErrorCode.ALREADY_EXISTS, message)


def invalid(message: str) -> StorageError:
    return StorageError(ErrorCode.INVALID, message)


# Checked in order; the first matching class wins.
_CLASS_MAP: list[tuple[tuple[type[BaseException], ...], ErrorCode]] = [
    ((gcloud_exceptions.NotFound, sa_exc.NoResultFound, FileNotFoundError), ErrorCode.NOT_FOUND),
    (
        (
            gcloud_exceptions.Conflict,
            gcloud_exceptions.PreconditionFailed,
            sa_exc.IntegrityError,
            FileExistsError,
        ),
        ErrorCode.ALREADY_EXISTS,
    ),
    (
        (
            gcloud_exceptions.ServiceUnavailable,
            gcloud_exceptions.RetryError,
            gauth_exceptions.GoogleAuthError,
            sa_exc.OperationalError,
            sa_exc.DisconnectionError,
            ConnectionError,
            TimeoutError,
        ),
        ErrorCode.CONNECTION_FAILED,
    ),
]

# HTTP-style status codes reported by backing stores (``error.code``).
_STATUS_MAP: dict[int, ErrorCode] = {
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.ALREADY_EXISTS,
    412: ErrorCode.ALREADY_EXISTS,
    503: ErrorCode.CONNECTION_FAILED,
}

_ACCESS_DENIED = (
    gcloud_exceptions.Forbidden,
    gcloud_exceptions.Unauthorized,
    PermissionError,
)


def _message_of(error: BaseException) -> str:
    message = getattr(error, "message", None)
    if not isinstance(message, str) or not message:
        message = str(error)
    return message or "Unknown storage error"


def translate_error(error: BaseException) -> StorageError:
    """Map any backing-store failure onto the storage taxonomy.

    Never raises. Unrecognized errors become ErrorCode.OTHER with the
    original message kept for diagnostics.
    """
    try:
        if isinstance(error, StorageError):
            return error

        if isinstance(error, _ACCESS_DENIED):
            return StorageError(ErrorCode.CONNECTION_FAILED, "Access denied")

        for classes, code in _CLASS_MAP:
            if isinstance(error, classes):
                return StorageError(code, _message_of(error))

        status = getattr(error, "code", None)
        if isinstance(status, int) and not isinstance(status, bool):
            if status in (401, 403):
                return StorageError(ErrorCode.CONNECTION_FAILED, "Access denied")
            if status in _STATUS_MAP:
                return StorageError(_STATUS_MAP[status], _message_of(error))

        return StorageError(ErrorCode.OTHER, _message_of(error))
    except Exception as e:
        logger.warning(f"Failed to translate storage error {type(error).__name__}: {e}")
        return StorageError(ErrorCode.OTHER, "Unknown storage error")


@contextmanager
def translated_errors():
    """Re-raise anything escaping the block as a StorageError."""
    try:
        yield
    except StorageError:
        raise
    except Exception as e:
        raise translate_error(e) from e
