"""Blob store adapters for release artifacts.

Two implementations of the BlobStore protocol:

- LocalBlobStore keeps blobs on the local filesystem and issues signed,
  time-limited download URLs (HS256 JWTs) served by the HTTP app. Good for
  development, tests and single-host installs.
- GCSBlobStore keeps blobs in a Google Cloud Storage bucket under ``blobs/``
  and issues V4 signed URLs.

Both consume the whole input stream before reporting success and treat
deleting an absent blob as success.
"""

from __future__ import annotations

import io
import logging
import os
import re
import shutil
import tempfile
import time
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO, Protocol
from urllib.parse import quote, urlencode

import jwt
from google.api_core import exceptions as gcloud_exceptions
from google.cloud import storage as gcs
from google.oauth2 import service_account

from .errors import ErrorCode, StorageError, not_found, translated_errors

logger = logging.getLogger(__name__)

BLOB_PREFIX = "blobs/"
CHUNK_SIZE = 1024 * 1024
TOKEN_ALGORITHM = "HS256"
_BLOB_ID_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")


class BlobStore(Protocol):
    """Object store contract used by the storage facade."""

    def upload(self, blob_id: str, stream: BinaryIO, length: int | None = None) -> str: ...

    def read_url(self, blob_id: str, ttl: int) -> str: ...

    def delete(self, blob_id: str) -> None: ...

    def root_exists(self) -> bool: ...


class _IterableReader(io.RawIOBase):
    """File-like view over an iterable of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size


def as_readable(stream) -> BinaryIO:
    """Accept a binary file object or an iterable of bytes."""
    if hasattr(stream, "read"):
        return stream
    if isinstance(stream, (bytes, bytearray)):
        return io.BytesIO(stream)
    return io.BufferedReader(_IterableReader(stream))


def validate_blob_id(blob_id: str) -> str:
    if not blob_id or blob_id in (".", "..") or not _BLOB_ID_RE.match(blob_id):
        raise StorageError(ErrorCode.INVALID, f"Invalid blob id: {blob_id!r}")
    return blob_id


class LocalBlobStore:
    """Filesystem-backed blob store."""

    def __init__(self, root: str | Path, base_url: str, signing_secret: str):
        if not signing_secret:
            raise StorageError(ErrorCode.CONNECTION_FAILED, "Blob signing secret is required")
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")
        self._secret = signing_secret
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                ErrorCode.CONNECTION_FAILED, f"Failed to create blob directory {self.root}: {e}"
            ) from e
        logger.info(f"Local blob store initialized at {self.root}")

    def path_for(self, blob_id: str) -> Path:
        return self.root / validate_blob_id(blob_id)

    def upload(self, blob_id: str, stream: BinaryIO, length: int | None = None) -> str:
        target = self.path_for(blob_id)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{blob_id}.", suffix=".part")
        tmp_path = Path(tmp_name)
        try:
            with translated_errors():
                with os.fdopen(fd, "wb") as out:
                    shutil.copyfileobj(as_readable(stream), out, CHUNK_SIZE)
                    out.flush()
                    os.fsync(out.fileno())
                os.replace(tmp_path, target)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        size = target.stat().st_size
        if length is not None and size != length:
            logger.warning(f"Blob {blob_id}: expected {length} bytes, stored {size}")
        logger.info(f"Stored blob {blob_id} ({size} bytes)")
        return blob_id

    def issue_token(self, blob_id: str, ttl: int) -> str:
        now = int(time.time())
        claims = {"sub": validate_blob_id(blob_id), "iat": now, "exp": now + ttl}
        return jwt.encode(claims, self._secret, algorithm=TOKEN_ALGORITHM)

    def read_url(self, blob_id: str, ttl: int) -> str:
        query = urlencode({"token": self.issue_token(blob_id, ttl)})
        return f"{self.base_url}/blobs/{quote(blob_id)}?{query}"

    def verify(self, blob_id: str, token: str) -> bool:
        """Check a token issued by read_url(): valid signature, not expired, same blob."""
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info(f"Expired download token for blob {blob_id}")
            return False
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected download token for blob {blob_id}: {e}")
            return False
        return claims["sub"] == blob_id

    def delete(self, blob_id: str) -> None:
        path = self.path_for(blob_id)
        with translated_errors():
            try:
                path.unlink()
            except FileNotFoundError:
                logger.info(f"Blob {blob_id} already absent")
                return
        logger.info(f"Deleted blob {blob_id}")

    def open(self, blob_id: str) -> BinaryIO:
        path = self.path_for(blob_id)
        if not path.is_file():
            raise not_found(f"Blob {blob_id} not found")
        return path.open("rb")

    def root_exists(self) -> bool:
        return self.root.is_dir()


class GCSBlobStore:
    """Google Cloud Storage backed blob store."""

    def __init__(
        self,
        bucket_name: str,
        project_id: str | None = None,
        credentials_file: str | None = None,
        credentials_info: dict | None = None,
        client: gcs.Client | None = None,
    ):
        if not bucket_name:
            raise StorageError(ErrorCode.CONNECTION_FAILED, "GCS bucket name is required")
        self.bucket_name = bucket_name
        with translated_errors():
            self.client = client or self._create_client(
                project_id, credentials_file, credentials_info
            )
            self.bucket = self.client.bucket(bucket_name)
        logger.info(f"GCS blob store using bucket {bucket_name}")

    @staticmethod
    def _create_client(
        project_id: str | None, credentials_file: str | None, credentials_info: dict | None
    ) -> gcs.Client:
        credentials = None
        if credentials_info:
            credentials = service_account.Credentials.from_service_account_info(credentials_info)
        elif credentials_file:
            credentials = service_account.Credentials.from_service_account_file(credentials_file)

        if credentials is None:
            logger.info("Using default application credentials for GCS")
            return gcs.Client(project=project_id or None)
        project = project_id or credentials.project_id
        return gcs.Client(project=project, credentials=credentials)

    def _blob(self, blob_id: str):
        return self.bucket.blob(f"{BLOB_PREFIX}{validate_blob_id(blob_id)}")

    def upload(self, blob_id: str, stream: BinaryIO, length: int | None = None) -> str:
        blob = self._blob(blob_id)
        with translated_errors():
            blob.upload_from_file(as_readable(stream), size=length, rewind=False)
        logger.info(f"Stored blob {blob_id} in gs://{self.bucket_name}")
        return blob_id

    def read_url(self, blob_id: str, ttl: int) -> str:
        blob = self._blob(blob_id)
        with translated_errors():
            return blob.generate_signed_url(
                version="v4", expiration=timedelta(seconds=ttl), method="GET"
            )

    def delete(self, blob_id: str) -> None:
        blob = self._blob(blob_id)
        with translated_errors():
            try:
                blob.delete()
            except gcloud_exceptions.NotFound:
                logger.info(f"Blob {blob_id} already absent")
                return
        logger.info(f"Deleted blob {blob_id} from gs://{self.bucket_name}")

    def root_exists(self) -> bool:
        with translated_errors():
            return self.bucket.exists()
