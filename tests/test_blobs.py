"""Tests for the blob store adapters."""

import io
import time
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from google.api_core import exceptions as gcloud_exceptions

from deploystore.blobs import GCSBlobStore, LocalBlobStore, as_readable
from deploystore.errors import ErrorCode, StorageError

from conftest import SIGNING_SECRET


class _FailingStream(io.RawIOBase):
    """Yields some bytes, then breaks like a dropped client connection."""

    def __init__(self):
        self._sent = False

    def readable(self):
        return True

    def readinto(self, buffer):
        if not self._sent:
            self._sent = True
            buffer[:4] = b"part"
            return 4
        raise ConnectionResetError("client went away")


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestAsReadable:
    def test_file_object_is_returned_as_is(self):
        stream = io.BytesIO(b"abc")
        assert as_readable(stream) is stream

    def test_bytes(self):
        assert as_readable(b"abc").read() == b"abc"

    def test_iterable_of_chunks(self):
        reader = as_readable(iter([b"ab", b"", b"cde"]))
        assert reader.read() == b"abcde"


class TestLocalBlobStore:
    def test_requires_signing_secret(self, tmp_path):
        with pytest.raises(StorageError):
            LocalBlobStore(tmp_path, "http://blobs.test", "")

    def test_upload_consumes_stream(self, blob_store):
        data = b"x" * (3 * 1024 * 1024 + 17)
        assert blob_store.upload("release-1", io.BytesIO(data), len(data)) == "release-1"
        assert blob_store.path_for("release-1").read_bytes() == data

    def test_upload_from_chunks(self, blob_store):
        blob_store.upload("release-2", iter([b"hello ", b"world"]))
        assert blob_store.path_for("release-2").read_bytes() == b"hello world"

    def test_upload_overwrites(self, blob_store):
        blob_store.upload("b", io.BytesIO(b"old"))
        blob_store.upload("b", io.BytesIO(b"new"))
        assert blob_store.path_for("b").read_bytes() == b"new"

    def test_stream_error_fails_without_partial_object(self, blob_store):
        with pytest.raises(StorageError) as exc:
            blob_store.upload("broken", io.BufferedReader(_FailingStream()))

        assert exc.value.code == ErrorCode.CONNECTION_FAILED
        assert not blob_store.path_for("broken").exists()
        assert list(blob_store.root.iterdir()) == []

    def test_invalid_blob_id(self, blob_store):
        for bad in ("../escape", "a/b", "", ".."):
            with pytest.raises(StorageError) as exc:
                blob_store.upload(bad, io.BytesIO(b"x"))
            assert exc.value.code == ErrorCode.INVALID

    def test_delete_is_idempotent(self, blob_store):
        blob_store.upload("gone", io.BytesIO(b"data"))
        blob_store.delete("gone")
        blob_store.delete("gone")
        assert not blob_store.path_for("gone").exists()

    def test_read_url_is_signed_and_time_limited(self, blob_store):
        before = int(time.time())
        url = blob_store.read_url("release-1", 3600)

        assert url.startswith("http://blobs.test/blobs/release-1?token=")
        token = _query(url)["token"]
        claims = jwt.decode(token, SIGNING_SECRET, algorithms=["HS256"])
        assert claims["sub"] == "release-1"
        assert before + 3600 <= claims["exp"] <= int(time.time()) + 3600
        assert blob_store.verify("release-1", token)

    def test_verify_rejects_other_blob(self, blob_store):
        token = _query(blob_store.read_url("release-1", 60))["token"]
        assert not blob_store.verify("release-2", token)

    def test_verify_rejects_expired_token(self, blob_store):
        token = blob_store.issue_token("release-1", -10)
        assert not blob_store.verify("release-1", token)

    def test_verify_rejects_foreign_secret(self, blob_store):
        forged = jwt.encode(
            {"sub": "release-1", "exp": int(time.time()) + 60},
            "another-secret-0123456789abcdef-xyz",
            algorithm="HS256",
        )
        assert not blob_store.verify("release-1", forged)
        assert not blob_store.verify("release-1", "not-a-token")

    def test_verify_requires_expiry(self, blob_store):
        token = jwt.encode({"sub": "release-1"}, SIGNING_SECRET, algorithm="HS256")
        assert not blob_store.verify("release-1", token)

    def test_open_missing_blob(self, blob_store):
        with pytest.raises(StorageError) as exc:
            blob_store.open("nothing")
        assert exc.value.code == ErrorCode.NOT_FOUND

    def test_root_exists(self, blob_store):
        assert blob_store.root_exists()
        blob_store.root.rmdir()
        assert not blob_store.root_exists()


@pytest.fixture
def gcs_client():
    client = MagicMock()
    bucket = client.bucket.return_value
    bucket.blob.return_value = MagicMock()
    return client


@pytest.fixture
def gcs_store(gcs_client):
    return GCSBlobStore("releases", client=gcs_client)


class TestGCSBlobStore:
    def test_requires_bucket(self, gcs_client):
        with pytest.raises(StorageError):
            GCSBlobStore("", client=gcs_client)

    def test_upload_writes_under_blob_prefix(self, gcs_store, gcs_client):
        stream = io.BytesIO(b"payload")
        assert gcs_store.upload("r1", stream, 7) == "r1"

        bucket = gcs_client.bucket.return_value
        bucket.blob.assert_called_with("blobs/r1")
        bucket.blob.return_value.upload_from_file.assert_called_once_with(
            stream, size=7, rewind=False
        )

    def test_upload_failure_is_translated(self, gcs_store, gcs_client):
        blob = gcs_client.bucket.return_value.blob.return_value
        blob.upload_from_file.side_effect = gcloud_exceptions.Forbidden("no write access")

        with pytest.raises(StorageError) as exc:
            gcs_store.upload("r1", io.BytesIO(b"x"), 1)
        assert exc.value.code == ErrorCode.CONNECTION_FAILED

    def test_read_url(self, gcs_store, gcs_client):
        blob = gcs_client.bucket.return_value.blob.return_value
        blob.generate_signed_url.return_value = "https://storage.googleapis.com/signed"

        assert gcs_store.read_url("r1", 3600) == "https://storage.googleapis.com/signed"
        kwargs = blob.generate_signed_url.call_args.kwargs
        assert kwargs["version"] == "v4"
        assert kwargs["method"] == "GET"
        assert kwargs["expiration"].total_seconds() == 3600

    def test_delete_missing_blob_succeeds(self, gcs_store, gcs_client):
        blob = gcs_client.bucket.return_value.blob.return_value
        blob.delete.side_effect = gcloud_exceptions.NotFound("gone")

        gcs_store.delete("r1")
        gcs_store.delete("r1")
        assert blob.delete.call_count == 2

    def test_delete_other_failure_propagates(self, gcs_store, gcs_client):
        blob = gcs_client.bucket.return_value.blob.return_value
        blob.delete.side_effect = gcloud_exceptions.InternalServerError("oops")

        with pytest.raises(StorageError) as exc:
            gcs_store.delete("r1")
        assert exc.value.code == ErrorCode.OTHER

    def test_root_exists(self, gcs_store, gcs_client):
        gcs_client.bucket.return_value.exists.return_value = False
        assert gcs_store.root_exists() is False
