"""Pytest configuration and fixtures for deploystore tests."""

import logging

import pytest

from deploystore.blobs import LocalBlobStore
from deploystore.database import create_db_engine, init_db
from deploystore.documents import SQLDocumentStore
from deploystore.errors import StorageError, translated_errors
from deploystore.models import Account
from deploystore.storage import KINDS, Storage

logger = logging.getLogger(__name__)

START_MILLIS = 1_700_000_000_000
SIGNING_SECRET = "test-signing-secret-0123456789abcdef"


def drop_all(documents) -> None:
    """Delete every stored document, kind by kind.

    Keeps going after a failing kind and raises the first failure at the end.
    """
    errors: list[StorageError] = []
    for kind in KINDS:
        try:
            with translated_errors():
                keys = documents.keys(kind)
                if keys:
                    documents.delete(kind, keys)
        except StorageError as e:
            logger.warning(f"Failed to drop {kind} records: {e}")
            errors.append(e)
    if errors:
        raise errors[0]


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, now: int = START_MILLIS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


@pytest.fixture
def engine():
    """Fresh in-memory database for each test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def documents(engine):
    return SQLDocumentStore(engine)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs", "http://blobs.test", SIGNING_SECRET)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(documents, blob_store, clock):
    s = Storage(documents, blob_store, clock=clock)
    yield s
    drop_all(s.documents)


@pytest.fixture
def make_account(storage):
    """Create an account and return its id."""

    def _make(email: str, **fields) -> str:
        return storage.add_account(Account(email=email, **fields))

    return _make
