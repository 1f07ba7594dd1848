"""Tests for access key management in the storage facade."""

import pytest

from deploystore.errors import ErrorCode, StorageError
from deploystore.models import AccessKey

from conftest import START_MILLIS


@pytest.fixture
def owner(make_account):
    return make_account("owner@x.com")


class TestAccessKeys:
    def test_add_and_get(self, storage, owner):
        key_id = storage.add_access_key(
            owner,
            AccessKey(
                name="secret-token",
                friendly_name="CI",
                created_by="laptop",
                expires=START_MILLIS + 86_400_000,
            ),
        )

        key = storage.get_access_key(owner, key_id)
        assert key.id == key_id
        assert key.name == "secret-token"
        assert key.friendly_name == "CI"
        assert key.account_id == owner
        assert key.created_time == START_MILLIS

    def test_name_is_generated_when_missing(self, storage, owner):
        key_id = storage.add_access_key(owner, AccessKey(friendly_name="Generated"))
        key = storage.get_access_key(owner, key_id)
        assert key.name
        assert storage.get_account_id_from_access_key(key.name) == owner

    def test_duplicate_name(self, storage, owner, make_account):
        other = make_account("other@x.com")
        storage.add_access_key(owner, AccessKey(name="same"))
        with pytest.raises(StorageError) as exc:
            storage.add_access_key(other, AccessKey(name="same"))
        assert exc.value.code == ErrorCode.ALREADY_EXISTS

    def test_keys_are_private_to_their_account(self, storage, owner, make_account):
        other = make_account("other@x.com")
        key_id = storage.add_access_key(owner, AccessKey(name="mine"))

        with pytest.raises(StorageError) as exc:
            storage.get_access_key(other, key_id)
        assert exc.value.code == ErrorCode.NOT_FOUND
        with pytest.raises(StorageError):
            storage.remove_access_key(other, key_id)
        assert storage.get_access_keys(other) == []

    def test_get_access_keys(self, storage, owner, clock):
        first = storage.add_access_key(owner, AccessKey(name="a"))
        clock.advance(1)
        second = storage.add_access_key(owner, AccessKey(name="b"))
        assert [k.id for k in storage.get_access_keys(owner)] == [first, second]

    def test_update_access_key(self, storage, owner):
        key_id = storage.add_access_key(owner, AccessKey(name="tok", friendly_name="Old"))
        storage.update_access_key(
            owner, AccessKey(id=key_id, friendly_name="New", name="cannot-change")
        )

        key = storage.get_access_key(owner, key_id)
        assert key.friendly_name == "New"
        assert key.name == "tok"

    def test_update_requires_id(self, storage, owner):
        with pytest.raises(StorageError) as exc:
            storage.update_access_key(owner, AccessKey(friendly_name="x"))
        assert exc.value.code == ErrorCode.INVALID

    def test_remove_access_key(self, storage, owner):
        key_id = storage.add_access_key(owner, AccessKey(name="tok"))
        storage.remove_access_key(owner, key_id)

        assert storage.get_access_keys(owner) == []
        with pytest.raises(StorageError) as exc:
            storage.get_account_id_from_access_key("tok")
        assert exc.value.code == ErrorCode.NOT_FOUND
