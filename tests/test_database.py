"""Tests for the SQLite and in-memory stores."""

import pytest

from conftest import make_message
from shared.database import (
    InMemoryMessageStore, SqliteCredentialStore, SqliteMessageStore
)
from shared.errors import StorageError
from shared.models import Credential


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "scheduler.db")


class TestSqliteMessageStore:
    def test_missing_database_loads_empty(self, db_path):
        assert SqliteMessageStore(db_path).load() == []

    def test_save_and_load_preserve_order(self, db_path):
        store = SqliteMessageStore(db_path)
        messages = [
            make_message("z", offset_seconds=60),
            make_message("a", offset_seconds=-60, sent=True),
            make_message("m", offset_seconds=0),
        ]

        store.save(messages)

        loaded = SqliteMessageStore(db_path).load()
        assert loaded == messages
        assert [m.id for m in loaded] == ["z", "a", "m"]

    def test_save_replaces_whole_collection(self, db_path):
        store = SqliteMessageStore(db_path)
        store.save([make_message("a"), make_message("b")])

        store.save([make_message("c")])

        assert [m.id for m in store.load()] == ["c"]

    def test_unwritable_path_raises_storage_error(self, tmp_path):
        store = SqliteMessageStore(str(tmp_path / "missing-dir" / "scheduler.db"))
        with pytest.raises(StorageError):
            store.load()


class TestSqliteCredentialStore:
    def test_empty_store_has_no_credential(self, db_path):
        assert SqliteCredentialStore(db_path).load() is None

    def test_round_trip_keeps_metadata(self, db_path):
        credential = Credential(
            access_token="xoxe-access",
            refresh_token="xoxe-1-refresh",
            team={"id": "T123", "name": "Acme"},
            authed_user={"id": "U456"},
        )

        SqliteCredentialStore(db_path).save(credential)

        assert SqliteCredentialStore(db_path).load() == credential

    def test_save_overwrites(self, db_path):
        store = SqliteCredentialStore(db_path)
        store.save(Credential(access_token="first", refresh_token="r1"))
        store.save(Credential(access_token="second"))

        assert store.load() == Credential(access_token="second")

    def test_shares_file_with_message_store(self, db_path):
        SqliteCredentialStore(db_path).save(Credential(access_token="xoxe-access"))
        SqliteMessageStore(db_path).save([make_message("a")])

        assert SqliteCredentialStore(db_path).load().access_token == "xoxe-access"
        assert [m.id for m in SqliteMessageStore(db_path).load()] == ["a"]


class TestInMemoryMessageStore:
    def test_loaded_records_are_copies(self):
        store = InMemoryMessageStore([make_message("a")])

        store.load()[0].sent = True

        assert store.load()[0].sent is False
        assert store.save_count == 0
