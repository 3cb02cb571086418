import asyncio
import sqlite3
from datetime import datetime, timezone

import pytest

from librarian.database import get_db_connection
from librarian.store import GENERIC_ERROR_MESSAGE, RecordStore, StoreError

PATH = "users/user-1/books"


def test_create_and_list_in_insertion_order(store):
    first = asyncio.run(store.create_record(PATH, {"title": "B"}))
    second = asyncio.run(store.create_record(PATH, {"title": "A"}))
    records = asyncio.run(store.list_collection(PATH))
    assert [r["id"] for r in records] == [first, second]
    assert records[1] == {"title": "A", "id": second}
    assert first != second


def test_collections_are_separate(store):
    asyncio.run(store.create_record(PATH, {"title": "B"}))
    assert asyncio.run(store.list_collection("users/user-2/books")) == []


def test_datetimes_are_stored_as_iso_strings(store):
    when = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)
    asyncio.run(store.create_record(PATH, {"addDate": when}))
    record = asyncio.run(store.list_collection(PATH))[0]
    assert record["addDate"] == "2024-03-01T12:30:00+00:00"


def test_update_merges_fields(store):
    record_id = asyncio.run(store.create_record(PATH, {"title": "Dune", "author": "Herrick"}))
    asyncio.run(store.update_record(PATH, record_id, {"title": "Dune Messiah"}))
    record = asyncio.run(store.list_collection(PATH))[0]
    assert record == {"title": "Dune Messiah", "author": "Herrick", "id": record_id}


def test_update_missing_record_fails(store):
    with pytest.raises(StoreError):
        asyncio.run(store.update_record(PATH, "missing", {"title": "x"}))


def test_delete(store):
    record_id = asyncio.run(store.create_record(PATH, {"title": "Dune"}))
    asyncio.run(store.delete_record(PATH, record_id))
    assert asyncio.run(store.list_collection(PATH)) == []
    # Deleting again is not an error
    asyncio.run(store.delete_record(PATH, record_id))


def test_unreadable_rows_are_skipped(store, db_file):
    asyncio.run(store.create_record(PATH, {"title": "Dune"}))
    conn = get_db_connection(db_file)
    conn.execute("INSERT INTO records (path, id, data) VALUES (?, ?, ?)", (PATH, "bad", "{not json"))
    conn.commit()
    conn.close()
    records = asyncio.run(store.list_collection(PATH))
    assert [r["title"] for r in records] == ["Dune"]


def test_update_replaces_non_object_row(store, db_file):
    conn = get_db_connection(db_file)
    conn.execute("INSERT INTO records (path, id, data) VALUES (?, ?, ?)", (PATH, "odd", "[1, 2]"))
    conn.commit()
    conn.close()
    asyncio.run(store.update_record(PATH, "odd", {"title": "Dune"}))
    assert asyncio.run(store.list_collection(PATH)) == [{"title": "Dune", "id": "odd"}]


def test_sqlite_errors_become_store_errors(store, monkeypatch):
    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr("librarian.store.get_db_connection", broken)
    with pytest.raises(StoreError) as excinfo:
        asyncio.run(store.list_collection(PATH))
    assert excinfo.value.message == GENERIC_ERROR_MESSAGE


def test_base_store_is_abstract():
    with pytest.raises(NotImplementedError):
        asyncio.run(RecordStore().list_collection(PATH))
