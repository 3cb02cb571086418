import asyncio

import pytest

from librarian.library import Library
from librarian.models import UserContext
from librarian.store import SQLiteRecordStore


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def store(db_file):
    return SQLiteRecordStore(db_file=db_file)


@pytest.fixture
def user():
    return UserContext(id="user-1", display_name="Test User", email="test@example.com", email_verified=True)


@pytest.fixture
def lib(store, user):
    return asyncio.run(Library.open(store, user))
