import asyncio
import json
import logging
import sqlite3
import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from librarian import database
from librarian.database import get_db_connection, initialize_database

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An error occurred. Please try again."


class StoreError(Exception):
    """A record store call failed. The message is safe to show to the user."""

    def __init__(self, message: str = GENERIC_ERROR_MESSAGE) -> None:
        super().__init__(message)
        self.message = message


class RecordStore:
    """Create/read/update/delete of schemaless records in named collections.

    Paths look like ``users/<uid>/books``. Reads return the whole collection;
    every returned record carries its ``id``. Each call either succeeds or
    raises StoreError.
    """

    async def list_collection(self, path: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def create_record(self, path: str, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def update_record(self, path: str, record_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def delete_record(self, path: str, record_id: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class SQLiteRecordStore(RecordStore):
    """Local record store keeping each document as a JSON blob in SQLite.

    Timestamps are written as ISO-8601 strings; the model layer parses them back.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        initialize_database(self.db_file)

    # ------------------------- Store API ------------------------- #
    async def list_collection(self, path: str) -> List[Dict[str, Any]]:
        return await self._run(self._list, path)

    async def create_record(self, path: str, data: Dict[str, Any]) -> str:
        return await self._run(self._create, path, data)

    async def update_record(self, path: str, record_id: str, data: Dict[str, Any]) -> None:
        await self._run(self._update, path, record_id, data)

    async def delete_record(self, path: str, record_id: str) -> None:
        await self._run(self._delete, path, record_id)

    # ------------------------- Internals ------------------------- #
    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except StoreError:
            raise
        except (sqlite3.Error, TypeError, ValueError) as exc:
            logger.error(f"Record store call {func.__name__} failed: {exc}")
            raise StoreError() from exc

    def _list(self, path: str) -> List[Dict[str, Any]]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT id, data FROM records WHERE path = ? ORDER BY seq", (path,)
            ).fetchall()
        finally:
            conn.close()
        records = []
        for row in rows:
            try:
                data = json.loads(row["data"])
            except json.JSONDecodeError:
                logger.warning(f"Skipping unreadable record {path}/{row['id']}")
                continue
            if not isinstance(data, dict):
                data = {}
            data["id"] = row["id"]
            records.append(data)
        return records

    def _create(self, path: str, data: Dict[str, Any]) -> str:
        record_id = uuid.uuid4().hex
        payload = {k: v for k, v in data.items() if k != "id"}
        conn = get_db_connection(self.db_file)
        try:
            conn.execute(
                "INSERT INTO records (path, id, data) VALUES (?, ?, ?)",
                (path, record_id, json.dumps(payload, default=_json_default, ensure_ascii=False)),
            )
            conn.commit()
        finally:
            conn.close()
        logger.debug(f"Created record {path}/{record_id}")
        return record_id

    def _update(self, path: str, record_id: str, data: Dict[str, Any]) -> None:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT data FROM records WHERE path = ? AND id = ?", (path, record_id)
            ).fetchone()
            if row is None:
                logger.error(f"No record to update: {path}/{record_id}")
                raise StoreError()
            current = json.loads(row["data"])
            if not isinstance(current, dict):
                current = {}
            # Field merge, the same as a document update: untouched fields survive
            current.update({k: v for k, v in data.items() if k != "id"})
            conn.execute(
                "UPDATE records SET data = ?, updated_at = CURRENT_TIMESTAMP WHERE path = ? AND id = ?",
                (json.dumps(current, default=_json_default, ensure_ascii=False), path, record_id),
            )
            conn.commit()
        finally:
            conn.close()

    def _delete(self, path: str, record_id: str) -> None:
        conn = get_db_connection(self.db_file)
        try:
            conn.execute("DELETE FROM records WHERE path = ? AND id = ?", (path, record_id))
            conn.commit()
        finally:
            conn.close()
