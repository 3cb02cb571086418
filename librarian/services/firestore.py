"""Record store backed by the hosted document database (Firestore REST API).

Documents travel as typed ``fields`` maps; ``encode_fields`` / ``decode_fields``
convert between those and plain Python values.
"""

import logging
import re
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from librarian.models import parse_timestamp
from librarian.services.http_client import StoreHTTPClient, get_http_client
from librarian.store import RecordStore, StoreError

logger = logging.getLogger(__name__)

FIRESTORE_URL = "https://firestore.googleapis.com/v1"
PAGE_SIZE = 300

_FRACTION = re.compile(r"\.(\d{6})\d+")


def encode_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": _format_timestamp(value)}
    if isinstance(value, date):
        return {"timestampValue": _format_timestamp(datetime.combine(value, time(), tzinfo=timezone.utc))}
    if isinstance(value, (list, tuple, set)):
        values = [encode_value(item) for item in value]
        return {"arrayValue": {"values": values} if values else {}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    return {"stringValue": str(value)}


def decode_value(value: Dict[str, Any]) -> Any:
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        # The API sends nanoseconds; datetime keeps microseconds
        return parse_timestamp(_FRACTION.sub(r".\1", value["timestampValue"]))
    if "arrayValue" in value:
        return [decode_value(item) for item in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    for key in ("referenceValue", "bytesValue", "geoPointValue"):
        if key in value:
            return value[key]
    return None


def encode_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {str(key): encode_value(item) for key, item in data.items()}


def decode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: decode_value(item) for key, item in fields.items()}


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def document_id(name: str) -> str:
    """Last path segment of a full document resource name."""
    return name.rsplit("/", 1)[-1]


class FirestoreRecordStore(RecordStore):
    """RecordStore over the Firestore REST API.

    ``id_token`` is the signed-in user's token; security rules on the hosted
    side scope what it may touch.
    """

    def __init__(self, project_id: Optional[str] = None, id_token: Optional[str] = None,
                 client: Optional[StoreHTTPClient] = None, database: Optional[str] = None) -> None:
        self.project_id = project_id or settings.firestore_project_id
        if not self.project_id:
            raise ValueError("A Firestore project id is required.")
        self.database = database or settings.firestore_database
        self.id_token = id_token
        self._client = client
        self.base_url = f"{FIRESTORE_URL}/projects/{self.project_id}/databases/{self.database}/documents"

    async def _get_client(self) -> StoreHTTPClient:
        if self._client is None:
            self._client = await get_http_client()
        return self._client

    def _headers(self) -> Dict[str, str]:
        if self.id_token:
            return {"Authorization": f"Bearer {self.id_token}"}
        return {}

    async def _call(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(method, url, headers=self._headers(), **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(f"Firestore {method} {url} returned {exc.response.status_code}")
            raise StoreError() from exc
        except httpx.HTTPError as exc:
            logger.error(f"Firestore {method} {url} failed: {exc}")
            raise StoreError() from exc
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            logger.error(f"Firestore {method} {url} returned a non-JSON body")
            raise StoreError() from exc

    # ------------------------- Store API ------------------------- #
    async def list_collection(self, path: str) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/{path}"
        records: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"pageSize": PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            payload = await self._call("GET", url, params=params)
            for doc in payload.get("documents", []):
                record = decode_fields(doc.get("fields", {}))
                record["id"] = document_id(doc.get("name", ""))
                records.append(record)
            page_token = payload.get("nextPageToken")
            if not page_token:
                return records

    async def create_record(self, path: str, data: Dict[str, Any]) -> str:
        body = {"fields": encode_fields({k: v for k, v in data.items() if k != "id"})}
        payload = await self._call("POST", f"{self.base_url}/{path}", json=body)
        name = payload.get("name")
        if not name:
            logger.error(f"Firestore create on {path} returned no document name")
            raise StoreError()
        return document_id(name)

    async def update_record(self, path: str, record_id: str, data: Dict[str, Any]) -> None:
        fields = {k: v for k, v in data.items() if k != "id"}
        params: List[tuple] = [("updateMask.fieldPaths", key) for key in fields]
        params.append(("currentDocument.exists", "true"))
        await self._call(
            "PATCH",
            f"{self.base_url}/{path}/{record_id}",
            params=params,
            json={"fields": encode_fields(fields)},
        )

    async def delete_record(self, path: str, record_id: str) -> None:
        await self._call("DELETE", f"{self.base_url}/{path}/{record_id}")

    async def close(self) -> None:
        # The shared client is closed by cleanup_http_client
        return None
