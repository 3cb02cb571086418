from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar, Union

from config import settings

DEFAULT_CATEGORIES = tuple(settings.default_categories)

BOOKS = "books"
BORROWERS = "borrowers"
LOGS = "logs"

T = TypeVar("T")


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce a stored timestamp into an aware datetime, or None when unknown.

    Accepts datetime objects, ISO-8601 strings (a trailing 'Z' included) and
    epoch seconds. Naive values are taken as UTC.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_optional_text(value: Any) -> str | None:
    text = _as_text(value)
    return text or None


def normalize_categories(raw: Any) -> list[str]:
    """Strip, drop empties and de-duplicate categories, keeping first-seen order."""
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple, set)):
        return []
    seen: list[str] = []
    for item in raw:
        text = _as_text(item)
        if text and text not in seen:
            seen.append(text)
    return seen


def normalize_book_ids(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        return []
    ids: list[str] = []
    for item in raw:
        # older documents stored {"id": ..., "name": ...} objects instead of bare ids
        if isinstance(item, dict):
            item = item.get("id")
        text = _as_text(item)
        if text:
            ids.append(text)
    return ids


class Book:
    """A single book owned by one user account."""

    def __init__(self, title: str, author: str, category: list | None = None,
                 collection_name: str | None = None, add_date: datetime | None = None,
                 last_modified: datetime | None = None, id: str | None = None) -> None:
        self.id = id
        self.title = _as_text(title)
        self.author = _as_text(author)
        self.category = normalize_categories(category)
        self.collection_name = _as_optional_text(collection_name)
        self.add_date = parse_timestamp(add_date)
        self.last_modified = parse_timestamp(last_modified)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author}"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(id={self.id!r}, title={self.title!r}, author={self.author!r})"

    @property
    def natural_key(self) -> tuple[str, str]:
        return (self.title, self.author)

    def to_record(self) -> dict:
        """Document shape written to the record store (no id)."""
        return {
            "title": self.title,
            "author": self.author,
            "category": list(self.category),
            "collectionName": self.collection_name,
            "addDate": self.add_date,
            "lastModified": self.last_modified,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": list(self.category),
            "collection_name": self.collection_name,
            "add_date": self.add_date.isoformat() if self.add_date else None,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
        }

    @staticmethod
    def from_record(data: dict) -> "Book":
        # Legacy documents use 'name' for the title
        title = data.get("title")
        if title is None:
            title = data.get("name")
        return Book(
            id=_as_optional_text(data.get("id")),
            title=title,
            author=data.get("author"),
            category=data.get("category", data.get("categories")),
            collection_name=data.get("collectionName", data.get("collection_name")),
            add_date=data.get("addDate", data.get("add_date")),
            last_modified=data.get("lastModified", data.get("last_modified")),
        )


class Borrower:
    """A borrower and the ids of the books they hold.

    ``borrowed_books`` are weak references: deleting a book leaves its id here.
    """

    def __init__(self, name: str, borrowed_books: list | None = None,
                 borrow_date: datetime | None = None, id: str | None = None) -> None:
        self.id = id
        self.name = _as_text(name)
        self.borrowed_books = normalize_book_ids(borrowed_books)
        self.borrow_date = parse_timestamp(borrow_date)

    def __str__(self) -> str:  # pragma: no cover
        return self.name

    def __repr__(self) -> str:  # pragma: no cover
        return f"Borrower(id={self.id!r}, name={self.name!r}, borrowed_books={self.borrowed_books!r})"

    def to_record(self) -> dict:
        return {
            "name": self.name,
            "borrowedBooks": list(self.borrowed_books),
            "borrowDate": self.borrow_date,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "borrowed_books": list(self.borrowed_books),
            "borrow_date": self.borrow_date.isoformat() if self.borrow_date else None,
        }

    @staticmethod
    def from_record(data: dict) -> "Borrower":
        return Borrower(
            id=_as_optional_text(data.get("id")),
            name=data.get("name"),
            borrowed_books=data.get("borrowedBooks", data.get("borrowed_books")),
            borrow_date=data.get("borrowDate", data.get("borrow_date")),
        )


class LogEntry:
    """Append-only audit record of an action."""

    def __init__(self, type: str, details: str = "", book_id: str | None = None,
                 borrower_id: str | None = None, timestamp: datetime | None = None,
                 id: str | None = None) -> None:
        self.id = id
        self.type = _as_text(type)
        self.details = _as_text(details)
        self.book_id = _as_optional_text(book_id)
        self.borrower_id = _as_optional_text(borrower_id)
        self.timestamp = parse_timestamp(timestamp)

    def to_record(self) -> dict:
        return {
            "type": self.type,
            "bookID": self.book_id,
            "borrowerID": self.borrower_id,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "book_id": self.book_id,
            "borrower_id": self.borrower_id,
            "details": self.details,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    @staticmethod
    def from_record(data: dict) -> "LogEntry":
        return LogEntry(
            id=_as_optional_text(data.get("id")),
            type=data.get("type"),
            details=data.get("details"),
            book_id=data.get("bookID"),
            borrower_id=data.get("borrowerID"),
            timestamp=data.get("timestamp"),
        )


@dataclass(frozen=True)
class UserContext:
    """The signed-in user; every collection path is namespaced by its id."""
    id: str
    display_name: str | None = None
    email: str | None = None
    email_verified: bool = False

    def collection_path(self, name: str) -> str:
        return f"users/{self.id}/{name}"


@dataclass(frozen=True)
class Found(Generic[T]):
    record: T


@dataclass(frozen=True)
class NotFound:
    id: str


Lookup = Union[Found[T], NotFound]
