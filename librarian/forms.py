"""Form controllers staging a single book or borrower before it is saved.

A form built with an existing record is in edit mode. ``submit`` validates,
re-reads the collection for the duplicate check, writes through the record
store and clears the staged values. Callers re-fetch afterwards.
"""

import logging
from typing import Any, Dict, Optional

from config import settings
from librarian import audit
from librarian.models import BOOKS, BORROWERS, Book, Borrower, UserContext, normalize_book_ids, parse_timestamp
from librarian.store import RecordStore
from librarian.validators import CategoryValidator, TextValidator

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """Form input was rejected; nothing was written."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class DuplicateRecordError(ValidationError):
    """A record with the same natural key already exists."""
    pass


class _Form:
    fields: tuple = ()
    collection: str = ""

    def __init__(self, store: RecordStore, user: UserContext) -> None:
        self.store = store
        self.user = user
        self.values: Dict[str, Any] = {}
        self._touched: set = set()
        self.discard()

    @property
    def path(self) -> str:
        return self.user.collection_path(self.collection)

    def stage(self, **changes: Any) -> None:
        """Record field edits without validating them."""
        for name, value in changes.items():
            if name not in self.fields:
                raise ValueError(f"Unknown field: {name}")
            self.values[name] = value
            self._touched.add(name)

    def discard(self) -> None:
        self.values = self._initial_values()
        self._touched = set()

    def _initial_values(self) -> Dict[str, Any]:
        raise NotImplementedError


class BookForm(_Form):
    fields = ("title", "author", "category", "collection_name", "add_date")
    collection = BOOKS

    def __init__(self, store: RecordStore, user: UserContext, book: Optional[Book] = None,
                 require_category: Optional[bool] = None) -> None:
        self.book = book
        self.require_category = settings.require_category if require_category is None else require_category
        super().__init__(store, user)

    @property
    def editing(self) -> bool:
        return self.book is not None

    def _initial_values(self) -> Dict[str, Any]:
        book = self.book
        return {
            "title": book.title if book else "",
            "author": book.author if book else "",
            "category": list(book.category) if book else [],
            "collection_name": book.collection_name if book else None,
            "add_date": book.add_date if book else None,
        }

    def validate(self) -> Dict[str, Any]:
        """Return the cleaned values or raise ValidationError."""
        title = TextValidator.sanitize_text(self.values.get("title"))
        author = TextValidator.sanitize_text(self.values.get("author"))
        if not TextValidator.validate_title(title):
            raise ValidationError("Title is required.", field="title")
        if not TextValidator.validate_author(author):
            raise ValidationError("Author is required.", field="author")
        category = CategoryValidator.clean(self.values.get("category"))
        if not CategoryValidator.validate(category, required=self.require_category):
            raise ValidationError("Select at least one category.", field="category")
        collection_name = TextValidator.sanitize_text(self.values.get("collection_name")) or None
        return {
            "title": title,
            "author": author,
            "category": category,
            "collection_name": collection_name,
            "add_date": parse_timestamp(self.values.get("add_date")),
        }

    async def submit(self) -> Book:
        cleaned = self.validate()

        # Duplicate check runs against a fresh read of the collection
        if not self.editing:
            existing = [Book.from_record(r) for r in await self.store.list_collection(self.path)]
            key = (cleaned["title"], cleaned["author"])
            if any(book.natural_key == key for book in existing):
                raise DuplicateRecordError("A book with the same title and author already exists!", field="title")

        now = audit.utcnow()
        if self.editing:
            saved = Book(
                id=self.book.id,
                title=cleaned["title"],
                author=cleaned["author"],
                category=cleaned["category"],
                collection_name=cleaned["collection_name"],
                add_date=cleaned["add_date"] or self.book.add_date,
                last_modified=now,
            )
            await self.store.update_record(self.path, saved.id, saved.to_record())
            await audit.append_log(self.store, self.user, audit.BOOK_UPDATED,
                                   f"Book '{saved.title}' by {saved.author} updated", book_id=saved.id)
        else:
            saved = Book(
                title=cleaned["title"],
                author=cleaned["author"],
                category=cleaned["category"],
                collection_name=cleaned["collection_name"],
                add_date=cleaned["add_date"] or now,
            )
            saved.id = await self.store.create_record(self.path, saved.to_record())
            await audit.append_log(self.store, self.user, audit.BOOK_ADDED,
                                   f"Book '{saved.title}' by {saved.author} added", book_id=saved.id)

        logger.info(f"Saved book {saved.id} for user {self.user.id}")
        self.discard()
        return saved


class BorrowerForm(_Form):
    fields = ("name", "borrowed_books", "borrow_date")
    collection = BORROWERS

    def __init__(self, store: RecordStore, user: UserContext, borrower: Optional[Borrower] = None) -> None:
        self.borrower = borrower
        super().__init__(store, user)

    @property
    def editing(self) -> bool:
        return self.borrower is not None

    def _initial_values(self) -> Dict[str, Any]:
        borrower = self.borrower
        return {
            "name": borrower.name if borrower else "",
            "borrowed_books": list(borrower.borrowed_books) if borrower else [],
            "borrow_date": borrower.borrow_date if borrower else None,
        }

    def validate(self) -> Dict[str, Any]:
        name = TextValidator.sanitize_text(self.values.get("name"))
        if not TextValidator.validate_name(name):
            raise ValidationError("Name is required.", field="name")
        raw_books = self.values.get("borrowed_books") or []
        # The picker hands over Book objects; the record keeps only their ids
        ids = [item.id if isinstance(item, Book) else item for item in raw_books]
        borrowed_books = list(dict.fromkeys(normalize_book_ids(ids)))
        return {
            "name": name,
            "borrowed_books": borrowed_books,
            "borrow_date": parse_timestamp(self.values.get("borrow_date")) if "borrow_date" in self._touched else None,
        }

    async def submit(self) -> Borrower:
        cleaned = self.validate()

        # Names are unique at creation time only; renames are not checked
        if not self.editing:
            existing = [Borrower.from_record(r) for r in await self.store.list_collection(self.path)]
            if any(b.name == cleaned["name"] for b in existing):
                raise DuplicateRecordError("Borrower with the same name already exists!", field="name")

        saved = Borrower(
            id=self.borrower.id if self.editing else None,
            name=cleaned["name"],
            borrowed_books=cleaned["borrowed_books"],
            borrow_date=cleaned["borrow_date"] or audit.utcnow(),
        )
        if self.editing:
            await self.store.update_record(self.path, saved.id, saved.to_record())
            await audit.append_log(self.store, self.user, audit.BORROWER_UPDATED,
                                   f"Borrower '{saved.name}' updated ({len(saved.borrowed_books)} books)",
                                   borrower_id=saved.id)
        else:
            saved.id = await self.store.create_record(self.path, saved.to_record())
            await audit.append_log(self.store, self.user, audit.BORROWER_ADDED,
                                   f"Borrower '{saved.name}' added ({len(saved.borrowed_books)} books)",
                                   borrower_id=saved.id)

        logger.info(f"Saved borrower {saved.id} for user {self.user.id}")
        self.discard()
        return saved
