from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import settings
from librarian import audit
from librarian.forms import BookForm, BorrowerForm
from librarian.models import BOOKS, BORROWERS, LOGS, Book, Borrower, Found, LogEntry, NotFound, UserContext
from librarian.query import (
    BookQuery,
    BorrowerQuery,
    apply_book_query,
    apply_borrower_query,
    collation_key,
    facets,
    matches_search,
    sort_by_date,
)
from librarian.resolver import BookIndex, ResolvedBorrower, dangling_references, resolve_book_id, resolve_borrowers
from librarian.services.firestore import FirestoreRecordStore
from librarian.services.identity import FirebaseIdentityProvider, IdentityProvider, StaticIdentityProvider
from librarian.store import RecordStore, SQLiteRecordStore, StoreError

logger = logging.getLogger(__name__)


def create_store(id_token: Optional[str] = None) -> RecordStore:
    """Record store for the configured backend."""
    if settings.store_backend == "firestore":
        return FirestoreRecordStore(id_token=id_token)
    if settings.store_backend != "sqlite":
        raise ValueError(f"Unknown store backend: {settings.store_backend}")
    return SQLiteRecordStore()


def create_identity_provider(id_token: Optional[str] = None) -> IdentityProvider:
    """Firebase lookup when an API key is configured, else the configured local user."""
    if settings.firebase_api_key:
        return FirebaseIdentityProvider(id_token)
    return StaticIdentityProvider.from_settings()


UNKNOWN_BOOK = "Unknown Book"
BOOK_EXPORT_FIELDS = ["id", "title", "author", "category", "collection_name", "add_date", "last_modified"]
BORROWER_EXPORT_FIELDS = ["id", "name", "borrowed_books", "book_count", "unavailable_count", "borrow_date"]


@dataclass
class BulkDeleteResult:
    """Outcome of a sequential bulk delete.

    The batch stops at the first failure: ``failed`` names that id, ``skipped``
    lists the ids never attempted. Nothing already deleted is rolled back.
    """
    deleted: List[str] = field(default_factory=list)
    failed: Optional[str] = None
    error: Optional[str] = None
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deleted": list(self.deleted),
            "failed": self.failed,
            "error": self.error,
            "skipped": list(self.skipped),
            "ok": self.ok,
        }


class Library:
    """One user's books, borrowers and logs held as an in-memory snapshot.

    Reads go through the filter/sort engine over the snapshot; writes go to the
    record store, after which the snapshot is refreshed.
    """

    def __init__(self, store: RecordStore, user: UserContext) -> None:
        self.store = store
        self.user = user
        self.books: List[Book] = []
        self.borrowers: List[Borrower] = []
        self.logs: List[LogEntry] = []
        self._index: Optional[BookIndex] = None

    @classmethod
    async def open(cls, store: RecordStore, user: UserContext) -> "Library":
        library = cls(store, user)
        await library.refresh()
        return library

    # ------------------------- Snapshot ------------------------- #
    async def refresh(self) -> None:
        """Re-fetch every collection. A store failure leaves the old snapshot in place."""
        books = await self._fetch(BOOKS, Book)
        borrowers = await self._fetch(BORROWERS, Borrower)
        logs = await self._fetch(LOGS, LogEntry)
        self.books, self.borrowers, self.logs = books, borrowers, logs
        self._index = None

    async def refresh_books(self) -> None:
        self.books = await self._fetch(BOOKS, Book)
        self._index = None

    async def refresh_borrowers(self) -> None:
        self.borrowers = await self._fetch(BORROWERS, Borrower)

    async def refresh_logs(self) -> None:
        self.logs = await self._fetch(LOGS, LogEntry)

    async def _fetch(self, collection: str, model) -> list:
        records = await self.store.list_collection(self.user.collection_path(collection))
        return [model.from_record(r) for r in records]

    @property
    def index(self) -> BookIndex:
        if self._index is None:
            self._index = BookIndex(self.books)
        return self._index

    def list_books(self) -> List[Book]:
        return list(self.books)

    def list_borrowers(self) -> List[Borrower]:
        return list(self.borrowers)

    def get_book(self, book_id: str) -> Found[Book] | NotFound:
        return self.index.lookup(book_id)

    def get_borrower(self, borrower_id: str) -> Found[Borrower] | NotFound:
        for borrower in self.borrowers:
            if borrower.id == borrower_id:
                return Found(borrower)
        return NotFound(borrower_id)

    # ------------------------- Queries ------------------------- #
    def query_books(self, query: Optional[BookQuery] = None) -> List[Book]:
        return apply_book_query(self.books, query)

    def query_borrowers(self, query: Optional[BorrowerQuery] = None) -> List[Borrower]:
        return apply_borrower_query(self.borrowers, query)

    def resolved_borrowers(self, query: Optional[BorrowerQuery] = None) -> List[ResolvedBorrower]:
        return resolve_borrowers(self.query_borrowers(query), self.index)

    def facets(self) -> Dict[str, List[str]]:
        return facets(self.books)

    def search_logs(self, term: str = "") -> List[LogEntry]:
        """Logs matching ``term``, newest first.

        The term is matched against the entry itself and the current title /
        name of the book and borrower it mentions.
        """
        borrower_names = {b.id: b.name for b in self.borrowers}
        matched = []
        for entry in self.logs:
            book_title = None
            if entry.book_id:
                found = self.index.lookup(entry.book_id)
                if isinstance(found, Found):
                    book_title = found.record.title
            borrower_name = borrower_names.get(entry.borrower_id)
            if matches_search(term, entry.details, entry.type, book_title, borrower_name):
                matched.append(entry)
        return sort_by_date(matched, lambda e: e.timestamp, descending=True)

    # ------------------------- Writes ------------------------- #
    def book_form(self, book: Optional[Book] = None, require_category: Optional[bool] = None) -> BookForm:
        return BookForm(self.store, self.user, book=book, require_category=require_category)

    def borrower_form(self, borrower: Optional[Borrower] = None) -> BorrowerForm:
        return BorrowerForm(self.store, self.user, borrower=borrower)

    async def submit(self, form):
        """Submit a form, then re-fetch so queries see the new data.

        The write has already happened when the re-fetch runs, so a failing
        re-fetch only leaves the snapshot stale.
        """
        saved = await form.submit()
        try:
            await self.refresh()
        except StoreError as exc:
            logger.warning(f"Saved {saved.id} but could not refresh the snapshot: {exc}")
        return saved

    async def delete_books(self, book_ids: List[str]) -> BulkDeleteResult:
        titles = {b.id: b.title for b in self.books}
        result = BulkDeleteResult()
        try:
            await self._delete_many(
                result, BOOKS, book_ids, audit.BOOK_DELETED,
                lambda book_id: f"Book '{titles.get(book_id, book_id)}' deleted",
                log_field="book_id",
            )
        finally:
            deleted = set(result.deleted)
            self.books = [b for b in self.books if b.id not in deleted]
            self._index = None
        return result

    async def delete_borrowers(self, borrower_ids: List[str]) -> BulkDeleteResult:
        names = {b.id: b.name for b in self.borrowers}
        result = BulkDeleteResult()
        try:
            await self._delete_many(
                result, BORROWERS, borrower_ids, audit.BORROWER_DELETED,
                lambda borrower_id: f"Borrower '{names.get(borrower_id, borrower_id)}' deleted",
                log_field="borrower_id",
            )
        finally:
            deleted = set(result.deleted)
            self.borrowers = [b for b in self.borrowers if b.id not in deleted]
        return result

    async def _delete_many(self, result: BulkDeleteResult, collection: str, ids: List[str], log_type: str,
                           describe, log_field: str) -> None:
        """Delete ``ids`` one at a time, recording progress on ``result`` as it goes."""
        path = self.user.collection_path(collection)
        pending = list(dict.fromkeys(ids))
        for position, record_id in enumerate(pending):
            try:
                await self.store.delete_record(path, record_id)
            except StoreError as exc:
                result.failed = record_id
                result.error = exc.message
                result.skipped = pending[position + 1:]
                logger.error(
                    f"Bulk delete in {collection} stopped at {record_id}: "
                    f"{len(result.deleted)} deleted, {len(result.skipped)} skipped"
                )
                break
            result.deleted.append(record_id)
            await audit.append_log(self.store, self.user, log_type, describe(record_id), **{log_field: record_id})

    async def remove_borrowed_book(self, borrower_id: str, book_id: str) -> Borrower:
        """Take ``book_id`` off a borrower's list (the book was returned)."""
        found = self.get_borrower(borrower_id)
        if isinstance(found, NotFound):
            raise LookupError("Borrower not found.")
        borrower = found.record
        if book_id not in borrower.borrowed_books:
            raise LookupError("Book is not borrowed by this borrower.")
        remaining = [b for b in borrower.borrowed_books if b != book_id]
        await self.store.update_record(
            self.user.collection_path(BORROWERS), borrower_id, {"borrowedBooks": remaining}
        )
        title = resolve_book_id(book_id, self.index).title or UNKNOWN_BOOK
        await audit.append_log(
            self.store, self.user, audit.BOOK_RETURNED,
            f"'{title}' returned by {borrower.name}", book_id=book_id, borrower_id=borrower_id,
        )
        await self.refresh_borrowers()
        await self.refresh_logs()
        found = self.get_borrower(borrower_id)
        if isinstance(found, Found):
            return found.record
        return Borrower(borrower.name, remaining, borrower.borrow_date, id=borrower_id)

    # ------------------------- Aggregation ------------------------- #
    def dashboard(self) -> Dict[str, Any]:
        index = self.index
        dangling = dangling_references(self.borrowers, index)
        total_refs = sum(len(b.borrowed_books) for b in self.borrowers)

        category_counts: Counter = Counter()
        author_counts: Counter = Counter()
        for book in self.books:
            category_counts.update(book.category)
            if book.author:
                author_counts[book.author] += 1

        most_common_author = author_counts.most_common(1)[0][0] if author_counts else None

        recent = sort_by_date(self.books, lambda b: b.add_date, descending=True)[:5]
        return {
            "total_books": len(self.books),
            "total_borrowers": len(self.borrowers),
            "total_logs": len(self.logs),
            "active_borrowers": sum(1 for b in self.borrowers if b.borrowed_books),
            "borrowed_books": total_refs - len(dangling),
            "unavailable_references": len(dangling),
            "unique_authors": len(author_counts),
            "most_common_author": most_common_author,
            "books_by_category": dict(sorted(category_counts.items(), key=lambda x: (-x[1], collation_key(x[0])))),
            "books_by_author": dict(sorted(author_counts.items(), key=lambda x: (-x[1], collation_key(x[0])))[:10]),
            "recent_additions": recent,
        }

    # ------------------------- Export ------------------------- #
    def export_books(self, query: Optional[BookQuery] = None) -> List[Dict[str, Any]]:
        rows = []
        for book in self.query_books(query):
            data = book.to_dict()
            data["category"] = ", ".join(book.category)
            rows.append({key: data.get(key) for key in BOOK_EXPORT_FIELDS})
        return rows

    def export_borrowers(self, query: Optional[BorrowerQuery] = None) -> List[Dict[str, Any]]:
        rows = []
        for resolved in self.resolved_borrowers(query):
            borrower = resolved.borrower
            rows.append({
                "id": borrower.id,
                "name": borrower.name,
                "borrowed_books": "; ".join(book.title or UNKNOWN_BOOK for book in resolved.books),
                "book_count": len(resolved.books),
                "unavailable_count": sum(1 for book in resolved.books if not book.available),
                "borrow_date": borrower.borrow_date.isoformat() if borrower.borrow_date else None,
            })
        return rows
