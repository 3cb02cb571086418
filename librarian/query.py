"""Client-side filter/sort engine over in-memory book and borrower snapshots.

Everything here is a pure projection: the input list is never mutated and
nothing is fetched. Search is a case-insensitive substring match, every active
filter dimension must match (AND across dimensions) and a multi-select
dimension matches on any selected value (OR within the dimension).

Sorting is stable, so records that compare equal keep their fetch order in
both directions. Unknown dates always go last, whichever the direction.
"""

from __future__ import annotations

import locale
import logging
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Sequence, TypeVar

from librarian.models import DEFAULT_CATEGORIES, Book, Borrower

logger = logging.getLogger(__name__)

R = TypeVar("R")

ORDERS = ("asc", "desc")

# field name -> (kind, key getter); kind is "text", "date" or "number"
BOOK_SORT_FIELDS: dict[str, tuple[str, Callable[[Book], Any]]] = {
    "title": ("text", lambda b: b.title),
    "author": ("text", lambda b: b.author),
    "collection_name": ("text", lambda b: b.collection_name),
    "add_date": ("date", lambda b: b.add_date),
    "last_modified": ("date", lambda b: b.last_modified),
}

BORROWER_SORT_FIELDS: dict[str, tuple[str, Callable[[Borrower], Any]]] = {
    "name": ("text", lambda b: b.name),
    "borrow_date": ("date", lambda b: b.borrow_date),
    "borrowed_count": ("number", lambda b: len(b.borrowed_books)),
}


def _selection(values: Optional[Iterable[str]]) -> frozenset:
    if not values:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    return frozenset(v.strip() for v in values if isinstance(v, str) and v.strip())


@dataclass
class BookQuery:
    search: str = ""
    authors: frozenset = field(default_factory=frozenset)
    categories: frozenset = field(default_factory=frozenset)
    collections: frozenset = field(default_factory=frozenset)
    sort_by: str = "title"
    order: str = "asc"

    def __post_init__(self) -> None:
        self.search = self.search or ""
        self.authors = _selection(self.authors)
        self.categories = _selection(self.categories)
        self.collections = _selection(self.collections)


@dataclass
class BorrowerQuery:
    search: str = ""
    with_books_only: bool = False
    sort_by: str = "name"
    order: str = "asc"

    def __post_init__(self) -> None:
        self.search = self.search or ""


@dataclass
class Page:
    items: list
    total: int
    offset: int
    limit: int


# ------------------------- Comparison keys ------------------------- #
def use_system_collation() -> None:
    """Collate with the host locale instead of the default "C" code-point order."""
    try:
        locale.setlocale(locale.LC_COLLATE, "")
    except locale.Error as exc:
        logger.warning(f"Could not set collation locale, keeping the default: {exc}")


def collation_key(text: Optional[str]) -> str:
    """Locale-aware sort key; missing text compares as the empty string.

    Accents are stripped first so "Émile" files under "E" whatever the locale.
    """
    decomposed = unicodedata.normalize("NFKD", text or "")
    plain = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return locale.strxfrm(plain.casefold())


def matches_search(term: str, *values: Optional[str]) -> bool:
    needle = (term or "").strip().casefold()
    if not needle:
        return True
    return any(needle in (value or "").casefold() for value in values)


def _check_order(order: str) -> bool:
    if order not in ORDERS:
        raise ValueError("Invalid order. Allowed: asc, desc")
    return order == "desc"


def sort_by_date(records: Sequence[R], getter: Callable[[R], Any], descending: bool = False) -> List[R]:
    """Stable date sort; records without a usable date follow in fetch order."""
    known = [r for r in records if isinstance(getter(r), datetime)]
    unknown = [r for r in records if not isinstance(getter(r), datetime)]
    return sorted(known, key=getter, reverse=descending) + unknown


def _sorted(records: Sequence[R], kind: str, getter: Callable[[R], Any], descending: bool) -> List[R]:
    if kind == "text":
        return sorted(records, key=lambda r: collation_key(getter(r)), reverse=descending)
    if kind == "number":
        return sorted(records, key=lambda r: getter(r) or 0, reverse=descending)
    return sort_by_date(records, getter, descending)


# ------------------------- Books ------------------------- #
def book_matches(book: Book, query: BookQuery) -> bool:
    if not matches_search(query.search, book.title, book.author):
        return False
    if query.authors and book.author not in query.authors:
        return False
    if query.categories and query.categories.isdisjoint(book.category):
        return False
    if query.collections and book.collection_name not in query.collections:
        return False
    return True


def filter_books(books: Iterable[Book], query: BookQuery) -> List[Book]:
    return [book for book in books if book_matches(book, query)]


def sort_books(books: Sequence[Book], sort_by: str = "title", order: str = "asc") -> List[Book]:
    if sort_by not in BOOK_SORT_FIELDS:
        raise ValueError(f"Invalid sort_by. Allowed: {', '.join(BOOK_SORT_FIELDS)}")
    descending = _check_order(order)
    kind, getter = BOOK_SORT_FIELDS[sort_by]
    return _sorted(books, kind, getter, descending)


def apply_book_query(books: Sequence[Book], query: Optional[BookQuery] = None) -> List[Book]:
    """Filter then sort a book snapshot."""
    query = query or BookQuery()
    return sort_books(filter_books(books, query), query.sort_by, query.order)


# ------------------------- Borrowers ------------------------- #
def borrower_matches(borrower: Borrower, query: BorrowerQuery) -> bool:
    if not matches_search(query.search, borrower.name):
        return False
    if query.with_books_only and not borrower.borrowed_books:
        return False
    return True


def filter_borrowers(borrowers: Iterable[Borrower], query: BorrowerQuery) -> List[Borrower]:
    return [b for b in borrowers if borrower_matches(b, query)]


def sort_borrowers(borrowers: Sequence[Borrower], sort_by: str = "name", order: str = "asc") -> List[Borrower]:
    if sort_by not in BORROWER_SORT_FIELDS:
        raise ValueError(f"Invalid sort_by. Allowed: {', '.join(BORROWER_SORT_FIELDS)}")
    descending = _check_order(order)
    kind, getter = BORROWER_SORT_FIELDS[sort_by]
    return _sorted(borrowers, kind, getter, descending)


def apply_borrower_query(borrowers: Sequence[Borrower], query: Optional[BorrowerQuery] = None) -> List[Borrower]:
    query = query or BorrowerQuery()
    return sort_borrowers(filter_borrowers(borrowers, query), query.sort_by, query.order)


# ------------------------- Facets & paging ------------------------- #
def facets(books: Iterable[Book]) -> dict:
    """Distinct values for the filter selectors.

    Categories list the enumerated defaults first, then any ad-hoc ones.
    """
    authors: set = set()
    extra_categories: set = set()
    collections: set = set()
    for book in books:
        if book.author:
            authors.add(book.author)
        for category in book.category:
            if category not in DEFAULT_CATEGORIES:
                extra_categories.add(category)
        if book.collection_name:
            collections.add(book.collection_name)
    return {
        "authors": sorted(authors, key=collation_key),
        "categories": list(DEFAULT_CATEGORIES) + sorted(extra_categories, key=collation_key),
        "collections": sorted(collections, key=collation_key),
    }


def paginate(items: Sequence[R], offset: int = 0, limit: Optional[int] = None) -> Page:
    offset = max(0, offset)
    end = None if limit is None else offset + max(0, limit)
    return Page(items=list(items[offset:end]), total=len(items), offset=offset,
                limit=len(items) if limit is None else limit)
