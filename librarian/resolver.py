"""Resolve a borrower's borrowed-book ids against the current book snapshot.

Book ids held by borrowers are weak references: a deleted book leaves its id
behind. Such ids resolve to an ``unavailable`` entry instead of being dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from librarian.models import Book, Borrower, Found, NotFound

RESOLVED = "resolved"
UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ResolvedBook:
    id: str
    title: Optional[str]
    author: Optional[str]
    status: str

    @property
    def available(self) -> bool:
        return self.status == RESOLVED

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "author": self.author, "status": self.status}


@dataclass(frozen=True)
class ResolvedBorrower:
    borrower: Borrower
    books: List[ResolvedBook]

    def to_dict(self) -> dict:
        data = self.borrower.to_dict()
        data["books"] = [book.to_dict() for book in self.books]
        return data


class BookIndex:
    """id -> Book map built once per book snapshot."""

    def __init__(self, books: Iterable[Book]) -> None:
        self._books: Dict[str, Book] = {}
        for book in books:
            # first record wins when a snapshot repeats an id
            if book.id and book.id not in self._books:
                self._books[book.id] = book

    def __len__(self) -> int:
        return len(self._books)

    def __contains__(self, book_id: object) -> bool:
        return book_id in self._books

    def lookup(self, book_id: str) -> Found[Book] | NotFound:
        book = self._books.get(book_id)
        if book is None:
            return NotFound(book_id)
        return Found(book)


def resolve_book_id(book_id: str, index: BookIndex) -> ResolvedBook:
    result = index.lookup(book_id)
    if isinstance(result, Found):
        return ResolvedBook(id=book_id, title=result.record.title, author=result.record.author, status=RESOLVED)
    return ResolvedBook(id=book_id, title=None, author=None, status=UNAVAILABLE)


def resolve_borrowed_books(borrower: Borrower, index: BookIndex) -> List[ResolvedBook]:
    """One entry per borrowed id, in order, repeats included."""
    return [resolve_book_id(book_id, index) for book_id in borrower.borrowed_books]


def resolve_borrowers(borrowers: Iterable[Borrower], books: Iterable[Book] | BookIndex) -> List[ResolvedBorrower]:
    index = books if isinstance(books, BookIndex) else BookIndex(books)
    return [ResolvedBorrower(borrower, resolve_borrowed_books(borrower, index)) for borrower in borrowers]


def dangling_references(borrowers: Iterable[Borrower], index: BookIndex) -> List[Tuple[Optional[str], str]]:
    """(borrower id, book id) pairs whose book no longer exists."""
    return [
        (borrower.id, book_id)
        for borrower in borrowers
        for book_id in borrower.borrowed_books
        if book_id not in index
    ]
