from librarian.models import Book, Borrower, Found, NotFound
from librarian.resolver import (
    RESOLVED,
    UNAVAILABLE,
    BookIndex,
    dangling_references,
    resolve_borrowed_books,
    resolve_borrowers,
)

BOOKS = [
    Book("Dune", "Herrick", id="b1"),
    Book("Foundation", "Asimov", id="b2"),
]


def test_resolves_known_and_missing_ids():
    borrower = Borrower("Ann", ["b1", "b99"], id="r1")
    resolved = resolve_borrowed_books(borrower, BookIndex(BOOKS))
    assert [r.to_dict() for r in resolved] == [
        {"id": "b1", "title": "Dune", "author": "Herrick", "status": RESOLVED},
        {"id": "b99", "title": None, "author": None, "status": UNAVAILABLE},
    ]
    assert [r.available for r in resolved] == [True, False]


def test_one_placeholder_per_missing_id_in_order():
    borrower = Borrower("Ann", ["x1", "b2", "x2", "x1"], id="r1")
    resolved = resolve_borrowed_books(borrower, BookIndex(BOOKS))
    assert [r.id for r in resolved] == ["x1", "b2", "x2", "x1"]
    assert [r.status for r in resolved] == [UNAVAILABLE, RESOLVED, UNAVAILABLE, UNAVAILABLE]


def test_resolution_against_empty_book_set():
    borrower = Borrower("Ann", ["b1"], id="r1")
    resolved = resolve_borrowers([borrower], [])
    assert resolved[0].books[0].status == UNAVAILABLE


def test_index_lookup_returns_tagged_result():
    index = BookIndex(BOOKS)
    found = index.lookup("b2")
    assert isinstance(found, Found)
    assert found.record.title == "Foundation"
    assert index.lookup("nope") == NotFound("nope")
    assert len(index) == 2
    assert "b1" in index


def test_index_keeps_first_record_for_repeated_id():
    index = BookIndex([Book("First", "A", id="b1"), Book("Second", "B", id="b1")])
    assert index.lookup("b1").record.title == "First"


def test_resolved_borrower_to_dict_includes_books():
    data = resolve_borrowers([Borrower("Ann", ["b1"], id="r1")], BOOKS)[0].to_dict()
    assert data["name"] == "Ann"
    assert data["borrowed_books"] == ["b1"]
    assert data["books"][0]["title"] == "Dune"


def test_dangling_references():
    borrowers = [Borrower("Ann", ["b1", "b99"], id="r1"), Borrower("Bob", ["b7"], id="r2")]
    assert dangling_references(borrowers, BookIndex(BOOKS)) == [("r1", "b99"), ("r2", "b7")]


def test_legacy_borrowed_book_objects_are_read_as_ids():
    borrower = Borrower.from_record({"id": "r1", "name": "Ann", "borrowedBooks": [{"id": "b1", "name": "Dune"}]})
    assert borrower.borrowed_books == ["b1"]
