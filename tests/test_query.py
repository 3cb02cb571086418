from datetime import datetime, timezone

import pytest

from librarian.models import Book, Borrower
from librarian.query import (
    BookQuery,
    BorrowerQuery,
    apply_book_query,
    apply_borrower_query,
    facets,
    filter_books,
    paginate,
    sort_books,
)


def _date(day):
    return datetime(2024, 1, day, tzinfo=timezone.utc)


@pytest.fixture
def books():
    return [
        Book("Dune", "Herrick", ["Fiction"], collection_name="Shelf A", add_date=_date(3), id="b1"),
        Book("Foundation", "Asimov", ["Fiction", "Science"], add_date=_date(1), id="b2"),
        Book("I, Robot", "Asimov", ["Science"], collection_name="Shelf B", id="b3"),
        Book("Cosmos", "Sagan", ["Science", "Non-Fiction"], collection_name="Shelf A", add_date=_date(2), id="b4"),
        Book("SPQR", "Beard", ["History"], add_date=_date(5), id="b5"),
    ]


def _ids(records):
    return [r.id for r in records]


def test_search_is_case_insensitive():
    books = [Book("Dune", "Herrick", id="b1"), Book("Foundation", "Asimov", id="b2")]
    result = apply_book_query(books, BookQuery(search="asimov"))
    assert _ids(result) == ["b2"]


def test_search_matches_title_substring(books):
    assert _ids(filter_books(books, BookQuery(search="UND"))) == ["b2"]


def test_empty_search_is_identity(books):
    for term in ["", "a", "asimov", "zzz"]:
        once = filter_books(books, BookQuery(search=term))
        assert filter_books(once, BookQuery(search="")) == once
    assert filter_books(books, BookQuery(search="")) == books


def test_filters_combine_with_and(books):
    query = BookQuery(search="o", authors=["Asimov"], categories=["Science"])
    assert _ids(filter_books(books, query)) == ["b2", "b3"]
    query = BookQuery(authors=["Asimov"], collections=["Shelf B"])
    assert _ids(filter_books(books, query)) == ["b3"]


def test_category_filter_is_any_of(books):
    result = filter_books(books, BookQuery(categories=["History", "Non-Fiction"]))
    assert _ids(result) == ["b4", "b5"]


def test_relaxing_category_filter_only_adds_records(books):
    narrow = set(_ids(filter_books(books, BookQuery(categories=["Fiction"]))))
    wide = set(_ids(filter_books(books, BookQuery(categories=["Fiction", "History"]))))
    assert narrow <= wide
    assert wide - narrow == {"b5"}


def test_author_filter_accepts_multiple_values(books):
    result = filter_books(books, BookQuery(authors=["Sagan", "Beard"]))
    assert _ids(result) == ["b4", "b5"]


def test_filter_does_not_mutate_input(books):
    snapshot = list(books)
    apply_book_query(books, BookQuery(search="a", sort_by="author", order="desc"))
    assert books == snapshot


def test_sort_by_title_ignores_case():
    books = [Book("banana", "x", id="1"), Book("Apple", "x", id="2"), Book("cherry", "x", id="3")]
    assert _ids(sort_books(books, "title")) == ["2", "1", "3"]


def test_accented_titles_sort_with_their_base_letter():
    books = [Book("Zebra", "x", id="z"), Book("Émile", "x", id="e"), Book("apple", "x", id="a")]
    assert _ids(sort_books(books, "title")) == ["a", "e", "z"]
    assert _ids(sort_books(books, "title", "desc")) == ["z", "e", "a"]


@pytest.mark.parametrize("field", ["title", "author"])
def test_reversed_ascending_equals_descending(field):
    books = [
        Book("Dune", "Herbert", id="1"),
        Book("Emma", "Austen", id="2"),
        Book("Beloved", "Morrison", id="3"),
    ]
    ascending = sort_books(books, field, "asc")
    assert list(reversed(ascending)) == sort_books(books, field, "desc")


def test_reversed_ascending_equals_descending_for_known_dates(books):
    dated = [b for b in books if b.add_date is not None]
    ascending = sort_books(dated, "add_date", "asc")
    assert list(reversed(ascending)) == sort_books(dated, "add_date", "desc")


def test_ties_keep_fetch_order_in_both_directions():
    books = [Book("Same", "A", id="1"), Book("Same", "B", id="2"), Book("Other", "C", id="3")]
    assert _ids(sort_books(books, "title", "asc")) == ["3", "1", "2"]
    assert _ids(sort_books(books, "title", "desc")) == ["1", "2", "3"]


def test_unknown_dates_sort_last_in_both_directions(books):
    assert _ids(sort_books(books, "add_date", "asc")) == ["b2", "b4", "b1", "b5", "b3"]
    assert _ids(sort_books(books, "add_date", "desc")) == ["b5", "b1", "b4", "b2", "b3"]


def test_missing_text_fields_do_not_raise():
    books = [Book.from_record({"id": "x"}), Book("Alpha", "A", id="a")]
    assert _ids(sort_books(books, "title")) == ["x", "a"]
    assert _ids(sort_books(books, "collection_name", "desc")) == ["x", "a"]


def test_invalid_sort_field_or_order_raises(books):
    with pytest.raises(ValueError, match="Invalid sort_by"):
        sort_books(books, "isbn")
    with pytest.raises(ValueError, match="Invalid order"):
        sort_books(books, "title", "sideways")


def test_borrower_query_search_and_with_books_only():
    borrowers = [
        Borrower("Ann", ["b1", "b2"], id="r1"),
        Borrower("Bob", [], id="r2"),
        Borrower("Annette", ["b3"], id="r3"),
    ]
    assert _ids(apply_borrower_query(borrowers, BorrowerQuery(search="ann"))) == ["r1", "r3"]
    assert _ids(apply_borrower_query(borrowers, BorrowerQuery(with_books_only=True))) == ["r1", "r3"]
    result = apply_borrower_query(borrowers, BorrowerQuery(sort_by="borrowed_count", order="desc"))
    assert _ids(result) == ["r1", "r3", "r2"]


def test_facets_lists_default_categories_first(books):
    books.append(Book("Maus", "Spiegelman", ["Comics"], id="b6"))
    result = facets(books)
    assert result["categories"] == ["Fiction", "Non-Fiction", "Science", "History", "Comics"]
    assert result["authors"] == ["Asimov", "Beard", "Herrick", "Sagan", "Spiegelman"]
    assert result["collections"] == ["Shelf A", "Shelf B"]


def test_paginate(books):
    page = paginate(books, offset=1, limit=2)
    assert _ids(page.items) == ["b2", "b3"]
    assert page.total == 5
    assert paginate(books, offset=10, limit=2).items == []
    assert len(paginate(books).items) == 5
