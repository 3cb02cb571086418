import json

import pytest
from typer.testing import CliRunner

import main
from librarian.services.identity import StaticIdentityProvider
from librarian.store import SQLiteRecordStore, StoreError
from main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(db_file, user, monkeypatch):
    # Every command opens the per-test database as the test user
    monkeypatch.setattr(main, "create_store", lambda id_token=None: SQLiteRecordStore(db_file))
    monkeypatch.setattr(main, "create_identity_provider", lambda id_token=None: StaticIdentityProvider(user))
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")


def invoke(*args):
    return runner.invoke(app, list(args))


def test_books_empty():
    result = invoke("books")
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_add_book_success():
    result = invoke("add-book", "Dune", "Herrick", "--category", "Fiction")
    assert result.exit_code == 0
    assert "Successfully added: Dune by Herrick" in result.stdout

    result = invoke("books")
    assert "Dune by Herrick [Fiction]" in result.stdout


def test_add_book_duplicate():
    invoke("add-book", "Dune", "Herrick", "-c", "Fiction")
    result = invoke("add-book", "Dune", "Herrick", "-c", "Fiction")
    assert result.exit_code == 1
    assert "Error: A book with the same title and author already exists!" in result.stdout


def test_add_book_requires_category():
    result = invoke("add-book", "Dune", "Herrick")
    assert result.exit_code == 1
    assert "Error: Select at least one category." in result.stdout


def test_books_search_and_json_output():
    invoke("add-book", "Dune", "Herrick", "-c", "Fiction")
    invoke("add-book", "Foundation", "Asimov", "-c", "Science")

    result = invoke("--output", "json", "books", "--search", "asimov")
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert [b["title"] for b in data] == ["Foundation"]


def test_books_invalid_sort():
    result = invoke("books", "--sort-by", "isbn")
    assert result.exit_code == 1
    assert "Invalid sort_by" in result.stdout


def test_borrowers_show_unknown_books():
    invoke("add-borrower", "Ann", "--book", "b99")
    result = invoke("borrowers")
    assert result.exit_code == 0
    assert "Ann: Unknown Book" in result.stdout


def test_delete_books_and_logs():
    invoke("add-book", "Dune", "Herrick", "-c", "Fiction")
    book_id = json.loads(invoke("--output", "json", "books").stdout)[0]["id"]

    result = invoke("--output", "plain", "delete-books", book_id)
    assert result.exit_code == 0
    assert f"Book {book_id} has been removed." in result.stdout

    result = invoke("logs")
    assert "book_deleted: Book 'Dune' deleted" in result.stdout


def test_delete_books_reports_failure(monkeypatch, db_file):
    class BrokenDeletes(SQLiteRecordStore):
        async def delete_record(self, path, record_id):
            raise StoreError()

    invoke("add-book", "Dune", "Herrick", "-c", "Fiction")
    invoke("add-book", "Emma", "Austen", "-c", "Fiction")
    ids = [b["id"] for b in json.loads(invoke("--output", "json", "books").stdout)]
    monkeypatch.setattr(main, "create_store", lambda id_token=None: BrokenDeletes(db_file))

    result = invoke("--output", "plain", "delete-books", *ids)
    assert result.exit_code == 1
    assert f"Could not delete book {ids[0]}: An error occurred. Please try again." in result.stdout
    assert f"Not attempted: {ids[1]}" in result.stdout


def test_return_book():
    invoke("add-book", "Dune", "Herrick", "-c", "Fiction")
    book_id = json.loads(invoke("--output", "json", "books").stdout)[0]["id"]
    invoke("--output", "plain", "add-borrower", "Ann", "-b", book_id)
    borrower_id = json.loads(invoke("--output", "json", "borrowers").stdout)[0]["id"]

    result = invoke("--output", "plain", "return-book", borrower_id, book_id)
    assert result.exit_code == 0
    assert "returned by Ann" in result.stdout

    result = invoke("return-book", borrower_id, book_id)
    assert result.exit_code == 1
    assert "Book is not borrowed by this borrower." in result.stdout


def test_stats():
    invoke("add-book", "Dune", "Herrick", "-c", "Fiction")
    result = invoke("stats")
    assert result.exit_code == 0
    assert "Total Books: 1" in result.stdout
    assert "Unavailable References: 0" in result.stdout


def test_export_csv(tmp_path):
    invoke("add-book", "Dune", "Herrick", "-c", "Fiction")
    target = tmp_path / "books"
    result = invoke("export", "--format", "csv", "--file", str(target))
    assert result.exit_code == 0
    assert "1 books exported to" in result.stdout
    content = (tmp_path / "books.csv").read_text(encoding="utf-8")
    assert content.startswith("id,title,author,category")
    assert "Dune" in content


def test_export_unsupported_format(tmp_path):
    result = invoke("export", "--format", "xml", "--file", str(tmp_path / "out"))
    assert result.exit_code == 1
    assert "Unsupported format: xml" in result.stdout


def test_not_signed_in(monkeypatch):
    monkeypatch.setattr(main, "create_identity_provider", lambda id_token=None: StaticIdentityProvider(None))
    result = invoke("books")
    assert result.exit_code == 1
    assert "Not authenticated: Not signed in." in result.stdout
