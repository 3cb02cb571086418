import asyncio
import csv
import json
import logging
import os
import subprocess
import sys
import webbrowser
from typing import List, Optional

import typer

from config import settings
from librarian.forms import ValidationError
from librarian.library import BOOK_EXPORT_FIELDS, BORROWER_EXPORT_FIELDS, Library, create_identity_provider, create_store
from librarian.query import BookQuery, BorrowerQuery, use_system_collation
from librarian.services.http_client import cleanup_http_client
from librarian.services.identity import IdentityServiceError, NotAuthenticatedError, require_user
from librarian.store import GENERIC_ERROR_MESSAGE, StoreError
from librarian.ui_helpers import (
    print_book_list,
    print_borrower_list,
    print_log_list,
    print_stats_result,
    set_output_mode,
)

# Id token of the signed-in user when the hosted store is used
ID_TOKEN_ENV = "LIBRARY_ID_TOKEN"

logger = logging.getLogger(__name__)

app = typer.Typer(help=f"{settings.app_name} CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    logging.basicConfig(level=settings.log_level)
    use_system_collation()
    if output:
        set_output_mode(output)


async def _open_library() -> Library:
    token = os.environ.get(ID_TOKEN_ENV)
    user = await require_user(create_identity_provider(token), require_verified=settings.require_verified_email)
    return await Library.open(create_store(id_token=token), user)


def _run(action):
    """Open the current user's library, run ``action`` on it and report failures."""
    async def runner():
        try:
            library = await _open_library()
            return await action(library)
        finally:
            await cleanup_http_client()

    try:
        return asyncio.run(runner())
    except NotAuthenticatedError as e:
        print(f"Not authenticated: {e}")
    except IdentityServiceError:
        print(GENERIC_ERROR_MESSAGE)
    except ValidationError as e:
        print(f"Error: {e.message}")
    except StoreError as e:
        print(e.message)
    raise typer.Exit(code=1)


@app.command("books")
def cli_books(
    search: str = typer.Option("", "--search", "-s", help="Search in title and author"),
    author: Optional[List[str]] = typer.Option(None, "--author", "-a", help="Filter by author (repeatable)"),
    category: Optional[List[str]] = typer.Option(None, "--category", "-c", help="Filter by category (repeatable)"),
    collection: Optional[List[str]] = typer.Option(None, "--collection", help="Filter by collection (repeatable)"),
    sort_by: str = typer.Option("title", "--sort-by", help="title|author|collection_name|add_date|last_modified"),
    order: str = typer.Option("asc", "--order", help="asc|desc"),
    limit: int = typer.Option(0, "--limit", "-l", help="Maximum results (0 = all)"),
):
    """List books, filtered and sorted."""
    query = BookQuery(search=search, authors=author, categories=category, collections=collection,
                      sort_by=sort_by, order=order)

    async def action(library: Library):
        try:
            books = library.query_books(query)
        except ValueError as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
        print_book_list(books[:limit] if limit > 0 else books)

    _run(action)


@app.command("borrowers")
def cli_borrowers(
    search: str = typer.Option("", "--search", "-s", help="Search in borrower name"),
    with_books: bool = typer.Option(False, "--with-books", help="Only borrowers holding books"),
    sort_by: str = typer.Option("name", "--sort-by", help="name|borrow_date|borrowed_count"),
    order: str = typer.Option("asc", "--order", help="asc|desc"),
):
    """List borrowers with the books they hold."""
    query = BorrowerQuery(search=search, with_books_only=with_books, sort_by=sort_by, order=order)

    async def action(library: Library):
        try:
            resolved = library.resolved_borrowers(query)
        except ValueError as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
        print_borrower_list(resolved)

    _run(action)


@app.command("logs")
def cli_logs(
    search: str = typer.Option("", "--search", "-s", help="Search in log details, book titles and borrower names"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum entries (0 = all)"),
):
    """Show the audit log, newest first."""
    async def action(library: Library):
        logs = library.search_logs(search)
        print_log_list(logs[:limit] if limit > 0 else logs)

    _run(action)


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    async def action(library: Library):
        print_stats_result(library.dashboard())

    _run(action)


@app.command("add-book")
def cli_add_book(
    title: str = typer.Argument(..., help="Book title"),
    author: str = typer.Argument(..., help="Book author"),
    category: Optional[List[str]] = typer.Option(None, "--category", "-c", help="Category (repeatable)"),
    collection: Optional[str] = typer.Option(None, "--collection", help="Collection name"),
):
    """Add a book."""
    async def action(library: Library):
        form = library.book_form()
        form.stage(title=title, author=author, category=category or [], collection_name=collection)
        book = await library.submit(form)
        print(f"Successfully added: {book.title} by {book.author}")
        print(f"ID: {book.id}")

    _run(action)


@app.command("add-borrower")
def cli_add_borrower(
    name: str = typer.Argument(..., help="Borrower name"),
    book: Optional[List[str]] = typer.Option(None, "--book", "-b", help="Borrowed book id (repeatable)"),
):
    """Add a borrower, optionally with the books they take."""
    async def action(library: Library):
        form = library.borrower_form()
        form.stage(name=name, borrowed_books=book or [])
        borrower = await library.submit(form)
        print(f"Successfully added borrower: {borrower.name} ({len(borrower.borrowed_books)} books)")
        print(f"ID: {borrower.id}")

    _run(action)


@app.command("delete-books")
def cli_delete_books(book_ids: List[str] = typer.Argument(..., help="Ids of the books to delete")):
    """Delete books one after another; stops at the first failure."""
    async def action(library: Library):
        result = await library.delete_books(book_ids)
        for book_id in result.deleted:
            print(f"Book {book_id} has been removed.")
        if not result.ok:
            print(f"Could not delete book {result.failed}: {result.error}")
            if result.skipped:
                print(f"Not attempted: {', '.join(result.skipped)}")
            raise typer.Exit(code=1)

    _run(action)


@app.command("return-book")
def cli_return_book(
    borrower_id: str = typer.Argument(..., help="Borrower id"),
    book_id: str = typer.Argument(..., help="Book id"),
):
    """Take a book off a borrower's list."""
    async def action(library: Library):
        try:
            borrower = await library.remove_borrowed_book(borrower_id, book_id)
        except LookupError as e:
            print(str(e))
            raise typer.Exit(code=1)
        print(f"Book {book_id} returned by {borrower.name}.")

    _run(action)


@app.command("export")
def cli_export(
    kind: str = typer.Option("books", "--kind", "-k", help="books | borrowers"),
    format: str = typer.Option("csv", "--format", "-f", help="csv | json"),
    file: str = typer.Option("library_export", "--file", help="Output file name without extension"),
):
    """Export books or borrowers to a file."""
    if kind not in ("books", "borrowers"):
        print(f"Unsupported kind: {kind}. Use books or borrowers.")
        raise typer.Exit(code=1)
    if format.lower() not in ("csv", "json"):
        print(f"Unsupported format: {format}. Use csv or json.")
        raise typer.Exit(code=1)

    async def action(library: Library):
        if kind == "books":
            rows = library.export_books()
            fieldnames = BOOK_EXPORT_FIELDS
        else:
            rows = library.export_borrowers()
            fieldnames = BORROWER_EXPORT_FIELDS
        if not rows:
            print(f"No {kind} to export.")
            return

        filename = f"{file}.{format.lower()}"
        if format.lower() == "csv":
            with open(filename, "w", newline="", encoding="utf-8") as csvfile:
                writer = csv.DictWriter(csvfile, fieldnames=fieldnames)
                writer.writeheader()
                writer.writerows(rows)
        else:
            with open(filename, "w", encoding="utf-8") as jsonfile:
                json.dump(rows, jsonfile, indent=2, ensure_ascii=False)
        print(f"{len(rows)} {kind} exported to {filename}")

    _run(action)


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    try:
        webbrowser.open(url)
    except webbrowser.Error:
        logger.debug("No browser available")

    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if timeout and timeout > 0:
        proc = subprocess.Popen(args, start_new_session=os.name != "nt")
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
    else:
        if settings.debug:
            args.append("--reload")
        subprocess.run(args)


if __name__ == "__main__":
    app()
