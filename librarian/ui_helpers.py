import os
import json
from typing import List, Any, Dict

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from librarian.resolver import ResolvedBorrower

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _date(value) -> str:
    return value.date().isoformat() if value else "-"


def print_book_list(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: 'id - Title by Author [categories]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Categories", style="green")
        table.add_column("Collection", style="white")
        table.add_column("Added", style="dim")
        for b in books:
            table.add_row(b.id or "", b.title, b.author, ", ".join(b.category) or "No categories",
                          b.collection_name or "-", _date(b.add_date))
        _console.print(table)
    else:
        for b in books:
            categories = ", ".join(b.category) or "No categories"
            print(f"{b.id} - {b.title} by {b.author} [{categories}]")


def print_borrower_list(borrowers: List[ResolvedBorrower]) -> None:
    mode = get_output_mode()

    if not borrowers:
        print("No borrowers found.")
        return

    if mode == "json":
        print(json.dumps([r.to_dict() for r in borrowers], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="👥 Borrowers", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Name", style="white")
        table.add_column("Borrowed Books", style="white")
        table.add_column("Borrowed On", style="dim")
        for r in borrowers:
            books = "\n".join(
                b.title if b.available else f"[red]Unknown Book ({b.id})[/]" for b in r.books
            ) or "[dim]No books borrowed[/]"
            table.add_row(r.borrower.id or "", r.borrower.name, books, _date(r.borrower.borrow_date))
        _console.print(table)
    else:
        for r in borrowers:
            books = ", ".join(b.title if b.available else "Unknown Book" for b in r.books) or "No books borrowed"
            print(f"{r.borrower.id} - {r.borrower.name}: {books}")


def print_log_list(logs: List[Any]) -> None:
    mode = get_output_mode()

    if not logs:
        print("No logs found.")
        return

    if mode == "json":
        print(json.dumps([entry.to_dict() for entry in logs], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🧾 Logs", header_style="bold cyan")
        table.add_column("When", style="dim", no_wrap=True)
        table.add_column("Action", style="magenta")
        table.add_column("Details", style="white")
        for entry in logs:
            when = entry.timestamp.strftime("%Y-%m-%d %H:%M") if entry.timestamp else "-"
            table.add_row(when, entry.type, entry.details)
        _console.print(table)
    else:
        for entry in logs:
            when = entry.timestamp.isoformat() if entry.timestamp else "-"
            print(f"{when} {entry.type}: {entry.details}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard statistics in the current output mode.
    - plain: one 'Label: value' line per counter
    - json: JSON object
    - rich: Panel with the main counters
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    counters = {
        "Total Books": stats.get("total_books", 0),
        "Total Borrowers": stats.get("total_borrowers", 0),
        "Borrowed Books": stats.get("borrowed_books", 0),
        "Unavailable References": stats.get("unavailable_references", 0),
        "Log Entries": stats.get("total_logs", 0),
    }

    if mode == "json":
        payload = dict(stats)
        payload["recent_additions"] = [b.to_dict() for b in stats.get("recent_additions", [])]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in counters.items())
        categories = stats.get("books_by_category") or {}
        if categories:
            content += "\n\n" + "\n".join(f"[cyan]{name}[/]: {count}" for name, count in categories.items())
        _console.print(Panel.fit(content, title="📊 Dashboard", border_style="blue"))
    else:
        for label, value in counters.items():
            print(f"{label}: {value}")
