import json
import os
from typing import List

from rich.console import Console
from rich.table import Table

from libreeze.models import Book, LendedBook, LendingTransaction

OUTPUT_MODE_ENV = "LIBREEZE_OUTPUT"
OUTPUT_MODES = ("plain", "json", "rich")

_console = Console()


def set_output_mode(mode: str) -> None:
    """Remember the output mode for this process; unknown modes are ignored."""
    normalized = (mode or "").strip().lower()
    if normalized in OUTPUT_MODES:
        os.environ[OUTPUT_MODE_ENV] = normalized


def get_output_mode() -> str:
    mode = os.environ.get(OUTPUT_MODE_ENV, "").lower()
    return mode if mode in OUTPUT_MODES else "plain"


def print_books_result(books: List[Book]) -> None:
    """Print the catalog in the current output mode.
    - plain: 'ISBN - Title by Author' lines, or 'No books found.'
    - json: array of isbn, title, author
    - rich: table
    """
    if not books:
        print("No books found.")
        return

    mode = get_output_mode()
    if mode == "json":
        payload = [{"id": b.id, "isbn": b.isbn, "title": b.title, "author": b.author} for b in books]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        for b in books:
            table.add_row(b.isbn or "", b.title, b.author or "")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.isbn or '-'} - {b.title} by {b.author or 'Unknown'}")


def print_borrowings_result(transactions: List[LendingTransaction]) -> None:
    if not transactions:
        print("No current borrowings.")
        return

    mode = get_output_mode()
    if mode == "json":
        print(json.dumps([t.model_dump(mode="json", exclude={"holding", "member"}) for t in transactions]))
    elif mode == "rich":
        table = Table(title="📖 Current borrowings", header_style="bold cyan")
        table.add_column("Title", style="white")
        table.add_column("Due", style="yellow")
        table.add_column("Status", style="magenta")
        for t in transactions:
            table.add_row(t.book.title if t.book else t.id, str(t.due_date or ""), t.status.value)
        _console.print(table)
    else:
        for t in transactions:
            title = t.book.title if t.book else t.id
            print(f"{title} - due {t.due_date or 'n/a'} ({t.status.value})")


def print_history_result(lended: List[LendedBook]) -> None:
    """Print the flattened lending history in the current output mode."""
    if not lended:
        print("No lending history.")
        return

    mode = get_output_mode()
    if mode == "json":
        print(json.dumps([b.model_dump(mode="json") for b in lended], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🗂 Lending history", show_lines=True, header_style="bold cyan")
        table.add_column("Title", style="white")
        table.add_column("Authors", style="white")
        table.add_column("Library", style="cyan")
        table.add_column("Borrowed", style="green")
        table.add_column("Status", style="magenta")
        for b in lended:
            table.add_row(b.book_title, b.authors, b.library_name, b.borrow_date.isoformat(), b.status.value)
        _console.print(table)
    else:
        for b in lended:
            print(f"{b.borrow_date.isoformat()} {b.book_title} by {b.authors or 'Unknown'} [{b.status.value}]")
