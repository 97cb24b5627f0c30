import os
import json
from typing import Any, Dict, List, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from lms.book import Book
from lms.member import Member

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LMS_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _book_line(b: Book) -> str:
    status = f"borrowed by {b.issued_to}" if b.borrowed else "available"
    return f"{b.id} - {b.title} by {b.author} (ISBN: {b.isbn}, {b.genre.value}) [{status}]"


def print_books(books: List[Book], empty_message: str = "No books in library.") -> None:
    """Print books in the current output mode.
    - plain: one 'ID - Title by Author (...) [status]' line per book
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("ISBN", style="white")
        table.add_column("Genre", style="white")
        table.add_column("Issued To", style="yellow")
        for b in books:
            table.add_row(str(b.id), b.title, b.author, b.isbn, b.genre.value, str(b.issued_to or "-"))
        _console.print(table)
    else:
        for b in books:
            print(_book_line(b))


def print_members(members: List[Member], empty_message: str = "No members registered.") -> None:
    mode = get_output_mode()

    if not members:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([m.to_dict() for m in members], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="👥 Members", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Name", style="white")
        table.add_column("Address", style="white")
        table.add_column("Holding", style="yellow")
        for m in members:
            table.add_row(str(m.id), m.name, m.address, str(m.borrowed_book_id or "-"))
        _console.print(table)
    else:
        for m in members:
            holding = f"holds {m.borrowed_book_id}" if m.holds_book else "holds nothing"
            print(f"{m.id} - {m.name}, {m.address} [{holding}]")


def print_borrowed(member: Member, book: Optional[Book]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps({"member": member.to_dict(), "book": book.to_dict() if book else None}, ensure_ascii=False))
    elif book is None:
        print(f"{member.name} holds nothing.")
    else:
        print(f"{member.name} holds: {_book_line(book)}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k.replace('_', ' ').title()}:[/] {v}" for k, v in stats.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{key.replace('_', ' ').title()}: {value}")
