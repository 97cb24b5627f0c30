import logging
import subprocess
import sys
from functools import wraps
from typing import Optional

import typer

from lms.config import settings
from lms.dispatcher import RequestDispatcher
from lms.errors import ConsistencyError, LibraryError
from lms.library import Library
from lms.ui_helpers import print_books, print_borrowed, print_members, print_stats_result, set_output_mode

APP_NAME = "Library CLI"

# Logs go to stderr so stdout stays clean for the request protocol
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)


class LibraryManager:
    """Holds the single Library instance used by the CLI process."""
    _instance: Optional[Library] = None
    _db_file: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        if cls._instance is None:
            cls._instance = Library(db_file=cls._db_file)
        return cls._instance

    @classmethod
    def use_database(cls, db_file: str) -> None:
        """Point the CLI at another database file, closing any open catalog."""
        if cls._instance is not None and cls._instance.db_file != db_file:
            cls.reset()
        cls._db_file = db_file

    @classmethod
    def reset(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None


def report_errors(func):
    """Turn catalog errors into a one-line message and a non-zero exit code."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ConsistencyError as e:
            print(f"Fatal: storage out of sync: {e}")
            raise typer.Exit(code=2)
        except LibraryError as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
    return wrapper


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
):
    """Global CLI options (output mode, database file)."""
    if output:
        set_output_mode(output)
    if db:
        LibraryManager.use_database(db)


@app.command("books")
def cli_books():
    """List all books."""
    print_books(LibraryManager.get_instance().list_books())


@app.command("members")
def cli_members():
    """List all members."""
    print_members(LibraryManager.get_instance().list_members())


@app.command("add-book")
@report_errors
def cli_add_book(
    title: str,
    isbn: str,
    author: str,
    genre: str = typer.Option("unknown", "--genre", "-g", help="fiction, nonfiction, fantasy, mystery, ..."),
    cover: str = typer.Option("", "--cover", help="Cover image reference"),
):
    """Add a book."""
    book = LibraryManager.get_instance().add_book(title, isbn, author, genre, cover)
    print(f"Successfully added: {book.title} by {book.author} (ID: {book.id})")


@app.command("add-member")
@report_errors
def cli_add_member(name: str, address: str):
    """Register a member."""
    member = LibraryManager.get_instance().add_member(name, address)
    print(f"Successfully added member: {member.name} (ID: {member.id})")


@app.command("delete-book")
@report_errors
def cli_delete_book(book_id: int, force: bool = typer.Option(False, "--force", help="Return the book first if it is borrowed")):
    """Delete a book by ID."""
    if LibraryManager.get_instance().delete_book(book_id, force=force):
        print(f"Book {book_id} has been removed.")
    else:
        print(f"Book {book_id} not found.")


@app.command("delete-member")
@report_errors
def cli_delete_member(member_id: int, force: bool = typer.Option(False, "--force", help="Return their book first")):
    """Delete a member by ID."""
    if LibraryManager.get_instance().delete_member(member_id, force=force):
        print(f"Member {member_id} has been removed.")
    else:
        print(f"Member {member_id} not found.")


@app.command("checkout")
@report_errors
def cli_checkout(book_id: int, member_id: int):
    """Check a book out to a member."""
    book = LibraryManager.get_instance().check_out_book(book_id, member_id)
    print(f"Checked out: {book.title} -> member {member_id}")


@app.command("return")
@report_errors
def cli_return(book_id: int, member_id: int):
    """Return a borrowed book."""
    book = LibraryManager.get_instance().return_book(book_id, member_id)
    print(f"Returned: {book.title} from member {member_id}")


@app.command("find")
@report_errors
def cli_find(book_id: int):
    """Show a single book by ID."""
    print_books([LibraryManager.get_instance().get_book(book_id)])


@app.command("search")
def cli_search(query: str = typer.Argument(..., help="Text to look for in title, author or ISBN")):
    """Search books."""
    print_books(LibraryManager.get_instance().search_books(query), empty_message=f"No books match '{query}'.")


@app.command("search-members")
def cli_search_members(query: str = typer.Argument(..., help="Text to look for in name or address")):
    """Search members."""
    print_members(LibraryManager.get_instance().search_members(query), empty_message=f"No members match '{query}'.")


@app.command("borrowed")
@report_errors
def cli_borrowed(member_id: int):
    """Show the book a member currently holds."""
    lib = LibraryManager.get_instance()
    print_borrowed(lib.get_member(member_id), lib.borrowed_book_of(member_id))


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("stdio")
def cli_stdio():
    """Answer JSON requests from stdin, one per line, until EOF."""
    lib = LibraryManager.get_instance()
    logger.info("Serving JSON requests on stdin | db=%s", lib.db_file)
    dispatcher = RequestDispatcher(lib)
    dispatcher.serve(sys.stdin, sys.stdout)


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
):
    """Start the HTTP API with uvicorn."""
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "lms.api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        pass


def run() -> None:
    try:
        app()
    finally:
        LibraryManager.reset()


if __name__ == "__main__":
    run()
