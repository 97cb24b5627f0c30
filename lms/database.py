"""SQLite persistence for books and members.

The Store owns a single connection for the lifetime of the catalog. Every
write commits immediately; there is no write-behind queue and no retry.
sqlite3 errors are translated into the catalog's PersistenceFailure types so
callers never deal with driver exceptions.
"""

import logging
import sqlite3
from pathlib import Path
from typing import List, Optional, Union

from lms.book import Book
from lms.errors import PersistenceFailure, StoreUnavailable, WriteError
from lms.member import Member

logger = logging.getLogger(__name__)

BOOK_COLUMNS = "id, title, author, isbn, genre, cover_url, borrowed, issued_to"
MEMBER_COLUMNS = "id, name, address, borrowed_book_id"


class Store:
    """Durable table operations keyed by entity identifier."""

    def __init__(self, connection: sqlite3.Connection, location: str) -> None:
        self.connection = connection
        self.location = location

    @classmethod
    def open(cls, location: Union[str, Path]) -> "Store":
        """Open (or create) the database file. Raises StoreUnavailable on failure."""
        location = str(location)
        try:
            if location != ":memory:":
                Path(location).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(location, check_same_thread=False)
            conn.row_factory = sqlite3.Row
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailable(f"Can't open database {location}: {e}") from e
        logger.debug("Database opened: %s", location)
        return cls(conn, location)

    @property
    def is_open(self) -> bool:
        return self.connection is not None

    def _conn(self) -> sqlite3.Connection:
        if self.connection is None:
            raise StoreUnavailable(f"Database {self.location} is closed")
        return self.connection

    def ensure_schema(self) -> None:
        """Create the books and members tables if they do not exist."""
        conn = self._conn()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS books (
                    id INTEGER PRIMARY KEY,
                    title TEXT NOT NULL,
                    author TEXT NOT NULL,
                    isbn TEXT NOT NULL,
                    genre TEXT NOT NULL DEFAULT 'unknown',
                    cover_url TEXT NOT NULL DEFAULT '',
                    borrowed INTEGER NOT NULL DEFAULT 0,
                    issued_to INTEGER NOT NULL DEFAULT 0
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS members (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    address TEXT NOT NULL,
                    borrowed_book_id INTEGER NOT NULL DEFAULT 0
                )
            """)

            # Tables created before genres and covers existed lack these columns
            cursor.execute("PRAGMA table_info(books)")
            columns = [column[1] for column in cursor.fetchall()]
            if "genre" not in columns:
                cursor.execute("ALTER TABLE books ADD COLUMN genre TEXT NOT NULL DEFAULT 'unknown'")
            if "cover_url" not in columns:
                cursor.execute("ALTER TABLE books ADD COLUMN cover_url TEXT NOT NULL DEFAULT ''")

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_members_name ON members(name)")
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceFailure(f"Error creating schema: {e}") from e

    # ------------------------- Inserts ------------------------- #
    def insert_book(self, book: Book, proposed_id: Optional[int] = None) -> int:
        """Insert a book and return the id the database assigned."""
        return self._insert(
            "INSERT INTO books (id, title, author, isbn, genre, cover_url, borrowed, issued_to) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (proposed_id, book.title, book.author, book.isbn, book.genre.value,
             book.cover_url, 1 if book.borrowed else 0, book.issued_to),
            "book",
        )

    def insert_member(self, member: Member, proposed_id: Optional[int] = None) -> int:
        """Insert a member and return the id the database assigned."""
        return self._insert(
            "INSERT INTO members (id, name, address, borrowed_book_id) VALUES (?, ?, ?, ?)",
            (proposed_id, member.name, member.address, member.borrowed_book_id),
            "member",
        )

    def _insert(self, sql: str, params: tuple, kind: str) -> int:
        conn = self._conn()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise WriteError(f"Failed to insert {kind}: {e}") from e
        return int(cursor.lastrowid)

    # ------------------------- Updates ------------------------- #
    def update_book_state(self, book: Book) -> None:
        """Persist a book's borrow flag and issued_to."""
        self._update(
            "UPDATE books SET borrowed = ?, issued_to = ? WHERE id = ?",
            (1 if book.borrowed else 0, book.issued_to, book.id),
            f"book {book.id}",
        )

    def update_member_borrow(self, member_id: int, borrowed_book_id: int) -> None:
        self._update(
            "UPDATE members SET borrowed_book_id = ? WHERE id = ?",
            (borrowed_book_id, member_id),
            f"member {member_id}",
        )

    def _update(self, sql: str, params: tuple, what: str) -> None:
        conn = self._conn()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise WriteError(f"Failed to update {what}: {e}") from e
        if cursor.rowcount == 0:
            raise WriteError(f"Failed to update {what}: no such row")

    # ------------------------- Deletes ------------------------- #
    def delete_book(self, book_id: int) -> None:
        self._delete("DELETE FROM books WHERE id = ?", book_id, "book")

    def delete_member(self, member_id: int) -> None:
        self._delete("DELETE FROM members WHERE id = ?", member_id, "member")

    def _delete(self, sql: str, entity_id: int, kind: str) -> None:
        conn = self._conn()
        try:
            conn.execute(sql, (entity_id,))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise WriteError(f"Failed to delete {kind} {entity_id}: {e}") from e

    # ------------------------- Loading ------------------------- #
    def load_all_books(self) -> List[Book]:
        rows = self._select(f"SELECT {BOOK_COLUMNS} FROM books ORDER BY id", "books")
        return [self._decode(Book.from_dict, row, "books") for row in rows]

    def load_all_members(self) -> List[Member]:
        rows = self._select(f"SELECT {MEMBER_COLUMNS} FROM members ORDER BY id", "members")
        return [self._decode(Member.from_dict, row, "members") for row in rows]

    @staticmethod
    def _decode(factory, row: sqlite3.Row, table: str):
        data = dict(row)
        if (data.get("id") or 0) <= 0:
            raise PersistenceFailure(f"Malformed row in {table}: id={data.get('id')!r}")
        try:
            return factory(data)
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"Malformed row in {table} (id={data['id']}): {e}") from e

    def _select(self, sql: str, table: str) -> List[sqlite3.Row]:
        conn = self._conn()
        try:
            return conn.execute(sql).fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Failed to load {table}: {e}") from e

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()
            self.connection = None
            logger.debug("Database closed: %s", self.location)
