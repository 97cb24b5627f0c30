import logging
import threading
from functools import wraps
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from lms.book import Book, Genre
from lms.config import settings
from lms.database import Store
from lms.errors import ConsistencyError, InvalidState, NotFound, PersistenceFailure, ValidationFailure
from lms.member import Member

logger = logging.getLogger(__name__)


class IdAllocator:
    """Monotonically increasing source of identifiers for one entity type."""

    def __init__(self, start: int = 1000) -> None:
        if start <= 0:
            raise ValueError("Identifier counter must start above zero")
        self._next = start

    @property
    def peek(self) -> int:
        return self._next

    def next_id(self) -> int:
        value = self._next
        self._next += 1
        return value

    def advance_past(self, highest: int) -> None:
        """Make sure future ids are strictly greater than ``highest``."""
        if highest >= self._next:
            self._next = highest + 1


def synchronized(func):
    """Run a Library method while holding the catalog lock."""
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return func(self, *args, **kwargs)
    return wrapper


class Library:
    """Owns the in-memory books and members and keeps them in step with the Store."""

    def __init__(self, db_file: Optional[Union[str, Path]] = None, store: Optional[Store] = None) -> None:
        self._lock = threading.RLock()
        self.db_file = str(db_file or settings.db_file)
        self.store = store if store is not None else Store.open(self.db_file)
        self.book_ids = IdAllocator(settings.id_start)
        self.member_ids = IdAllocator(settings.id_start)
        self.books: List[Book] = []
        self.members: List[Member] = []
        try:
            self.store.ensure_schema()
            self._load_from_db()
        except PersistenceFailure:
            self.store.close()
            raise

    def __enter__(self) -> "Library":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------- Persistence ------------------------- #
    def _load_from_db(self) -> None:
        """Load all books and members, keeping their stored identifiers."""
        self.books = self.store.load_all_books()
        self.members = self.store.load_all_members()
        if self.books:
            self.book_ids.advance_past(max(b.id for b in self.books))
        if self.members:
            self.member_ids.advance_past(max(m.id for m in self.members))
        logger.info("Loaded %d books and %d members from %s", len(self.books), len(self.members), self.db_file)
        for problem in self.check_invariants():
            logger.warning("Stored data inconsistent: %s", problem)

    def _persist_borrow_state(self, book: Book, member: Member, operation: str) -> None:
        """Write both sides of a loan. A failure here means memory and disk disagree."""
        try:
            self.store.update_book_state(book)
            self.store.update_member_borrow(member.id, member.borrowed_book_id)
        except PersistenceFailure as e:
            logger.critical(
                "Memory and storage diverged during %s | book=%d borrowed=%s issued_to=%d | "
                "member=%d borrowed_book_id=%d | cause: %s",
                operation, book.id, book.borrowed, book.issued_to,
                member.id, member.borrowed_book_id, e,
            )
            raise ConsistencyError(
                f"{operation} of book {book.id} for member {member.id} was applied in memory "
                f"but not persisted: {e}",
                book_id=book.id, member_id=member.id, operation=operation,
            ) from e

    # ------------------------- Core operations ------------------------- #
    @synchronized
    def add_book(self, title: str, isbn: str, author: str, genre: Union[str, Genre, None] = None,
                 cover_url: str = "") -> Book:
        """Create a book, persist it, then add it to memory. Returns the new book."""
        book = Book(
            title=self._require_text(title, "title"),
            isbn=self._require_text(isbn, "isbn"),
            author=self._require_text(author, "author"),
            genre=genre,
            cover_url=cover_url,
        )
        new_id = self.store.insert_book(book, proposed_id=self.book_ids.next_id())
        book.assign_id(new_id)
        self.book_ids.advance_past(new_id)
        self.books.append(book)
        logger.info("Book added | id=%d title=%s genre=%s", book.id, book.title, book.genre.value)
        return book

    @synchronized
    def add_member(self, name: str, address: str, borrowed_book_id: int = 0) -> Member:
        """Create a member. A non-zero borrowed_book_id checks that book out to them."""
        member = Member(
            name=self._require_text(name, "name"),
            address=self._require_text(address, "address"),
        )
        if borrowed_book_id:
            # Validate before inserting so a bad loan never leaves a half-created member
            book = self.get_book(borrowed_book_id)
            if book.borrowed:
                raise InvalidState(f"Book {borrowed_book_id} is already borrowed")

        new_id = self.store.insert_member(member, proposed_id=self.member_ids.next_id())
        member.assign_id(new_id)
        self.member_ids.advance_past(new_id)
        self.members.append(member)
        logger.info("Member added | id=%d name=%s", member.id, member.name)

        if borrowed_book_id:
            self.check_out_book(borrowed_book_id, member.id)
        return member

    @synchronized
    def delete_book(self, book_id: int, force: bool = False) -> bool:
        """Remove a book. Returns False if it does not exist.

        A borrowed book is rejected unless ``force`` is set, in which case it is
        returned first so the holding member is not left pointing at nothing.
        """
        book = self.find_book(book_id)
        if book is None:
            return False
        if book.borrowed:
            if not force:
                raise InvalidState(f"Book {book_id} is borrowed by member {book.issued_to}; return it first")
            holder = self.find_member(book.issued_to)
            if holder is not None and holder.borrowed_book_id == book.id:
                self.return_book(book.id, holder.id)

        self.books.remove(book)
        try:
            self.store.delete_book(book_id)
        except PersistenceFailure as e:
            logger.warning("Book %d removed from memory but not from storage: %s", book_id, e)
        logger.info("Book deleted | id=%d", book_id)
        return True

    @synchronized
    def delete_member(self, member_id: int, force: bool = False) -> bool:
        """Remove a member. Returns False if they do not exist."""
        member = self.find_member(member_id)
        if member is None:
            return False
        if member.holds_book:
            if not force:
                raise InvalidState(
                    f"Member {member_id} holds book {member.borrowed_book_id}; return it first"
                )
            book = self.find_book(member.borrowed_book_id)
            if book is not None and book.issued_to == member.id:
                self.return_book(book.id, member.id)

        self.members.remove(member)
        try:
            self.store.delete_member(member_id)
        except PersistenceFailure as e:
            logger.warning("Member %d removed from memory but not from storage: %s", member_id, e)
        logger.info("Member deleted | id=%d", member_id)
        return True

    # ------------------------- Transactions ------------------------- #
    @synchronized
    def check_out_book(self, book_id: int, member_id: int) -> Book:
        """Lend a book to a member.

        Raises:
            NotFound: book or member does not exist.
            InvalidState: the book is already borrowed or the member already holds a book.
            ConsistencyError: the change was applied in memory but could not be persisted.
        """
        book = self.get_book(book_id)
        member = self.get_member(member_id)

        if book.borrowed:
            logger.warning("Checkout rejected | book=%d already borrowed by %d", book_id, book.issued_to)
            raise InvalidState(f"Book {book_id} is already borrowed")
        if member.holds_book:
            logger.warning("Checkout rejected | member=%d already holds %d", member_id, member.borrowed_book_id)
            raise InvalidState(f"Member {member_id} already holds book {member.borrowed_book_id}")

        book.mark_borrowed(member_id)
        member.borrow(book_id)
        self._persist_borrow_state(book, member, "checkout")
        logger.info("Checkout successful | book=%d member=%d", book_id, member_id)
        return book

    @synchronized
    def return_book(self, book_id: int, member_id: int) -> Book:
        """Take a book back from the member it was issued to.

        Raises:
            NotFound: book or member does not exist.
            InvalidState: the book is not borrowed, or not by this member.
            ConsistencyError: the change was applied in memory but could not be persisted.
        """
        book = self.get_book(book_id)
        member = self.get_member(member_id)

        if not book.borrowed:
            raise InvalidState(f"Book {book_id} is not borrowed")
        if book.issued_to == 0:
            logger.error("Book %d is flagged borrowed but issued to nobody", book_id)
            raise InvalidState(f"Book {book_id} is marked borrowed without a borrower")
        if book.issued_to != member_id:
            logger.warning("Return rejected | book=%d issued_to=%d, not %d", book_id, book.issued_to, member_id)
            raise InvalidState(f"Book {book_id} is not issued to member {member_id}")

        book.mark_returned()
        member.release()
        self._persist_borrow_state(book, member, "return")
        logger.info("Return successful | book=%d member=%d", book_id, member_id)
        return book

    # ------------------------- Queries ------------------------- #
    def list_books(self) -> List[Book]:
        return list(self.books)

    def list_members(self) -> List[Member]:
        return list(self.members)

    def find_book(self, book_id: int) -> Optional[Book]:
        for book in self.books:
            if book.id == book_id:
                return book
        return None

    def find_member(self, member_id: int) -> Optional[Member]:
        for member in self.members:
            if member.id == member_id:
                return member
        return None

    def get_book(self, book_id: int) -> Book:
        book = self.find_book(book_id)
        if book is None:
            raise NotFound(f"Book {book_id} not found")
        return book

    def get_member(self, member_id: int) -> Member:
        member = self.find_member(member_id)
        if member is None:
            raise NotFound(f"Member {member_id} not found")
        return member

    def search_books(self, query: str) -> List[Book]:
        """Search for books by title, author or ISBN (case-insensitive substring)."""
        q = (query or "").lower()
        return [
            b for b in self.books
            if q in b.title.lower() or q in b.author.lower() or q in b.isbn.lower()
        ]

    def search_members(self, query: str) -> List[Member]:
        """Search for members by name or address (case-insensitive substring)."""
        q = (query or "").lower()
        return [m for m in self.members if q in m.name.lower() or q in m.address.lower()]

    def borrowed_book_of(self, member_id: int) -> Optional[Book]:
        """The book a member currently holds, or None if they hold nothing."""
        member = self.get_member(member_id)
        if not member.holds_book:
            return None
        book = self.find_book(member.borrowed_book_id)
        if book is None:
            logger.warning("Member %d points at missing book %d", member_id, member.borrowed_book_id)
        return book

    def get_statistics(self) -> Dict[str, Any]:
        borrowed = sum(1 for b in self.books if b.borrowed)
        return {
            "total_books": len(self.books),
            "borrowed_books": borrowed,
            "available_books": len(self.books) - borrowed,
            "total_members": len(self.members),
            "unique_authors": len({b.author for b in self.books}),
        }

    def check_invariants(self) -> List[str]:
        """Describe every break in the book/member borrow links. Empty means consistent."""
        problems: List[str] = []
        members_by_id = {m.id: m for m in self.members}
        books_by_id = {b.id: b for b in self.books}
        for book in self.books:
            if book.borrowed != (book.issued_to != 0):
                problems.append(f"book {book.id}: borrowed={book.borrowed} but issued_to={book.issued_to}")
            if book.issued_to:
                holder = members_by_id.get(book.issued_to)
                if holder is None:
                    problems.append(f"book {book.id}: issued to missing member {book.issued_to}")
                elif holder.borrowed_book_id != book.id:
                    problems.append(
                        f"book {book.id}: issued to member {holder.id} who holds {holder.borrowed_book_id}"
                    )
        for member in self.members:
            if not member.holds_book:
                continue
            book = books_by_id.get(member.borrowed_book_id)
            if book is None:
                problems.append(f"member {member.id}: holds missing book {member.borrowed_book_id}")
            elif not book.borrowed or book.issued_to != member.id:
                problems.append(
                    f"member {member.id}: holds book {book.id} which is issued to {book.issued_to}"
                )
        return problems

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _require_text(value: Optional[str], field: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationFailure(f"{field} cannot be empty.")
        return str(value).strip()

    def close(self) -> None:
        """Close the underlying database. Safe to call more than once."""
        self.store.close()
