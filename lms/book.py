from __future__ import annotations

import string
from enum import Enum

_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


class Genre(str, Enum):
    FICTION = "fiction"
    NONFICTION = "nonfiction"
    FANTASY = "fantasy"
    MYSTERY = "mystery"
    ADVENTURE = "adventure"
    ROMANCE = "romance"
    SCIENCE = "science"
    HISTORY = "history"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, text: str | Genre | None) -> Genre:
        """Map free text to a genre. Unrecognized input yields UNKNOWN, never an error."""
        if isinstance(text, Genre):
            return text
        if not text:
            return cls.UNKNOWN
        key = text.strip().translate(_ASCII_LOWER)
        try:
            return cls(key)
        except ValueError:
            return cls.UNKNOWN


class Book:
    """A single book in the catalog."""

    def __init__(self, title: str, isbn: str, author: str, genre: str | Genre | None = None,
                 cover_url: str | None = None, borrowed: bool = False, issued_to: int = 0,
                 book_id: int = 0) -> None:
        self.title = title.strip()
        self.isbn = isbn.strip()
        self.author = author.strip()
        self.genre = Genre.parse(genre)
        self.cover_url = cover_url or ""
        self.borrowed = bool(borrowed)
        self.issued_to = int(issued_to or 0)
        self._id = 0
        if book_id:
            self.assign_id(book_id)

    @property
    def id(self) -> int:
        return self._id

    def assign_id(self, book_id: int) -> None:
        """Set the identifier once, when the book is created or loaded."""
        if self._id:
            raise ValueError(f"Book already has id {self._id}")
        if int(book_id) <= 0:
            raise ValueError(f"Book id must be positive, got {book_id}")
        self._id = int(book_id)

    # ------------------------- Borrow state ------------------------- #
    def mark_borrowed(self, member_id: int) -> None:
        if member_id <= 0:
            raise ValueError("member_id must be positive")
        self.borrowed = True
        self.issued_to = member_id

    def mark_returned(self) -> None:
        self.borrowed = False
        self.issued_to = 0

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(id={self._id}, title={self.title!r}, borrowed={self.borrowed}, issued_to={self.issued_to})"

    def to_dict(self) -> dict:
        return {
            "id": self._id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "genre": self.genre.value,
            "cover_url": self.cover_url,
            "borrowed": self.borrowed,
            "issued_to": self.issued_to,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # SQLite hands back borrowed as 0/1 and issued_to may be NULL in older rows
        return Book(
            title=data["title"],
            isbn=data["isbn"],
            author=data["author"],
            genre=data.get("genre"),
            cover_url=data.get("cover_url"),
            borrowed=bool(data.get("borrowed") or 0),
            issued_to=data.get("issued_to") or 0,
            book_id=data.get("id") or 0,
        )
