class LibraryError(Exception):
    """Base exception for library catalog errors."""


class NotFound(LibraryError, LookupError):
    """An identifier did not resolve to a book or member."""


class InvalidState(LibraryError):
    """A transaction precondition does not hold (already borrowed, not borrowed, ...)."""


class ValidationFailure(LibraryError, ValueError):
    """A required field is missing or empty."""


class PersistenceFailure(LibraryError):
    """The durable store did not complete a read or write."""


class StoreUnavailable(PersistenceFailure):
    """The database could not be opened."""


class WriteError(PersistenceFailure):
    """An insert, update or delete was rejected by the database."""


class ConsistencyError(PersistenceFailure):
    """Memory and storage diverged: a write failed after in-memory state changed.

    Attributes:
        book_id (int): Book involved in the failed transaction.
        member_id (int): Member involved in the failed transaction.
        operation (str): Name of the transaction ("checkout", "return", ...).
    """

    def __init__(self, message: str, *, book_id: int = 0, member_id: int = 0, operation: str = "") -> None:
        super().__init__(message)
        self.book_id = book_id
        self.member_id = member_id
        self.operation = operation
