"""Line-oriented JSON front end.

Each request is one JSON object on one line::

    {"id": 7, "method": "checkoutBook", "bookID": 1000, "memberID": 1001}

and each response is one line::

    {"id": 7, "success": true, "data": {...}}
    {"id": 7, "success": false, "error": "Book 1000 is already borrowed"}

The dispatcher only checks that required fields are present and well typed;
every business rule is enforced by the Library.
"""

import json
import logging
import sys
from typing import Any, Callable, Dict, Optional, TextIO

from pydantic import BaseModel, Field, ValidationError, model_validator

from lms.errors import ConsistencyError, LibraryError
from lms.library import Library

logger = logging.getLogger(__name__)


# --- Request parameter models ---
class AddBookParams(BaseModel):
    title: str = Field(min_length=1)
    isbn: str = Field(min_length=1)
    author: str = Field(min_length=1)
    genre: Optional[str] = None
    cover_url: str = Field(default="", alias="coverUrl")

    model_config = {"populate_by_name": True}


class AddMemberParams(BaseModel):
    name: str = Field(min_length=1)
    address: str = Field(min_length=1)


class BookIdParams(BaseModel):
    bookID: int = Field(gt=0)
    force: bool = False


class MemberIdParams(BaseModel):
    memberID: int = Field(gt=0)
    force: bool = False


class LoanParams(BaseModel):
    bookID: int = Field(gt=0)
    memberID: int = Field(gt=0)


class QueryParams(BaseModel):
    query: str = Field(min_length=1)


class SearchMemberParams(BaseModel):
    memberID: int = 0
    query: str = ""

    @model_validator(mode="after")
    def _needs_id_or_query(self) -> "SearchMemberParams":
        if not self.memberID and not self.query:
            raise ValueError("Missing required field: memberID or query")
        return self


def _describe_validation_error(exc: ValidationError) -> str:
    missing = [str(err["loc"][0]) for err in exc.errors() if err["type"] == "missing" and err["loc"]]
    if missing:
        return "Missing required fields: " + ", ".join(missing)
    first = exc.errors()[0]
    loc = ".".join(str(part) for part in first["loc"])
    msg = first["msg"].removeprefix("Value error, ")
    return f"Invalid field {loc}: {msg}" if loc else msg


class RequestDispatcher:
    """Decodes one request into a Library call and encodes the result."""

    def __init__(self, library: Library) -> None:
        self.library = library
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "listBooks": self._list_books,
            "listMembers": self._list_members,
            "addBook": self._add_book,
            "addMember": self._add_member,
            "delete-book": self._delete_book,
            "delete-member": self._delete_member,
            "checkoutBook": self._checkout_book,
            "returnBook": self._return_book,
            "searchBooks": self._search_books,
            "searchMember": self._search_member,
            "lookupBook": self._lookup_book,
            "borrowedBooks": self._borrowed_books,
        }

    @property
    def methods(self):
        return sorted(self._handlers)

    # ------------------------- Envelope ------------------------- #
    def handle(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Run one decoded request and return the response envelope."""
        request_id = request.get("id", 0)
        method = str(request.get("method") or "")
        handler = self._handlers.get(method)
        if handler is None:
            return self._error(request_id, f"Unknown method: {method}")
        try:
            data = handler(request)
        except ValidationError as e:
            return self._error(request_id, _describe_validation_error(e))
        except ConsistencyError as e:
            # Already logged at CRITICAL by the Library; the caller must still see it
            return self._error(request_id, f"Storage out of sync: {e}")
        except LibraryError as e:
            return self._error(request_id, str(e))
        return {"id": request_id, "success": True, "data": data}

    def handle_line(self, line: str) -> Optional[str]:
        """Decode, run and encode a single request line. Blank lines yield None."""
        line = line.strip()
        if not line:
            return None
        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Malformed request line: %s", e)
            return json.dumps(self._error(0, f"Malformed request: {e.msg}"))
        if not isinstance(request, dict):
            return json.dumps(self._error(0, "Request must be a JSON object"))
        return json.dumps(self.handle(request), ensure_ascii=False)

    def serve(self, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> int:
        """Answer requests until EOF. Returns the number of responses written."""
        stdin = stdin if stdin is not None else sys.stdin
        stdout = stdout if stdout is not None else sys.stdout
        count = 0
        for line in stdin:
            response = self.handle_line(line)
            if response is None:
                continue
            stdout.write(response + "\n")
            stdout.flush()
            count += 1
        logger.info("Request stream closed after %d responses", count)
        return count

    @staticmethod
    def _error(request_id: Any, message: str) -> Dict[str, Any]:
        return {"id": request_id, "success": False, "error": message}

    # ------------------------- Handlers ------------------------- #
    def _list_books(self, request: Dict[str, Any]) -> Any:
        return [b.to_dict() for b in self.library.list_books()]

    def _list_members(self, request: Dict[str, Any]) -> Any:
        return [m.to_dict() for m in self.library.list_members()]

    def _add_book(self, request: Dict[str, Any]) -> Any:
        params = AddBookParams.model_validate(request)
        book = self.library.add_book(params.title, params.isbn, params.author, params.genre, params.cover_url)
        return {"message": "Book added successfully", "book": book.to_dict()}

    def _add_member(self, request: Dict[str, Any]) -> Any:
        params = AddMemberParams.model_validate(request)
        member = self.library.add_member(params.name, params.address)
        return {"message": "Member added successfully", "member": member.to_dict()}

    def _delete_book(self, request: Dict[str, Any]) -> Any:
        params = BookIdParams.model_validate(request)
        removed = self.library.delete_book(params.bookID, force=params.force)
        return {"message": "Book deleted successfully" if removed else "Book not found", "deleted": removed}

    def _delete_member(self, request: Dict[str, Any]) -> Any:
        params = MemberIdParams.model_validate(request)
        removed = self.library.delete_member(params.memberID, force=params.force)
        return {"message": "Member deleted successfully" if removed else "Member not found", "deleted": removed}

    def _checkout_book(self, request: Dict[str, Any]) -> Any:
        params = LoanParams.model_validate(request)
        self.library.check_out_book(params.bookID, params.memberID)
        return {"message": "Book checked out successfully"}

    def _return_book(self, request: Dict[str, Any]) -> Any:
        params = LoanParams.model_validate(request)
        self.library.return_book(params.bookID, params.memberID)
        return {"message": "Book returned successfully"}

    def _search_books(self, request: Dict[str, Any]) -> Any:
        params = QueryParams.model_validate(request)
        return [b.to_dict() for b in self.library.search_books(params.query)]

    def _search_member(self, request: Dict[str, Any]) -> Any:
        params = SearchMemberParams.model_validate(request)
        if params.memberID:
            return self.library.get_member(params.memberID).to_dict()
        return [m.to_dict() for m in self.library.search_members(params.query)]

    def _lookup_book(self, request: Dict[str, Any]) -> Any:
        params = BookIdParams.model_validate(request)
        return self.library.get_book(params.bookID).to_dict()

    def _borrowed_books(self, request: Dict[str, Any]) -> Any:
        params = MemberIdParams.model_validate(request)
        book = self.library.borrowed_book_of(params.memberID)
        return book.to_dict() if book is not None else None
