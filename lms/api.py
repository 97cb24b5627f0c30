import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from lms.config import settings
from lms.errors import ConsistencyError, InvalidState, LibraryError, NotFound, PersistenceFailure, ValidationFailure
from lms.library import Library

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

_library: Optional[Library] = None
_library_lock = threading.Lock()


def get_library() -> Library:
    """Dependency returning the process-wide Library, opened on first use."""
    global _library
    if _library is None:
        with _library_lock:
            if _library is None:
                _library = Library()
    return _library


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _library
    try:
        yield
    finally:
        with _library_lock:
            if _library is not None:
                _library.close()
                _library = None


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency checking the shared API key on mutating endpoints."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Error mapping ---
_STATUS_BY_ERROR = [
    (NotFound, 404),
    (InvalidState, 409),
    (ValidationFailure, 400),
    (PersistenceFailure, 500),
]


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    status = next((code for kind, code in _STATUS_BY_ERROR if isinstance(exc, kind)), 400)
    if isinstance(exc, ConsistencyError):
        logger.error("Request %s %s left storage out of sync", request.method, request.url.path)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: str
    genre: str
    cover_url: str = ""
    borrowed: bool
    issued_to: int


class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    isbn: str = Field(min_length=1)
    author: str = Field(min_length=1)
    genre: Optional[str] = Field(default=None, description="Unrecognized genres are stored as 'unknown'")
    cover_url: str = ""


class MemberModel(BaseModel):
    id: int
    name: str
    address: str
    borrowed_book_id: int


class MemberCreateModel(BaseModel):
    name: str = Field(min_length=1)
    address: str = Field(min_length=1)
    borrowed_book_id: int = Field(default=0, ge=0)


class LoanModel(BaseModel):
    book_id: int = Field(gt=0)
    member_id: int = Field(gt=0)


class StatsModel(BaseModel):
    total_books: int
    borrowed_books: int
    available_books: int
    total_members: int
    unique_authors: int


# --- Health ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_books": len(library.list_books()),
        "total_members": len(library.list_members()),
        "consistent": not library.check_invariants(),
    }


@app.get("/stats", response_model=StatsModel)
def stats(library: Library = Depends(get_library)):
    return library.get_statistics()


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def list_books(q: Optional[str] = Query(default=None, description="Case-insensitive title/author/ISBN filter"),
               library: Library = Depends(get_library)):
    books = library.search_books(q) if q else library.list_books()
    return [b.to_dict() for b in books]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int, library: Library = Depends(get_library)):
    return library.get_book(book_id).to_dict()


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    book = library.add_book(payload.title, payload.isbn, payload.author, payload.genre, payload.cover_url)
    return book.to_dict()


@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: int, force: bool = False, library: Library = Depends(get_library)):
    if not library.delete_book(book_id, force=force):
        raise HTTPException(status_code=404, detail=f"Book {book_id} not found")
    return {"message": f"Book {book_id} deleted"}


# --- Members ---
@app.get("/members", response_model=List[MemberModel])
def list_members(q: Optional[str] = Query(default=None, description="Case-insensitive name/address filter"),
                 library: Library = Depends(get_library)):
    members = library.search_members(q) if q else library.list_members()
    return [m.to_dict() for m in members]


@app.get("/members/{member_id}", response_model=MemberModel)
def get_member(member_id: int, library: Library = Depends(get_library)):
    return library.get_member(member_id).to_dict()


@app.get("/members/{member_id}/borrowed", response_model=Optional[BookModel])
def borrowed_book(member_id: int, library: Library = Depends(get_library)):
    book = library.borrowed_book_of(member_id)
    return book.to_dict() if book is not None else None


@app.post("/members", response_model=MemberModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_member(payload: MemberCreateModel, library: Library = Depends(get_library)):
    member = library.add_member(payload.name, payload.address, payload.borrowed_book_id)
    return member.to_dict()


@app.delete("/members/{member_id}", dependencies=[Depends(get_api_key)])
def delete_member(member_id: int, force: bool = False, library: Library = Depends(get_library)):
    if not library.delete_member(member_id, force=force):
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found")
    return {"message": f"Member {member_id} deleted"}


# --- Loans ---
@app.post("/checkout", response_model=BookModel, dependencies=[Depends(get_api_key)])
def checkout(payload: LoanModel, library: Library = Depends(get_library)):
    return library.check_out_book(payload.book_id, payload.member_id).to_dict()


@app.post("/return", response_model=BookModel, dependencies=[Depends(get_api_key)])
def return_book(payload: LoanModel, library: Library = Depends(get_library)):
    return library.return_book(payload.book_id, payload.member_id).to_dict()
