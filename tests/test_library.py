import logging
import sqlite3
from unittest.mock import MagicMock

import pytest

from lms.book import Book, Genre
from lms.config import settings
from lms.errors import ConsistencyError, InvalidState, NotFound, PersistenceFailure, ValidationFailure, WriteError
from lms.library import IdAllocator, Library


def assert_consistent(lib):
    assert lib.check_invariants() == []
    for book in lib.list_books():
        assert book.borrowed == (book.issued_to != 0)


# ------------------------- Adding ------------------------- #
def test_add_and_lookup_round_trip(lib):
    book = lib.add_book("Ulysses", "9780199535675", "James Joyce", "Fiction")

    found = lib.find_book(book.id)
    assert found is book
    assert (found.title, found.isbn, found.author, found.genre) == ("Ulysses", "9780199535675", "James Joyce", Genre.FICTION)
    assert found.borrowed is False
    assert found.issued_to == 0


def test_first_ids_start_at_configured_value(lib):
    book = lib.add_book("Dune", "0441013593", "Herbert", "science")
    member = lib.add_member("Ada", "1 Infinite Loop")
    assert book.id == settings.id_start
    assert member.id == settings.id_start
    assert lib.add_book("Emma", "111", "Austen").id == settings.id_start + 1


def test_unrecognized_genre_is_unknown(lib):
    book = lib.add_book("Odd", "222", "Someone", "cookbook")
    assert book.genre is Genre.UNKNOWN


@pytest.mark.parametrize("title,isbn,author", [("", "1", "A"), ("T", "   ", "A"), ("T", "1", None)])
def test_add_book_requires_fields(lib, title, isbn, author):
    with pytest.raises(ValidationFailure):
        lib.add_book(title, isbn, author)
    assert lib.list_books() == []


def test_add_book_store_failure_leaves_memory_untouched(lib, monkeypatch):
    monkeypatch.setattr(lib.store, "insert_book", MagicMock(side_effect=WriteError("disk full")))
    with pytest.raises(WriteError):
        lib.add_book("Dune", "0441013593", "Herbert")
    assert lib.list_books() == []


def test_add_member_with_book_checks_it_out(lib, dune):
    member = lib.add_member("Grace", "Arlington", borrowed_book_id=dune.id)
    assert member.borrowed_book_id == dune.id
    assert dune.issued_to == member.id
    assert_consistent(lib)


def test_add_member_with_borrowed_book_is_rejected_before_insert(lib, dune, ada):
    lib.check_out_book(dune.id, ada.id)
    with pytest.raises(InvalidState):
        lib.add_member("Grace", "Arlington", borrowed_book_id=dune.id)
    assert [m.name for m in lib.list_members()] == ["Ada"]


def test_add_member_with_missing_book(lib):
    with pytest.raises(NotFound):
        lib.add_member("Grace", "Arlington", borrowed_book_id=4242)
    assert lib.list_members() == []


# ------------------------- Checkout / return ------------------------- #
def test_checkout_and_return_scenario(lib, dune, ada):
    lib.check_out_book(dune.id, ada.id)
    assert dune.borrowed is True
    assert dune.issued_to == ada.id
    assert ada.borrowed_book_id == dune.id
    assert_consistent(lib)

    with pytest.raises(InvalidState):
        lib.check_out_book(dune.id, ada.id)

    lib.return_book(dune.id, ada.id)
    assert dune.borrowed is False
    assert dune.issued_to == 0
    assert ada.borrowed_book_id == 0
    assert_consistent(lib)


@pytest.mark.parametrize("book_offset,member_offset", [(99, 0), (0, 99), (99, 99)])
def test_checkout_missing_entity_mutates_nothing(lib, dune, ada, book_offset, member_offset):
    with pytest.raises(NotFound):
        lib.check_out_book(dune.id + book_offset, ada.id + member_offset)
    assert dune.borrowed is False
    assert ada.borrowed_book_id == 0


def test_checkout_already_borrowed_mutates_nothing(lib, dune, ada):
    grace = lib.add_member("Grace", "Arlington")
    lib.check_out_book(dune.id, ada.id)

    with pytest.raises(InvalidState, match="already borrowed"):
        lib.check_out_book(dune.id, grace.id)
    assert dune.issued_to == ada.id
    assert grace.borrowed_book_id == 0
    assert_consistent(lib)


def test_member_holds_one_book_at_a_time(lib, dune, ada):
    emma = lib.add_book("Emma", "9780141439587", "Austen", "romance")
    lib.check_out_book(dune.id, ada.id)

    with pytest.raises(InvalidState, match="already holds"):
        lib.check_out_book(emma.id, ada.id)
    assert emma.borrowed is False
    assert ada.borrowed_book_id == dune.id


def test_return_not_borrowed(lib, dune, ada):
    with pytest.raises(InvalidState, match="not borrowed"):
        lib.return_book(dune.id, ada.id)


def test_return_by_other_member_is_rejected(lib, dune, ada):
    grace = lib.add_member("Grace", "Arlington")
    lib.check_out_book(dune.id, ada.id)

    with pytest.raises(InvalidState, match="not issued to"):
        lib.return_book(dune.id, grace.id)
    assert dune.issued_to == ada.id
    assert_consistent(lib)


def test_return_with_corrupt_borrow_flag_fails(lib, dune, ada):
    dune.borrowed = True  # flag set without a borrower
    with pytest.raises(InvalidState, match="without a borrower"):
        lib.return_book(dune.id, ada.id)
    assert dune.borrowed is True


def test_same_numeric_id_for_book_and_member(lib, dune, ada):
    assert dune.id == ada.id
    lib.check_out_book(dune.id, ada.id)
    assert_consistent(lib)


def test_failed_write_after_checkout_is_escalated(lib, dune, ada, monkeypatch, caplog):
    monkeypatch.setattr(lib.store, "update_member_borrow", MagicMock(side_effect=WriteError("disk full")))

    with caplog.at_level(logging.CRITICAL, logger="lms.library"):
        with pytest.raises(ConsistencyError) as excinfo:
            lib.check_out_book(dune.id, ada.id)

    assert excinfo.value.book_id == dune.id
    assert excinfo.value.member_id == ada.id
    assert excinfo.value.operation == "checkout"
    assert any("diverged" in r.getMessage() for r in caplog.records)


def test_failed_write_after_return_is_escalated(lib, dune, ada, monkeypatch):
    lib.check_out_book(dune.id, ada.id)
    monkeypatch.setattr(lib.store, "update_book_state", MagicMock(side_effect=WriteError("locked")))
    with pytest.raises(ConsistencyError):
        lib.return_book(dune.id, ada.id)


# ------------------------- Deleting ------------------------- #
def test_delete_book(lib, dune):
    assert lib.delete_book(dune.id) is True
    assert lib.list_books() == []
    assert lib.find_book(dune.id) is None
    with pytest.raises(NotFound):
        lib.get_book(dune.id)
    assert lib.delete_book(dune.id) is False


def test_delete_borrowed_book_is_rejected(lib, dune, ada):
    lib.check_out_book(dune.id, ada.id)
    with pytest.raises(InvalidState):
        lib.delete_book(dune.id)
    assert lib.find_book(dune.id) is dune
    assert_consistent(lib)


def test_force_delete_borrowed_book_returns_it_first(lib, dune, ada):
    lib.check_out_book(dune.id, ada.id)
    assert lib.delete_book(dune.id, force=True) is True
    assert ada.borrowed_book_id == 0
    assert_consistent(lib)


def test_force_delete_leaves_holder_of_another_book_alone(lib, dune, ada):
    emma = lib.add_book("Emma", "0141439580", "Austen")
    lib.check_out_book(emma.id, ada.id)
    # stale record: dune claims ada, but ada holds emma
    dune.mark_borrowed(ada.id)
    assert lib.delete_book(dune.id, force=True) is True
    assert ada.borrowed_book_id == emma.id
    assert emma.borrowed and emma.issued_to == ada.id
    assert_consistent(lib)


def test_delete_member_holding_book_is_rejected(lib, dune, ada):
    lib.check_out_book(dune.id, ada.id)
    with pytest.raises(InvalidState):
        lib.delete_member(ada.id)
    assert lib.delete_member(ada.id, force=True) is True
    assert dune.borrowed is False
    assert lib.list_members() == []
    assert_consistent(lib)


def test_delete_store_failure_is_not_fatal(lib, dune, monkeypatch, caplog):
    monkeypatch.setattr(lib.store, "delete_book", MagicMock(side_effect=WriteError("locked")))
    with caplog.at_level(logging.WARNING, logger="lms.library"):
        assert lib.delete_book(dune.id) is True
    assert lib.list_books() == []
    assert "not from storage" in caplog.text
    assert [r.levelno for r in caplog.records if "not from storage" in r.getMessage()] == [logging.WARNING]


# ------------------------- Queries ------------------------- #
def test_search_books_case_insensitive(lib, dune):
    lib.add_book("Emma", "9780141439587", "Austen", "romance")
    assert lib.search_books("dune") == [dune]
    assert lib.search_books("DUNE") == [dune]
    assert lib.search_books("herb") == [dune]
    assert lib.search_books("04410") == [dune]
    assert lib.search_books("zzz") == []


def test_search_is_repeatable_and_ordered(lib):
    first = lib.add_book("The Hobbit", "1", "Tolkien", "fantasy")
    second = lib.add_book("The Silmarillion", "2", "Tolkien", "fantasy")
    lib.add_book("Dune", "3", "Herbert")
    results = lib.search_books("tolkien")
    assert results == [first, second]
    assert lib.search_books("tolkien") == results
    assert lib.search_books("tolkien") is not results


def test_search_members(lib, ada):
    grace = lib.add_member("Grace Hopper", "Arlington, Virginia")
    assert lib.search_members("ada") == [ada]
    assert lib.search_members("virginia") == [grace]
    assert lib.search_members("LOOP") == [ada]


def test_list_returns_snapshot(lib, dune):
    books = lib.list_books()
    books.clear()
    assert lib.list_books() == [dune]


def test_borrowed_book_of(lib, dune, ada):
    assert lib.borrowed_book_of(ada.id) is None
    lib.check_out_book(dune.id, ada.id)
    assert lib.borrowed_book_of(ada.id) is dune
    with pytest.raises(NotFound):
        lib.borrowed_book_of(9999)


def test_statistics(lib, dune, ada):
    lib.add_book("Emma", "9780141439587", "Austen")
    lib.check_out_book(dune.id, ada.id)
    stats = lib.get_statistics()
    assert stats == {
        "total_books": 2,
        "borrowed_books": 1,
        "available_books": 1,
        "total_members": 1,
        "unique_authors": 2,
    }


# ------------------------- Persistence ------------------------- #
def test_persistence_keeps_ids_and_borrow_state(db_file):
    with Library(db_file=db_file) as lib:
        book = lib.add_book("Sapiens", "9780099590088", "Harari", "history")
        member = lib.add_member("Ada", "1 Infinite Loop")
        lib.check_out_book(book.id, member.id)

    with Library(db_file=db_file) as lib2:
        loaded = lib2.get_book(book.id)
        assert loaded.title == "Sapiens"
        assert loaded.genre is Genre.HISTORY
        assert loaded.issued_to == member.id
        assert lib2.get_member(member.id).borrowed_book_id == book.id
        assert lib2.check_invariants() == []


def test_reload_never_reissues_stored_ids(db_file):
    with Library(db_file=db_file) as lib:
        lib.store.insert_book(Book("Old", "9", "Someone"), proposed_id=5000)

    with Library(db_file=db_file) as lib2:
        assert lib2.find_book(5000) is not None
        assert lib2.add_book("New", "10", "Someone").id == 5001


def test_deleted_book_stays_deleted_after_reload(db_file):
    with Library(db_file=db_file) as lib:
        book = lib.add_book("Dune", "0441013593", "Herbert")
        lib.delete_book(book.id)

    with Library(db_file=db_file) as lib2:
        assert lib2.list_books() == []


def test_inconsistent_storage_is_reported_on_load(db_file, caplog):
    with Library(db_file=db_file) as lib:
        lib.store.insert_book(Book("Orphan", "1", "Nobody", borrowed=True, issued_to=777))

    with caplog.at_level(logging.WARNING, logger="lms.library"):
        with Library(db_file=db_file) as lib2:
            assert lib2.check_invariants()
    assert "issued to missing member 777" in caplog.text


# ------------------------- Identifier allocation ------------------------- #
def test_id_allocator_is_monotonic():
    ids = IdAllocator(start=1000)
    assert [ids.next_id() for _ in range(3)] == [1000, 1001, 1002]
    ids.advance_past(1500)
    assert ids.next_id() == 1501
    ids.advance_past(10)
    assert ids.next_id() == 1502


def test_id_allocator_rejects_non_positive_start():
    with pytest.raises(ValueError):
        IdAllocator(start=0)


def test_unreadable_storage_is_fatal_at_startup(db_file):
    conn = sqlite3.connect(db_file)
    conn.execute("CREATE TABLE members (id INTEGER PRIMARY KEY, nickname TEXT)")
    conn.commit()
    conn.close()

    with pytest.raises(PersistenceFailure):
        Library(db_file=db_file)
