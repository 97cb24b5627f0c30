import os
import pytest

from lms.library import Library


@pytest.fixture
def db_file(tmp_path, request):
    # A separate database file for every test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file):
    lib = Library(db_file=db_file)
    yield lib
    try:
        lib.close()
    except Exception:
        pass
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def dune(lib):
    return lib.add_book("Dune", "0441013593", "Herbert", "science")


@pytest.fixture
def ada(lib):
    return lib.add_member("Ada", "1 Infinite Loop")
