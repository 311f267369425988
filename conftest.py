import itertools
from datetime import datetime

import pytest

from book import Book
from library import Library
from members import Student
from repository import InMemoryRepository

FIXED_NOW = datetime(2024, 1, 20, 9, 30)

_serial = itertools.count(1)


@pytest.fixture
def lib(tmp_path, monkeypatch):
    # A fresh SQLite file per test; the CLI picks the same file up through LIBRARY_DB_FILE
    db_file = str(tmp_path / "library.db")
    monkeypatch.setenv("LIBRARY_DB_FILE", db_file)
    lib = Library(db_file=db_file)
    yield lib
    lib.close()


@pytest.fixture
def memory_lib():
    """In-memory library whose clock is frozen at FIXED_NOW."""
    return Library(repo=InMemoryRepository(), clock=lambda: FIXED_NOW)


@pytest.fixture
def seed():
    """Register a student and add a book: ``student, book = seed(library, copies=2)``."""
    def _seed(library, copies=1, max_books=5, title="Dune", author="Frank Herbert"):
        n = next(_serial)
        student = library.register_student(
            Student(name=f"Student {n}", email=f"student{n}@uni.edu", student_id=f"S{n:04d}",
                    max_books_allowed=max_books)
        )
        book = library.add_book(Book(title=title, author=author, total_copies=copies))
        return student, book
    return _seed
