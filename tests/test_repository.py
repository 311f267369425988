import sqlite3
import threading
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

import pytest

from book import Book
from database import SQLiteRepository, get_db_connection, initialize_database
from fine import Fine, FinePolicy, FineStatus
from loan import ACTIVE_STATUSES, Loan, LoanStatus
from members import Student
from repository import InMemoryRepository


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryRepository()
    return SQLiteRepository(str(tmp_path / "repo.db"))


@pytest.fixture
def sqlite_repo(tmp_path):
    return SQLiteRepository(str(tmp_path / "repo.db"))


def add_student_and_book(repo, copies=2):
    student = repo.add_student(Student(name="Ada", email="ada@uni.edu", student_id="S1"))
    book = repo.add_book(Book(title="Dune", author="Frank Herbert", total_copies=copies, available_copies=copies))
    return student, book


def make_fine(loan, amount="5.00"):
    return Fine(
        loan_id=loan.id,
        student_id=loan.student_id,
        amount=Decimal(amount),
        days_overdue=1,
        fine_rate_per_day=Decimal("5.00"),
    )


def test_initialize_database_creates_tables(tmp_path):
    db_file = str(tmp_path / "schema.db")
    initialize_database(db_file)
    conn = get_db_connection(db_file)
    try:
        tables = {row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    finally:
        conn.close()
    assert {"books", "students", "librarians", "issued_books", "fines", "fine_configs", "suggested_books"} <= tables


def test_book_round_trip(repo):
    book = repo.add_book(Book(title="Dune", author="Frank Herbert", isbn="9780441172719", total_copies=3,
                              available_copies=3))
    assert book.id is not None
    assert book.created_at is not None
    assert repo.get_book(book.id) == book
    assert repo.find_book_by_isbn("9780441172719") == book

    updated = repo.update_book(book.with_available(-1))
    assert repo.get_book(book.id).available_copies == 2
    assert updated.copies_on_loan == 1


def test_list_books_search_and_active_filter(repo):
    repo.add_book(Book(title="Dune", author="Frank Herbert"))
    emma = repo.add_book(Book(title="Emma", author="Jane Austen"))
    repo.update_book(replace(emma, is_active=False))

    assert [b.title for b in repo.list_books()] == ["Dune"]
    assert [b.title for b in repo.list_books(active_only=False)] == ["Dune", "Emma"]
    assert [b.title for b in repo.list_books(active_only=False, query="austen")] == ["Emma"]


def test_loan_queries(repo):
    student, book = add_student_and_book(repo)
    early = repo.add_loan(Loan(student_id=student.id, book_id=book.id,
                               issue_date=date(2024, 1, 1), due_date=date(2024, 1, 5)))
    late = repo.add_loan(Loan(student_id=student.id, book_id=book.id,
                              issue_date=date(2024, 1, 2), due_date=date(2024, 1, 20),
                              status=LoanStatus.RETURNED, return_date=date(2024, 1, 3)))

    assert repo.get_loan(early.id) == early
    assert repo.list_loans(status=ACTIVE_STATUSES) == [early]
    assert repo.list_loans(status=LoanStatus.RETURNED) == [late]
    assert repo.list_loans(due_before=date(2024, 1, 10)) == [early]
    assert repo.find_active_loan(student.id, book.id) == early
    assert repo.count_active_loans(student.id) == 1


def test_pending_fine_lookup(repo):
    student, book = add_student_and_book(repo)
    loan = repo.add_loan(Loan(student_id=student.id, book_id=book.id,
                              issue_date=date(2024, 1, 1), due_date=date(2024, 1, 5)))
    fine = repo.add_fine(make_fine(loan))
    assert fine.created_at is not None
    assert repo.find_fine(loan.id, FineStatus.PENDING) == fine

    repo.update_fine(replace(fine, status=FineStatus.PAID, paid_date=date(2024, 1, 8)))
    assert repo.find_fine(loan.id, FineStatus.PENDING) is None
    assert repo.find_fine(loan.id, FineStatus.PAID).paid_date == date(2024, 1, 8)
    assert repo.list_fines(student_id=student.id, status=FineStatus.PAID)[0].amount == Decimal("5.00")


def test_latest_active_policy(repo):
    assert repo.latest_active_policy() is None
    repo.add_policy(FinePolicy(rate_per_day=Decimal("1.00"), created_at=datetime(2024, 1, 1)))
    newest = repo.add_policy(FinePolicy(rate_per_day=Decimal("2.00"), created_at=datetime(2024, 2, 1)))
    repo.add_policy(FinePolicy(rate_per_day=Decimal("9.00"), is_active=False, created_at=datetime(2024, 3, 1)))

    assert repo.latest_active_policy().rate_per_day == Decimal("2.00")
    assert repo.latest_active_policy(as_of=datetime(2024, 1, 15)).rate_per_day == Decimal("1.00")

    repo.update_policy(replace(newest, is_active=False))
    assert repo.latest_active_policy().rate_per_day == Decimal("1.00")


def test_transaction_rolls_back_every_write(repo):
    student, book = add_student_and_book(repo)
    with pytest.raises(RuntimeError):
        with repo.transaction():
            repo.add_loan(Loan(student_id=student.id, book_id=book.id,
                               issue_date=date(2024, 1, 1), due_date=date(2024, 1, 5)))
            repo.update_book(book.with_available(-1))
            raise RuntimeError("abort")

    assert repo.list_loans() == []
    assert repo.get_book(book.id).available_copies == 2


def test_nested_transaction_commits_with_outer(repo):
    student, book = add_student_and_book(repo)
    with repo.transaction():
        with repo.transaction():
            repo.update_book(book.with_available(-1))
        repo.add_loan(Loan(student_id=student.id, book_id=book.id,
                           issue_date=date(2024, 1, 1), due_date=date(2024, 1, 5)))

    assert repo.get_book(book.id).available_copies == 1
    assert len(repo.list_loans()) == 1


def test_update_missing_record_raises(repo):
    with pytest.raises(KeyError):
        repo.update_book(Book(title="Ghost", author="Nobody", id=42))


def test_suggestion_delete(repo):
    from suggestion import SuggestedBook, SuggestionStatus

    student, _ = add_student_and_book(repo)
    suggestion = repo.add_suggestion(SuggestedBook(student_id=student.id, title="Emma", author="Jane Austen",
                                                   reason="Classic"))
    assert repo.list_suggestions(status=SuggestionStatus.PENDING) == [suggestion]
    assert repo.delete_suggestion(suggestion.id) is True
    assert repo.delete_suggestion(suggestion.id) is False


# --- constraints only the SQLite schema enforces ---

def test_sqlite_rejects_second_pending_fine_for_loan(sqlite_repo):
    student, book = add_student_and_book(sqlite_repo)
    loan = sqlite_repo.add_loan(Loan(student_id=student.id, book_id=book.id,
                                     issue_date=date(2024, 1, 1), due_date=date(2024, 1, 5)))
    sqlite_repo.add_fine(make_fine(loan))
    with pytest.raises(sqlite3.IntegrityError):
        sqlite_repo.add_fine(make_fine(loan, "10.00"))


def test_sqlite_rejects_second_active_loan_for_same_pair(sqlite_repo):
    student, book = add_student_and_book(sqlite_repo)
    loan = Loan(student_id=student.id, book_id=book.id, issue_date=date(2024, 1, 1), due_date=date(2024, 1, 5))
    sqlite_repo.add_loan(loan)
    with pytest.raises(sqlite3.IntegrityError):
        sqlite_repo.add_loan(loan)


def test_sqlite_rejects_negative_available_copies(sqlite_repo):
    _, book = add_student_and_book(sqlite_repo, copies=1)
    with pytest.raises(sqlite3.IntegrityError):
        sqlite_repo.update_book(book.with_available(-2))


def test_sqlite_transaction_belongs_to_its_thread(sqlite_repo):
    _, book = add_student_and_book(sqlite_repo)
    entered, release = threading.Event(), threading.Event()
    errors = []

    def hold_transaction():
        try:
            with sqlite_repo.transaction():
                sqlite_repo.update_book(book.with_available(-1))
                entered.set()
                release.wait(5)
        except Exception as e:
            errors.append(e)
        finally:
            entered.set()

    worker = threading.Thread(target=hold_transaction)
    worker.start()
    try:
        assert entered.wait(5)
        # another thread's open transaction is neither shared nor visible here
        assert sqlite_repo.get_book(book.id).available_copies == 2
        assert len(sqlite_repo.list_books()) == 1
    finally:
        release.set()
        worker.join(5)

    assert errors == []
    assert sqlite_repo.get_book(book.id).available_copies == 1
