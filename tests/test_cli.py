import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from main import LibraryManager, app
from utils.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    # --output writes to the environment; keep it from leaking between tests
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")
    yield
    LibraryManager.reset()


def invoke(*args):
    return runner.invoke(app, list(args))


def test_list_no_books(lib):
    result = invoke("books")
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_add_book_and_list(lib):
    result = invoke("add-book", "Dune", "Frank Herbert", "--copies", "2")
    assert result.exit_code == 0
    assert "Added book 1: Dune by Frank Herbert (2 copies)" in result.stdout

    result = invoke("books")
    assert "[1] Dune by Frank Herbert (2/2 available)" in result.stdout
    assert len(lib.list_books()) == 1


def test_books_json_output(lib, seed):
    seed(lib)
    result = invoke("--output", "json", "books")
    assert result.exit_code == 0
    books = json.loads(result.stdout)
    assert books[0]["title"] == "Dune"


def test_add_book_invalid_isbn(lib):
    result = invoke("add-book", "Dune", "Frank Herbert", "--isbn", "123")
    assert result.exit_code == 1
    assert "Error: Invalid ISBN format." in result.stdout


def test_add_student(lib):
    result = invoke("add-student", "Ada", "ada@uni.edu", "S1", "--max-books", "2")
    assert result.exit_code == 0
    assert "Registered student 1: Ada <ada@uni.edu>" in result.stdout
    assert lib.get_student(1).max_books_allowed == 2


def test_issue_return_with_fine(lib, seed):
    student, book = seed(lib)
    result = invoke("issue", str(student.id), str(book.id), "--issued", "2024-01-01", "--due", "2024-01-10")
    assert result.exit_code == 0
    assert "Issued loan 1" in result.stdout
    assert "due 2024-01-10" in result.stdout

    result = invoke("return", "1", "--date", "2024-01-15")
    assert result.exit_code == 0
    assert "Loan 1 returned on 2024-01-15." in result.stdout
    assert "Late return: fine of 25.00 for 5 day(s)." in result.stdout


def test_issue_errors_exit_with_code_1(lib, seed):
    student, book = seed(lib, max_books=0)
    result = invoke("issue", str(student.id), str(book.id))
    assert result.exit_code == 1
    assert "Error: Student has reached maximum limit of 0 books" in result.stdout

    result = invoke("issue", "999", str(book.id))
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_sweep_fines_and_pay(lib, seed):
    student, book = seed(lib)
    lib.issue_book(student.id, book.id, "2024-01-10", issue_date="2024-01-01")

    result = invoke("sweep", "--date", "2024-01-12")
    assert result.exit_code == 0
    assert "Fine sweep for 2024-01-12: 1 created, 0 updated, 1 marked overdue, 0 failed" in result.stdout

    result = invoke("fines", "--student", str(student.id))
    assert "Fine 1: loan 1, student 1, 10.00 for 2 day(s) [pending]" in result.stdout

    result = invoke("pay", "1", "--date", "2024-01-13")
    assert result.exit_code == 0
    assert "Fine 1 paid: 10.00" in result.stdout

    result = invoke("pay", "1")
    assert result.exit_code == 1
    assert "Error: Fine already paid" in result.stdout

    result = invoke("waive", "1")
    assert result.exit_code == 1
    assert "Error: Cannot waive paid fine" in result.stdout


def test_fines_status_filter(lib, seed):
    result = invoke("fines", "--status", "waived")
    assert result.exit_code == 0
    assert "No fines found." in result.stdout


def test_overdue_and_lost(lib, seed):
    result = invoke("overdue")
    assert "No overdue loans." in result.stdout

    student, book = seed(lib)
    loan = lib.issue_book(student.id, book.id, "2020-01-10", issue_date="2020-01-01")
    result = invoke("overdue")
    assert f"Loan {loan.id}: book {book.id} -> student {student.id}, due 2020-01-10 [issued]" in result.stdout

    result = invoke("lost", str(loan.id))
    assert result.exit_code == 0
    assert f"Loan {loan.id} marked as lost." in result.stdout
    assert lib.get_book(book.id).total_copies == 0


def test_loans_listing(lib, seed):
    student, book = seed(lib)
    lib.issue_book(student.id, book.id)
    result = invoke("loans", "--student", str(student.id), "--status", "issued")
    assert result.exit_code == 0
    assert "Loan 1:" in result.stdout


def test_policy_commands(lib):
    result = invoke("policy")
    assert "rate_per_day: 5.00" in result.stdout

    result = invoke("set-policy", "2.5", "--grace", "1")
    assert result.exit_code == 0
    assert "Fine policy 1 active: 2.50/day, grace 1 day(s), cap none" in result.stdout

    result = invoke("policy")
    assert "rate_per_day: 2.50" in result.stdout

    result = invoke("set-policy", "-1")
    assert result.exit_code != 0


def test_stats(lib, seed):
    seed(lib, copies=3)
    result = invoke("stats")
    assert result.exit_code == 0
    assert "Total Books: 1" in result.stdout
    assert "Available Copies: 3" in result.stdout


def test_scheduler_run_now(lib, seed):
    result = invoke("scheduler", "--run-now")
    assert result.exit_code == 0
    assert "0 created, 0 updated, 0 marked overdue, 0 failed" in result.stdout


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run, lib):
    result = invoke("serve", "--port", "8123")
    assert result.exit_code == 0
    assert "Starting API on http://" in result.stdout
    args = mock_subprocess_run.call_args[0][0]
    assert args[-4:] == ["--host", args[-3], "--port", "8123"]
    assert "api:app" in args
