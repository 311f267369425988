import os
import subprocess
import sys
from functools import wraps
from typing import Optional

import typer
from apscheduler.schedulers.blocking import BlockingScheduler

from book import Book
from config import settings
from errors import LibraryError
from fine import FineStatus
from library import Library
from loan import LoanStatus
from members import Student
from scheduler import build_scheduler, daily_fine_sweep_task
from utils.ui_helpers import (
    print_books,
    print_fines,
    print_loans,
    print_record,
    print_stats_result,
    print_sweep_report,
    set_output_mode,
)

APP_NAME = "Library Circulation CLI"

# Library singleton, rebuilt when LIBRARY_DB_FILE points somewhere else
class LibraryManager:
    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        """Get or create the Library singleton."""
        current_db = os.environ.get("LIBRARY_DB_FILE")
        if cls._instance is not None and current_db != cls._db_file_snapshot:
            cls._instance.close()
            cls._instance = None
        if cls._instance is None:
            cls._instance = Library(db_file=current_db)
            cls._db_file_snapshot = current_db
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None
        cls._db_file_snapshot = None

def handle_errors(func):
    """Turn domain errors into a one-line message and exit code 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LibraryError as e:
            print(f"Error: {e.message}")
            raise typer.Exit(code=1)
    return wrapper

# --- Typer CLI app ---
app = typer.Typer(help=APP_NAME)

@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)

# --- Catalog ---
@app.command("books")
def cli_books(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Search in title, author or ISBN"),
    include_inactive: bool = typer.Option(False, "--all", help="Include deactivated books"),
):
    """List books in the catalog."""
    print_books(LibraryManager.get_instance().list_books(query=query, include_inactive=include_inactive))

@app.command("add-book")
@handle_errors
def cli_add_book(
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Number of copies"),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    category: Optional[str] = typer.Option(None, "--category"),
):
    """Add a book to the catalog."""
    book = LibraryManager.get_instance().add_book(
        Book(title=title, author=author, total_copies=copies, isbn=isbn, category=category)
    )
    print(f"Added book {book.id}: {book.title} by {book.author} ({book.total_copies} copies)")

# --- Members ---
@app.command("add-student")
@handle_errors
def cli_add_student(
    name: str,
    email: str,
    roll: str = typer.Argument(..., help="Institution student ID"),
    max_books: int = typer.Option(settings.default_max_books, "--max-books", help="Concurrent loan limit"),
    semester: Optional[str] = typer.Option(None, "--semester"),
):
    """Register a student."""
    student = LibraryManager.get_instance().register_student(
        Student(name=name, email=email, student_id=roll, max_books_allowed=max_books, semester=semester)
    )
    print(f"Registered student {student.id}: {student.name} <{student.email}>")

# --- Circulation ---
@app.command("issue")
@handle_errors
def cli_issue(
    student_id: int,
    book_id: int,
    due: Optional[str] = typer.Option(None, "--due", help="Due date (YYYY-MM-DD)"),
    issued: Optional[str] = typer.Option(None, "--issued", help="Issue date (YYYY-MM-DD), default today"),
    librarian_id: Optional[int] = typer.Option(None, "--librarian"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Issue a book to a student."""
    loan = LibraryManager.get_instance().issue_book(
        student_id, book_id, due, librarian_id=librarian_id, notes=notes, issue_date=issued
    )
    print(f"Issued loan {loan.id}: book {loan.book_id} to student {loan.student_id}, due {loan.due_date}")

@app.command("return")
@handle_errors
def cli_return(
    loan_id: int,
    on: Optional[str] = typer.Option(None, "--date", help="Return date (YYYY-MM-DD), default today"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Return a loaned book; a late return records its fine."""
    result = LibraryManager.get_instance().return_book(loan_id, on, notes)
    print(f"Loan {loan_id} returned on {result.loan.return_date}.")
    if result.fine is not None:
        print(f"Late return: fine of {result.fine.amount} for {result.fine.days_overdue} day(s).")

@app.command("lost")
@handle_errors
def cli_lost(loan_id: int, notes: Optional[str] = typer.Option(None, "--notes")):
    """Write off a loaned copy as lost."""
    loan = LibraryManager.get_instance().circulation.mark_lost(loan_id, notes)
    print(f"Loan {loan.id} marked as lost.")

@app.command("loans")
@handle_errors
def cli_loans(
    student_id: Optional[int] = typer.Option(None, "--student"),
    status: Optional[LoanStatus] = typer.Option(None, "--status"),
):
    """List loans, newest first."""
    print_loans(LibraryManager.get_instance().circulation.list_loans(status=status, student_id=student_id))

@app.command("overdue")
def cli_overdue():
    """List active loans past their due date."""
    print_loans(LibraryManager.get_instance().circulation.list_overdue(), empty_message="No overdue loans.")

# --- Fines ---
@app.command("sweep")
@handle_errors
def cli_sweep(on: Optional[str] = typer.Option(None, "--date", help="Evaluation date (YYYY-MM-DD), default today")):
    """Run the overdue fine sweep once."""
    report = LibraryManager.get_instance().generate_fines_for_overdue_books(on)
    print_sweep_report(report.to_dict())

@app.command("fines")
@handle_errors
def cli_fines(
    student_id: Optional[int] = typer.Option(None, "--student"),
    status: Optional[FineStatus] = typer.Option(None, "--status"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(settings.default_page_size, "--limit", min=1),
):
    """List fines, newest first."""
    fines, _ = LibraryManager.get_instance().fines.list_fines(
        student_id=student_id, status=status, page=page, limit=limit
    )
    print_fines(fines)

@app.command("pay")
@handle_errors
def cli_pay(fine_id: int, on: Optional[str] = typer.Option(None, "--date", help="Payment date (YYYY-MM-DD)")):
    """Mark a fine as paid."""
    fine = LibraryManager.get_instance().pay_fine(fine_id, on)
    print(f"Fine {fine.id} paid: {fine.amount}")

@app.command("waive")
@handle_errors
def cli_waive(fine_id: int, notes: Optional[str] = typer.Option("", "--notes")):
    """Waive a pending fine."""
    fine = LibraryManager.get_instance().waive_fine(fine_id, notes)
    print(f"Fine {fine.id} waived.")

# --- Policy ---
@app.command("policy")
def cli_policy():
    """Show the fine policy currently in force."""
    print_record("Fine policy", LibraryManager.get_instance().policies.current().to_dict())

@app.command("set-policy")
@handle_errors
def cli_set_policy(
    rate: str = typer.Argument(..., help="Fine per overdue day"),
    grace: int = typer.Option(0, "--grace", min=0, help="Days past due before fines start"),
    cap: Optional[str] = typer.Option(None, "--cap", help="Maximum fine per loan"),
    updated_by: Optional[int] = typer.Option(None, "--by", help="Librarian id"),
):
    """Activate a new fine policy."""
    policy = LibraryManager.get_instance().policies.set_policy(rate, grace, cap, updated_by)
    print(
        f"Fine policy {policy.id} active: {policy.rate_per_day}/day, "
        f"grace {policy.grace_period_days} day(s), cap {policy.max_fine_amount or 'none'}"
    )

@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())

# --- Processes ---
@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
):
    """Start the HTTP API with uvicorn."""
    print(f"Starting API on http://{host}:{port}/")
    args = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        print("Server stopped.")

@app.command("scheduler")
def cli_scheduler(run_now: bool = typer.Option(False, "--run-now", help="Run the fine sweep once and exit")):
    """Run the daily fine sweep on its schedule (blocking)."""
    task = daily_fine_sweep_task(LibraryManager.get_instance())
    if run_now:
        report = task.run()
        if report is None:
            print(f"Error: {task.last_error}")
            raise typer.Exit(code=1)
        print_sweep_report(report.to_dict())
        return

    scheduler = build_scheduler([task], BlockingScheduler())
    print(f"Fine sweep scheduled {task.trigger.describe()}. Press Ctrl+C to stop.")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        print("Scheduler stopped.")

if __name__ == "__main__":
    app()
