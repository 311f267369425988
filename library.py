import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from book import Book
from circulation import CirculationService, ReturnResult
from database import SQLiteRepository
from errors import NotFound, PermissionDenied, Unavailable, ValidationError
from fine import Fine, FineStatus
from fine_engine import FineService, SweepReport
from fine_policy import PolicyService
from loan import ACTIVE_STATUSES, Loan, LoanStatus
from members import Librarian, Student
from repository import LibraryRepository
from suggestion import SuggestedBook, SuggestionStatus
from utils.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

BOOK_FIELDS = {
    "title", "author", "isbn", "category", "publisher", "edition",
    "publication_year", "location", "description", "total_copies",
}
STUDENT_FIELDS = {"name", "email", "semester", "phone", "max_books_allowed"}


class Library:
    """Catalog, members and suggestions, plus the circulation and fine services."""

    def __init__(
        self,
        db_file: Optional[str] = None,
        repo: Optional[LibraryRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        # An explicit repository wins; otherwise open (and create) the SQLite file.
        self.repo = repo if repo is not None else SQLiteRepository(db_file)
        self._now = clock or datetime.now
        self.fines = FineService(self.repo, clock=self._now)
        self.circulation = CirculationService(self.repo, fines=self.fines, clock=self._now)
        self.policies = PolicyService(self.repo)

    # ------------------------- Catalog ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Add a book; ``available_copies`` starts equal to ``total_copies``."""
        title = TextValidator.require(book.title, "title")
        author = TextValidator.require(book.author, "author")
        if book.total_copies < 1:
            raise ValidationError("total_copies must be at least 1.")
        isbn = self._checked_isbn(book.isbn)
        stored = self.repo.add_book(
            replace(book, title=title, author=author, isbn=isbn,
                    available_copies=book.total_copies, is_active=True, id=None)
        )
        logger.info(f"Book {stored.id} added: {stored.title} ({stored.total_copies} copies)")
        return stored

    def find_book(self, book_id: int) -> Optional[Book]:
        return self.repo.get_book(book_id)

    def get_book(self, book_id: int) -> Book:
        book = self.repo.get_book(book_id)
        if book is None:
            raise NotFound("Book not found")
        return book

    def list_books(self, query: Optional[str] = None, include_inactive: bool = False) -> List[Book]:
        return self.repo.list_books(active_only=not include_inactive, query=query)

    def update_book(self, book_id: int, **changes: Any) -> Book:
        """Update catalog fields. A new ``total_copies`` shifts ``available_copies`` by the same amount."""
        unknown = set(changes) - BOOK_FIELDS
        if unknown:
            raise ValidationError(f"Unknown book fields: {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            raise ValidationError("Nothing to update.")

        with self.repo.transaction():
            book = self.get_book(book_id)
            if "title" in changes:
                changes["title"] = TextValidator.require(changes["title"], "title")
            if "author" in changes:
                changes["author"] = TextValidator.require(changes["author"], "author")
            if "isbn" in changes and changes["isbn"] != book.isbn:
                changes["isbn"] = self._checked_isbn(changes["isbn"])
            if "total_copies" in changes:
                total = int(changes["total_copies"])
                available = book.available_copies + (total - book.total_copies)
                if total < 1 or available < 0:
                    raise ValidationError(
                        f"Cannot set total_copies to {total}: {book.copies_on_loan} copies are on loan."
                    )
                changes["available_copies"] = available
            return self.repo.update_book(replace(book, **changes))

    def deactivate_book(self, book_id: int) -> Book:
        """Soft delete: the book disappears from the catalog but keeps its history."""
        book = self.repo.get_book(book_id)
        if book is None or not book.is_active:
            raise NotFound("Book not found")
        logger.info(f"Book {book_id} deactivated")
        return self.repo.update_book(replace(book, is_active=False))

    def _checked_isbn(self, raw: Optional[str]) -> Optional[str]:
        if not raw:
            return None
        isbn = ISBNValidator.normalize_isbn(raw)
        if not ISBNValidator.is_valid_isbn(isbn):
            raise ValidationError("Invalid ISBN format.")
        if self.repo.find_book_by_isbn(isbn):
            raise ValidationError(f"Book with ISBN {isbn} already exists.")
        return isbn

    # ------------------------- Members ------------------------- #
    def register_student(self, student: Student) -> Student:
        name = TextValidator.require(student.name, "name")
        email = TextValidator.require(student.email, "email").lower()
        roll = TextValidator.require(student.student_id, "student_id")
        if "@" not in email:
            raise ValidationError("Invalid email address.")
        for existing in self.repo.list_students():
            if existing.email == email or existing.student_id == roll:
                raise ValidationError("Student with this email or student ID already exists.")
        if student.max_books_allowed < 0:
            raise ValidationError("max_books_allowed must be zero or positive.")
        return self.repo.add_student(
            replace(student, name=name, email=email, student_id=roll, id=None)
        )

    def get_student(self, student_id: int) -> Student:
        student = self.repo.get_student(student_id)
        if student is None:
            raise NotFound("Student not found")
        return student

    def list_students(self, active_only: bool = False) -> List[Student]:
        return self.repo.list_students(active_only=active_only)

    def update_student(self, student_id: int, **changes: Any) -> Student:
        unknown = set(changes) - STUDENT_FIELDS
        if unknown:
            raise ValidationError(f"Unknown student fields: {', '.join(sorted(unknown))}")
        student = self.get_student(student_id)
        changes = {k: v for k, v in changes.items() if v is not None}
        return self.repo.update_student(replace(student, **changes))

    def deactivate_student(self, student_id: int) -> Student:
        student = self.get_student(student_id)
        return self.repo.update_student(replace(student, is_active=False))

    def add_librarian(self, librarian: Librarian) -> Librarian:
        TextValidator.require(librarian.name, "name")
        TextValidator.require(librarian.employee_id, "employee_id")
        return self.repo.add_librarian(replace(librarian, id=None))

    def get_librarian(self, librarian_id: int) -> Librarian:
        librarian = self.repo.get_librarian(librarian_id)
        if librarian is None:
            raise NotFound("Librarian not found")
        return librarian

    # ------------------------- Circulation shortcuts ------------------------- #
    def issue_book(self, student_id: int, book_id: int, due_date=None, **kwargs: Any) -> Loan:
        return self.circulation.issue_book(student_id, book_id, due_date, **kwargs)

    def return_book(self, loan_id: int, return_date=None, notes: Optional[str] = None) -> ReturnResult:
        return self.circulation.return_book(loan_id, return_date, notes)

    def generate_fines_for_overdue_books(self, today=None) -> SweepReport:
        return self.fines.generate_fines_for_overdue_books(today)

    def pay_fine(self, fine_id: int, paid_date=None) -> Fine:
        return self.fines.pay_fine(fine_id, paid_date)

    def waive_fine(self, fine_id: int, notes: Optional[str] = "") -> Fine:
        return self.fines.waive_fine(fine_id, notes)

    # ------------------------- Suggestions ------------------------- #
    def suggest_book(
        self,
        student_id: int,
        title: str,
        author: str,
        reason: str,
        isbn: Optional[str] = None,
        publisher: Optional[str] = None,
        category: Optional[str] = None,
    ) -> SuggestedBook:
        student = self.get_student(student_id)
        if not student.is_active:
            raise Unavailable("Student is inactive.")
        suggestion = self.repo.add_suggestion(
            SuggestedBook(
                student_id=student_id,
                title=TextValidator.require(title, "title"),
                author=TextValidator.require(author, "author"),
                reason=TextValidator.require(reason, "reason"),
                isbn=TextValidator.optional(isbn),
                publisher=TextValidator.optional(publisher),
                category=TextValidator.optional(category),
            )
        )
        logger.info(f"Suggestion {suggestion.id} submitted by student {student_id}")
        return suggestion

    def review_suggestion(
        self,
        suggestion_id: int,
        status: SuggestionStatus,
        librarian_id: Optional[int] = None,
        review_notes: Optional[str] = None,
    ) -> SuggestedBook:
        status = SuggestionStatus(status)
        if status == SuggestionStatus.PENDING:
            raise ValidationError("Review status must be approved or rejected.")
        suggestion = self.repo.get_suggestion(suggestion_id)
        if suggestion is None or suggestion.status != SuggestionStatus.PENDING:
            raise NotFound("Suggestion not found or already reviewed")
        if librarian_id is not None:
            self.get_librarian(librarian_id)
        return self.repo.update_suggestion(
            replace(
                suggestion,
                status=status,
                reviewed_by=librarian_id,
                review_date=self._now().date(),
                review_notes=TextValidator.optional(review_notes),
            )
        )

    def delete_suggestion(self, suggestion_id: int, requested_by_student: Optional[int] = None) -> None:
        """Students may only delete their own suggestions; staff pass ``requested_by_student=None``."""
        suggestion = self.repo.get_suggestion(suggestion_id)
        if suggestion is None:
            raise NotFound("Suggestion not found")
        if requested_by_student is not None and suggestion.student_id != requested_by_student:
            raise PermissionDenied("Access denied")
        self.repo.delete_suggestion(suggestion_id)

    def list_suggestions(
        self, student_id: Optional[int] = None, status: Optional[SuggestionStatus] = None
    ) -> List[SuggestedBook]:
        return self.repo.list_suggestions(student_id=student_id, status=status)

    # ------------------------- Reporting ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        """Dashboard counters."""
        books = self.repo.list_books(active_only=False)
        active_books = [b for b in books if b.is_active]
        active_loans = self.repo.list_loans(status=ACTIVE_STATUSES)
        today = self._now().date()
        pending = self.repo.list_fines(status=FineStatus.PENDING)
        return {
            "total_books": len(books),
            "active_books": len(active_books),
            "total_copies": sum(b.total_copies for b in active_books),
            "available_copies": sum(b.available_copies for b in active_books),
            "active_loans": len(active_loans),
            "overdue_loans": sum(1 for l in active_loans if l.due_date < today),
            "lost_loans": len(self.repo.list_loans(status=LoanStatus.LOST)),
            "students": len(self.repo.list_students()),
            "pending_fines": len(pending),
            "pending_fine_amount": str(sum((f.amount for f in pending), Decimal("0.00"))),
            "pending_suggestions": len(self.repo.list_suggestions(status=SuggestionStatus.PENDING)),
        }

    def close(self) -> None:
        """Release storage resources. Connections are per-operation, so this is usually a no-op."""
        self.repo.close()
