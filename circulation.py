"""Loan lifecycle: issue, return, overdue sweep and loss.

    issued --(sweep, past due)--> overdue --(return)--> returned
    issued --(return)--> returned
    issued | overdue --(mark_lost)--> lost

Each transition runs in a single repository transaction, so the loan row and the
book's copy counters change together or not at all.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from config import settings
from errors import (
    AlreadyReturned,
    DuplicateLoan,
    InvalidLoanState,
    LimitExceeded,
    NotFound,
    Unavailable,
    ValidationError,
)
from fine import Fine
from fine_engine import FineService, SweepReport
from loan import ACTIVE_STATUSES, Loan, LoanStatus
from repository import LibraryRepository
from utils.validators import as_date

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReturnResult:
    loan: Loan
    fine: Optional[Fine] = None

    def to_dict(self) -> dict:
        return {
            "loan": self.loan.to_dict(),
            "fine": self.fine.to_dict() if self.fine else None,
            "fine_amount": str(self.fine.amount) if self.fine else "0.00",
        }


class CirculationService:
    def __init__(
        self,
        repo: LibraryRepository,
        fines: Optional[FineService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repo = repo
        self._now = clock or datetime.now
        self.fines = fines or FineService(repo, clock=self._now)

    def today(self) -> date:
        return self._now().date()

    # ------------------------- Transitions ------------------------- #
    def issue_book(
        self,
        student_id: int,
        book_id: int,
        due_date=None,
        librarian_id: Optional[int] = None,
        notes: Optional[str] = None,
        issue_date=None,
    ) -> Loan:
        """Lend one copy of ``book_id`` to ``student_id``.

        Raises NotFound, Unavailable, DuplicateLoan or LimitExceeded; nothing is
        written when any check fails.
        """
        issued_on = as_date(issue_date) or self.today()
        due = as_date(due_date) or issued_on + timedelta(days=settings.loan_period_days)
        if due < issued_on:
            raise ValidationError("due_date cannot be before the issue date.")

        with self.repo.transaction():
            student = self.repo.get_student(student_id)
            if student is None:
                raise NotFound(f"Student {student_id} not found.")
            if not student.is_active:
                raise Unavailable(f"Student {student_id} is inactive.")

            book = self.repo.get_book(book_id)
            if book is None:
                raise NotFound(f"Book {book_id} not found.")
            if not book.is_active:
                raise Unavailable(f"Book {book_id} is inactive.")
            if book.available_copies <= 0:
                raise Unavailable("Book not available")

            if librarian_id is not None and self.repo.get_librarian(librarian_id) is None:
                raise NotFound(f"Librarian {librarian_id} not found.")

            if self.repo.find_active_loan(student_id, book_id) is not None:
                raise DuplicateLoan("Student has already issued this book")

            if self.repo.count_active_loans(student_id) >= student.max_books_allowed:
                raise LimitExceeded(
                    f"Student has reached maximum limit of {student.max_books_allowed} books"
                )

            loan = self.repo.add_loan(
                Loan(
                    student_id=student_id,
                    book_id=book_id,
                    librarian_id=librarian_id,
                    issue_date=issued_on,
                    due_date=due,
                    notes=notes,
                )
            )
            self.repo.update_book(book.with_available(-1))

        logger.info(f"Loan {loan.id}: book {book_id} issued to student {student_id}, due {due}")
        return loan

    def return_book(self, loan_id: int, return_date=None, notes: Optional[str] = None) -> ReturnResult:
        """Close a loan; a late return settles its pending fine at ``return_date``."""
        returned_on = as_date(return_date) or self.today()

        with self.repo.transaction():
            loan = self.repo.get_loan(loan_id)
            if loan is None:
                raise NotFound("Issued book not found")
            if loan.status == LoanStatus.RETURNED:
                raise AlreadyReturned("Book already returned")
            if loan.status == LoanStatus.LOST:
                raise InvalidLoanState("Loan was marked lost")
            if returned_on < loan.issue_date:
                raise ValidationError("return_date cannot be before the issue date.")

            fine = None
            if returned_on > loan.due_date:
                fine, _ = self.fines.assess(loan, returned_on)

            returned = self.repo.update_loan(loan.mark_returned(returned_on, notes))
            book = self.repo.get_book(loan.book_id)
            if book is None:
                raise NotFound(f"Book {loan.book_id} not found.")
            self.repo.update_book(book.with_available(1))

        if fine is not None:
            logger.info(f"Loan {loan_id} returned late: {fine.days_overdue} day(s), fine {fine.amount}")
        else:
            logger.info(f"Loan {loan_id} returned")
        return ReturnResult(loan=returned, fine=fine)

    def sweep_overdue(self, today=None) -> SweepReport:
        return self.fines.generate_fines_for_overdue_books(today)

    def mark_lost(self, loan_id: int, notes: Optional[str] = None, lost_date=None) -> Loan:
        """Administrative write-off of an issued or overdue loan.

        The copy leaves the catalog (total_copies drops by one) and any fine
        accrued up to ``lost_date`` stays pending.
        """
        lost_on = as_date(lost_date) or self.today()

        with self.repo.transaction():
            loan = self.repo.get_loan(loan_id)
            if loan is None:
                raise NotFound("Issued book not found")
            if not loan.is_active:
                raise InvalidLoanState(f"Loan {loan_id} is {loan.status.value}")

            if lost_on > loan.due_date:
                self.fines.assess(loan, lost_on)

            lost = self.repo.update_loan(loan.mark_lost(notes))
            book = self.repo.get_book(loan.book_id)
            if book is None:
                raise NotFound(f"Book {loan.book_id} not found.")
            self.repo.update_book(replace(book, total_copies=book.total_copies - 1))

        logger.warning(f"Loan {loan_id} marked lost; book {loan.book_id} copy written off")
        return lost

    # ------------------------- Queries ------------------------- #
    def get_loan(self, loan_id: int) -> Loan:
        loan = self.repo.get_loan(loan_id)
        if loan is None:
            raise NotFound("Issued book not found")
        return loan

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        student_id: Optional[int] = None,
        overdue_only: bool = False,
    ) -> List[Loan]:
        if overdue_only:
            loans = self.repo.list_loans(status=ACTIVE_STATUSES, student_id=student_id, due_before=self.today())
        else:
            loans = self.repo.list_loans(status=status, student_id=student_id)
        return sorted(loans, key=lambda l: (l.issue_date, l.id), reverse=True)

    def list_overdue(self, today=None) -> List[Loan]:
        """Active loans past their due date, oldest due date first."""
        on = as_date(today) or self.today()
        loans = self.repo.list_loans(status=ACTIVE_STATUSES, due_before=on)
        return sorted(loans, key=lambda l: (l.due_date, l.id))

    def borrowing_history(self, student_id: int) -> List[Loan]:
        if self.repo.get_student(student_id) is None:
            raise NotFound(f"Student {student_id} not found.")
        return self.list_loans(student_id=student_id)
