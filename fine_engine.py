"""Overdue fine computation and the fine ledger.

``compute_fine`` is the pure rule: the same loan, policy and evaluation date
always give the same answer. ``FineService`` applies it against a repository,
keeping at most one pending fine per loan by updating that fine in place.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from config import settings
from errors import AlreadyPaid, CannotWaivePaid, InvalidFineState, NotFound
from fine import Fine, FinePolicy, FineResult, FineStatus
from fine_policy import resolve_current_policy
from loan import Loan, LoanStatus
from repository import LibraryRepository
from utils.validators import CENTS, as_date

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"


def compute_fine(loan: Loan, policy: FinePolicy, evaluation_date) -> Optional[FineResult]:
    """Fine owed for ``loan`` on ``evaluation_date`` under ``policy``, or None.

    Evaluation works on calendar days: a datetime counts as its date, so a loan
    returned any time on its due date owes nothing.
    """
    on = as_date(evaluation_date)
    if loan.status == LoanStatus.RETURNED or on <= loan.due_date:
        return None

    days_overdue = max(0, (on - loan.due_date).days - policy.grace_period_days)
    if days_overdue == 0:
        return None  # still within the grace period

    amount = (policy.rate_per_day * days_overdue).quantize(CENTS)
    # a zero cap means no cap
    if policy.max_fine_amount and amount > policy.max_fine_amount:
        amount = policy.max_fine_amount
    return FineResult(amount=amount, days_overdue=days_overdue, fine_rate_per_day=policy.rate_per_day)


@dataclass(frozen=True)
class SweepEntry:
    loan_id: int
    action: str
    fine_id: int
    amount: Decimal

    def to_dict(self) -> dict:
        return {"loan_id": self.loan_id, "action": self.action, "fine_id": self.fine_id, "amount": str(self.amount)}


@dataclass(frozen=True)
class SweepError:
    loan_id: int
    message: str

    def to_dict(self) -> dict:
        return {"loan_id": self.loan_id, "message": self.message}


@dataclass
class SweepReport:
    run_date: date
    entries: List[SweepEntry] = field(default_factory=list)
    errors: List[SweepError] = field(default_factory=list)
    marked_overdue: int = 0

    @property
    def created(self) -> int:
        return sum(1 for e in self.entries if e.action == CREATED)

    @property
    def updated(self) -> int:
        return sum(1 for e in self.entries if e.action == UPDATED)

    def to_dict(self) -> dict:
        return {
            "run_date": self.run_date.isoformat(),
            "results": [e.to_dict() for e in self.entries],
            "errors": [e.to_dict() for e in self.errors],
            "created": self.created,
            "updated": self.updated,
            "marked_overdue": self.marked_overdue,
        }


class FineService:
    """Computes, stores and settles overdue fines."""

    def __init__(self, repo: LibraryRepository, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.repo = repo
        self._now = clock or datetime.now

    def today(self) -> date:
        return self._now().date()

    # ------------------------- Computation ------------------------- #
    def calculate_fine(self, loan: Loan, evaluation_date=None) -> Optional[FineResult]:
        """Evaluate ``loan`` against the current policy (default: today)."""
        policy = resolve_current_policy(self.repo)
        return compute_fine(loan, policy, evaluation_date or self.today())

    def upsert_fine(self, loan: Loan, result: FineResult) -> Tuple[Fine, str]:
        """Store ``result`` as the loan's pending fine.

        An existing pending fine is updated in place; otherwise a new one is
        created. Returns the stored fine and ``"created"`` or ``"updated"``.
        """
        with self.repo.transaction():
            existing = self.repo.find_fine(loan.id, FineStatus.PENDING)
            if existing is not None:
                fine = self.repo.update_fine(existing.recomputed(result, when=self._now()))
                return fine, UPDATED
            fine = self.repo.add_fine(
                Fine(
                    loan_id=loan.id,
                    student_id=loan.student_id,
                    amount=result.amount,
                    days_overdue=result.days_overdue,
                    fine_rate_per_day=result.fine_rate_per_day,
                )
            )
            return fine, CREATED

    def assess(self, loan: Loan, evaluation_date) -> Tuple[Optional[Fine], Optional[str]]:
        """calculate_fine followed by upsert_fine when something is owed."""
        result = self.calculate_fine(loan, evaluation_date)
        if result is None:
            return None, None
        return self.upsert_fine(loan, result)

    def generate_fines_for_overdue_books(self, today=None) -> SweepReport:
        """Daily sweep over every issued loan past its due date.

        Each loan is re-read and handled in its own transaction, so a loan
        returned or marked lost after the selection is left alone. A failure
        is logged and recorded in the report and the sweep moves on to the
        next loan. Loans already marked overdue are not selected again; their
        pending fine is brought up to date when they are returned.
        """
        run_date = as_date(today) or self.today()
        report = SweepReport(run_date=run_date)
        loans = self.repo.list_loans(status=LoanStatus.ISSUED, due_before=run_date)
        logger.info(f"Fine sweep for {run_date}: {len(loans)} loan(s) past due")

        for selected in loans:
            try:
                with self.repo.transaction():
                    loan = self.repo.get_loan(selected.id)
                    if loan is None or loan.status != LoanStatus.ISSUED or loan.due_date >= run_date:
                        logger.info(f"Fine sweep skipped loan {selected.id}: no longer issued and past due")
                        continue
                    fine, action = self.assess(loan, run_date)
                    self.repo.update_loan(loan.mark_overdue())
                    report.marked_overdue += 1
                if fine is not None:
                    report.entries.append(SweepEntry(loan.id, action, fine.id, fine.amount))
            except Exception as e:
                logger.error(f"Fine sweep failed for loan {selected.id}: {e}")
                report.errors.append(SweepError(selected.id, str(e)))

        logger.info(
            f"Fine sweep for {run_date} done: {report.created} created, {report.updated} updated, "
            f"{report.marked_overdue} marked overdue, {len(report.errors)} failed"
        )
        return report

    # ------------------------- Settlement ------------------------- #
    def _get_or_raise(self, fine_id: int) -> Fine:
        fine = self.repo.get_fine(fine_id)
        if fine is None:
            raise NotFound("Fine not found")
        return fine

    def pay_fine(self, fine_id: int, paid_date=None) -> Fine:
        fine = self._get_or_raise(fine_id)
        if fine.status == FineStatus.PAID:
            raise AlreadyPaid("Fine already paid")
        if fine.status == FineStatus.WAIVED:
            raise InvalidFineState("Cannot pay waived fine")
        paid = self.repo.update_fine(
            replace(fine, status=FineStatus.PAID, paid_date=as_date(paid_date) or self.today(), updated_at=self._now())
        )
        logger.info(f"Fine {fine_id} paid: {paid.amount}")
        return paid

    def waive_fine(self, fine_id: int, notes: Optional[str] = "") -> Fine:
        fine = self._get_or_raise(fine_id)
        if fine.status == FineStatus.PAID:
            raise CannotWaivePaid("Cannot waive paid fine")
        if fine.status == FineStatus.WAIVED:
            raise InvalidFineState("Fine already waived")
        waived = self.repo.update_fine(
            replace(fine, status=FineStatus.WAIVED, notes=notes or None, updated_at=self._now())
        )
        logger.info(f"Fine {fine_id} waived")
        return waived

    # ------------------------- Queries ------------------------- #
    def get_fine(self, fine_id: int) -> Fine:
        return self._get_or_raise(fine_id)

    def get_student_fines(self, student_id: int, status: Optional[FineStatus] = FineStatus.PENDING) -> List[Fine]:
        """Fines of one student, newest first; ``status=None`` returns all of them."""
        return self.repo.list_fines(student_id=student_id, status=status)

    def list_fines(
        self,
        student_id: Optional[int] = None,
        status: Optional[FineStatus] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Tuple[List[Fine], Dict[str, int]]:
        limit = min(limit or settings.default_page_size, settings.max_page_size)
        page = max(page, 1)
        fines = self.repo.list_fines(student_id=student_id, status=status)
        start = (page - 1) * limit
        pagination = {
            "total": len(fines),
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(len(fines) / limit) if fines else 0,
        }
        return fines[start:start + limit], pagination

    def student_fine_summary(self, student_id: int) -> Dict[str, dict]:
        summary = {status.value: {"count": 0, "amount": Decimal("0.00")} for status in FineStatus}
        for fine in self.repo.list_fines(student_id=student_id):
            bucket = summary[fine.status.value]
            bucket["count"] += 1
            bucket["amount"] += fine.amount
        return {k: {"count": v["count"], "amount": str(v["amount"])} for k, v in summary.items()}
