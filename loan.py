from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from typing import Optional

from utils.validators import as_date


class LoanStatus(str, Enum):
    ISSUED = "issued"
    OVERDUE = "overdue"
    RETURNED = "returned"
    LOST = "lost"


ACTIVE_STATUSES = (LoanStatus.ISSUED, LoanStatus.OVERDUE)


@dataclass(frozen=True)
class Loan:
    """One copy of a book issued to a student.

    ``return_date`` is set exactly when ``status`` is RETURNED.
    """

    student_id: int
    book_id: int
    issue_date: date
    due_date: date
    status: LoanStatus = LoanStatus.ISSUED
    return_date: Optional[date] = None
    librarian_id: Optional[int] = None
    notes: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        if (self.return_date is not None) != (self.status == LoanStatus.RETURNED):
            raise ValueError("return_date must be set if and only if the loan is returned")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def is_past_due(self, on: date) -> bool:
        return self.is_active and on > self.due_date

    def mark_overdue(self) -> "Loan":
        return replace(self, status=LoanStatus.OVERDUE)

    def mark_returned(self, when: date, notes: Optional[str] = None) -> "Loan":
        return replace(self, status=LoanStatus.RETURNED, return_date=when, notes=notes or self.notes)

    def mark_lost(self, notes: Optional[str] = None) -> "Loan":
        return replace(self, status=LoanStatus.LOST, notes=notes or self.notes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "book_id": self.book_id,
            "librarian_id": self.librarian_id,
            "issue_date": self.issue_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "status": self.status.value,
            "notes": self.notes,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        return Loan(
            id=data.get("id"),
            student_id=int(data["student_id"]),
            book_id=int(data["book_id"]),
            librarian_id=data.get("librarian_id"),
            issue_date=as_date(data["issue_date"]),
            due_date=as_date(data["due_date"]),
            return_date=as_date(data.get("return_date")),
            status=LoanStatus(data.get("status", LoanStatus.ISSUED.value)),
            notes=data.get("notes"),
        )
