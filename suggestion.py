from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional

from utils.validators import as_date, as_datetime


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class SuggestedBook:
    """A title a student asked the library to acquire."""

    student_id: int
    title: str
    author: str
    reason: str
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    category: Optional[str] = None
    status: SuggestionStatus = SuggestionStatus.PENDING
    reviewed_by: Optional[int] = None
    review_date: Optional[date] = None
    review_notes: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "title": self.title,
            "author": self.author,
            "reason": self.reason,
            "isbn": self.isbn,
            "publisher": self.publisher,
            "category": self.category,
            "status": self.status.value,
            "reviewed_by": self.reviewed_by,
            "review_date": self.review_date.isoformat() if self.review_date else None,
            "review_notes": self.review_notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @staticmethod
    def from_dict(data: dict) -> "SuggestedBook":
        return SuggestedBook(
            id=data.get("id"),
            student_id=int(data["student_id"]),
            title=data["title"],
            author=data["author"],
            reason=data["reason"],
            isbn=data.get("isbn"),
            publisher=data.get("publisher"),
            category=data.get("category"),
            status=SuggestionStatus(data.get("status", SuggestionStatus.PENDING.value)),
            reviewed_by=data.get("reviewed_by"),
            review_date=as_date(data.get("review_date")),
            review_notes=data.get("review_notes"),
            created_at=as_datetime(data.get("created_at")),
        )
