from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Optional

from utils.validators import as_datetime


@dataclass(frozen=True)
class Book:
    """A catalog title and its copy counters."""

    title: str
    author: str
    total_copies: int = 1
    available_copies: int = 1
    isbn: Optional[str] = None
    category: Optional[str] = None
    publisher: Optional[str] = None
    edition: Optional[str] = None
    publication_year: Optional[int] = None
    location: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    @property
    def copies_on_loan(self) -> int:
        return self.total_copies - self.available_copies

    def with_available(self, delta: int) -> "Book":
        return replace(self, available_copies=self.available_copies + delta)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        return data

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            total_copies=int(data.get("total_copies", 1)),
            available_copies=int(data.get("available_copies", data.get("total_copies", 1))),
            isbn=data.get("isbn"),
            category=data.get("category"),
            publisher=data.get("publisher"),
            edition=data.get("edition"),
            publication_year=data.get("publication_year"),
            location=data.get("location"),
            description=data.get("description"),
            is_active=bool(data.get("is_active", True)),
            created_at=as_datetime(data.get("created_at")),
        )
