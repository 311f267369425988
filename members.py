from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Optional

from config import settings


@dataclass(frozen=True)
class Student:
    name: str
    email: str
    student_id: str
    semester: Optional[str] = None
    phone: Optional[str] = None
    max_books_allowed: int = field(default_factory=lambda: settings.default_max_books)
    is_active: bool = True
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict) -> "Student":
        return Student(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            student_id=data["student_id"],
            semester=data.get("semester"),
            phone=data.get("phone"),
            max_books_allowed=int(data.get("max_books_allowed", settings.default_max_books)),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass(frozen=True)
class Librarian:
    name: str
    email: str
    employee_id: str
    is_active: bool = True
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict) -> "Librarian":
        return Librarian(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            employee_id=data["employee_id"],
            is_active=bool(data.get("is_active", True)),
        )
