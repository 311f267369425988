"""Storage interface used by the circulation and fine services.

The services only talk to :class:`LibraryRepository`; ``database.SQLiteRepository``
is the durable implementation and :class:`InMemoryRepository` is a dictionary
backed store used by tests and throwaway sessions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from book import Book
from fine import Fine, FinePolicy, FineStatus
from loan import ACTIVE_STATUSES, Loan, LoanStatus
from members import Librarian, Student
from suggestion import SuggestedBook, SuggestionStatus

LoanStatusFilter = Union[None, LoanStatus, Iterable[LoanStatus]]


def _status_set(status: LoanStatusFilter) -> Optional[Tuple[LoanStatus, ...]]:
    if status is None:
        return None
    if isinstance(status, LoanStatus):
        return (status,)
    return tuple(status)


class LibraryRepository(ABC):
    """Queries and writes the services need, independent of the storage engine."""

    # books
    @abstractmethod
    def add_book(self, book: Book) -> Book: ...

    @abstractmethod
    def get_book(self, book_id: int) -> Optional[Book]: ...

    @abstractmethod
    def find_book_by_isbn(self, isbn: str) -> Optional[Book]: ...

    @abstractmethod
    def update_book(self, book: Book) -> Book: ...

    @abstractmethod
    def list_books(self, active_only: bool = True, query: Optional[str] = None) -> List[Book]: ...

    # members
    @abstractmethod
    def add_student(self, student: Student) -> Student: ...

    @abstractmethod
    def get_student(self, student_id: int) -> Optional[Student]: ...

    @abstractmethod
    def update_student(self, student: Student) -> Student: ...

    @abstractmethod
    def list_students(self, active_only: bool = False) -> List[Student]: ...

    @abstractmethod
    def add_librarian(self, librarian: Librarian) -> Librarian: ...

    @abstractmethod
    def get_librarian(self, librarian_id: int) -> Optional[Librarian]: ...

    # loans
    @abstractmethod
    def add_loan(self, loan: Loan) -> Loan: ...

    @abstractmethod
    def get_loan(self, loan_id: int) -> Optional[Loan]: ...

    @abstractmethod
    def update_loan(self, loan: Loan) -> Loan: ...

    @abstractmethod
    def list_loans(
        self,
        status: LoanStatusFilter = None,
        student_id: Optional[int] = None,
        book_id: Optional[int] = None,
        due_before: Optional[date] = None,
    ) -> List[Loan]: ...

    def find_active_loan(self, student_id: int, book_id: int) -> Optional[Loan]:
        loans = self.list_loans(status=ACTIVE_STATUSES, student_id=student_id, book_id=book_id)
        return loans[0] if loans else None

    def count_active_loans(self, student_id: int) -> int:
        return len(self.list_loans(status=ACTIVE_STATUSES, student_id=student_id))

    # fines
    @abstractmethod
    def add_fine(self, fine: Fine) -> Fine: ...

    @abstractmethod
    def get_fine(self, fine_id: int) -> Optional[Fine]: ...

    @abstractmethod
    def update_fine(self, fine: Fine) -> Fine: ...

    @abstractmethod
    def list_fines(
        self,
        student_id: Optional[int] = None,
        status: Optional[FineStatus] = None,
        loan_id: Optional[int] = None,
    ) -> List[Fine]:
        """Fines matching every given filter, newest first."""

    def find_fine(self, loan_id: int, status: FineStatus) -> Optional[Fine]:
        fines = self.list_fines(loan_id=loan_id, status=status)
        return fines[0] if fines else None

    # fine policies
    @abstractmethod
    def add_policy(self, policy: FinePolicy) -> FinePolicy: ...

    @abstractmethod
    def update_policy(self, policy: FinePolicy) -> FinePolicy: ...

    @abstractmethod
    def list_policies(self) -> List[FinePolicy]:
        """All policies, most recently created first."""

    def latest_active_policy(self, as_of: Optional[datetime] = None) -> Optional[FinePolicy]:
        for policy in self.list_policies():
            if not policy.is_active:
                continue
            if as_of is not None and policy.created_at is not None and policy.created_at > as_of:
                continue
            return policy
        return None

    # suggestions
    @abstractmethod
    def add_suggestion(self, suggestion: SuggestedBook) -> SuggestedBook: ...

    @abstractmethod
    def get_suggestion(self, suggestion_id: int) -> Optional[SuggestedBook]: ...

    @abstractmethod
    def update_suggestion(self, suggestion: SuggestedBook) -> SuggestedBook: ...

    @abstractmethod
    def delete_suggestion(self, suggestion_id: int) -> bool: ...

    @abstractmethod
    def list_suggestions(
        self, student_id: Optional[int] = None, status: Optional[SuggestionStatus] = None
    ) -> List[SuggestedBook]: ...

    @abstractmethod
    def transaction(self):
        """Context manager: writes inside commit together or are rolled back together."""

    def close(self) -> None:
        return None


class InMemoryRepository(LibraryRepository):
    """Dictionary-backed repository. Records are immutable, so snapshots are shallow copies."""

    _TABLES = ("books", "students", "librarians", "loans", "fines", "policies", "suggestions")

    def __init__(self) -> None:
        self._data: Dict[str, Dict[int, object]] = {name: {} for name in self._TABLES}
        self._next_id: Dict[str, int] = {name: 1 for name in self._TABLES}
        self._tx_depth = 0

    def _insert(self, table: str, record):
        new_id = self._next_id[table]
        self._next_id[table] += 1
        if hasattr(record, "created_at") and record.created_at is None:
            record = replace(record, id=new_id, created_at=datetime.now())
        else:
            record = replace(record, id=new_id)
        self._data[table][new_id] = record
        return record

    def _update(self, table: str, record):
        if record.id not in self._data[table]:
            raise KeyError(f"{table} record {record.id} does not exist")
        self._data[table][record.id] = record
        return record

    @contextmanager
    def transaction(self) -> Iterator["InMemoryRepository"]:
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return
        snapshot = ({k: dict(v) for k, v in self._data.items()}, dict(self._next_id))
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            self._data, self._next_id = snapshot
            raise
        finally:
            self._tx_depth = 0

    # books
    def add_book(self, book: Book) -> Book:
        return self._insert("books", book)

    def get_book(self, book_id: int) -> Optional[Book]:
        return self._data["books"].get(book_id)

    def find_book_by_isbn(self, isbn: str) -> Optional[Book]:
        return next((b for b in self._data["books"].values() if b.isbn and b.isbn == isbn), None)

    def update_book(self, book: Book) -> Book:
        return self._update("books", book)

    def list_books(self, active_only: bool = True, query: Optional[str] = None) -> List[Book]:
        books = [b for b in self._data["books"].values() if b.is_active or not active_only]
        if query:
            q = query.lower().strip()
            books = [
                b for b in books
                if q in b.title.lower() or q in b.author.lower() or q in (b.isbn or "").lower()
            ]
        return sorted(books, key=lambda b: b.title.lower())

    # members
    def add_student(self, student: Student) -> Student:
        return self._insert("students", student)

    def get_student(self, student_id: int) -> Optional[Student]:
        return self._data["students"].get(student_id)

    def update_student(self, student: Student) -> Student:
        return self._update("students", student)

    def list_students(self, active_only: bool = False) -> List[Student]:
        return [s for s in self._data["students"].values() if s.is_active or not active_only]

    def add_librarian(self, librarian: Librarian) -> Librarian:
        return self._insert("librarians", librarian)

    def get_librarian(self, librarian_id: int) -> Optional[Librarian]:
        return self._data["librarians"].get(librarian_id)

    # loans
    def add_loan(self, loan: Loan) -> Loan:
        return self._insert("loans", loan)

    def get_loan(self, loan_id: int) -> Optional[Loan]:
        return self._data["loans"].get(loan_id)

    def update_loan(self, loan: Loan) -> Loan:
        return self._update("loans", loan)

    def list_loans(
        self,
        status: LoanStatusFilter = None,
        student_id: Optional[int] = None,
        book_id: Optional[int] = None,
        due_before: Optional[date] = None,
    ) -> List[Loan]:
        statuses = _status_set(status)
        return [
            loan for loan in self._data["loans"].values()
            if (statuses is None or loan.status in statuses)
            and (student_id is None or loan.student_id == student_id)
            and (book_id is None or loan.book_id == book_id)
            and (due_before is None or loan.due_date < due_before)
        ]

    # fines
    def add_fine(self, fine: Fine) -> Fine:
        fine = self._insert("fines", fine)
        return self._update("fines", replace(fine, updated_at=fine.created_at))

    def get_fine(self, fine_id: int) -> Optional[Fine]:
        return self._data["fines"].get(fine_id)

    def update_fine(self, fine: Fine) -> Fine:
        return self._update("fines", fine)

    def list_fines(
        self,
        student_id: Optional[int] = None,
        status: Optional[FineStatus] = None,
        loan_id: Optional[int] = None,
    ) -> List[Fine]:
        fines = [
            f for f in self._data["fines"].values()
            if (student_id is None or f.student_id == student_id)
            and (status is None or f.status == status)
            and (loan_id is None or f.loan_id == loan_id)
        ]
        return sorted(fines, key=lambda f: f.id, reverse=True)

    # fine policies
    def add_policy(self, policy: FinePolicy) -> FinePolicy:
        return self._insert("policies", policy)

    def update_policy(self, policy: FinePolicy) -> FinePolicy:
        return self._update("policies", policy)

    def list_policies(self) -> List[FinePolicy]:
        return sorted(
            self._data["policies"].values(),
            key=lambda p: (p.created_at or datetime.min, p.id),
            reverse=True,
        )

    # suggestions
    def add_suggestion(self, suggestion: SuggestedBook) -> SuggestedBook:
        return self._insert("suggestions", suggestion)

    def get_suggestion(self, suggestion_id: int) -> Optional[SuggestedBook]:
        return self._data["suggestions"].get(suggestion_id)

    def update_suggestion(self, suggestion: SuggestedBook) -> SuggestedBook:
        return self._update("suggestions", suggestion)

    def delete_suggestion(self, suggestion_id: int) -> bool:
        return self._data["suggestions"].pop(suggestion_id, None) is not None

    def list_suggestions(
        self, student_id: Optional[int] = None, status: Optional[SuggestionStatus] = None
    ) -> List[SuggestedBook]:
        items = [
            s for s in self._data["suggestions"].values()
            if (student_id is None or s.student_id == student_id)
            and (status is None or s.status == status)
        ]
        return sorted(items, key=lambda s: s.id, reverse=True)
