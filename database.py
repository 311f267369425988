import logging
import os
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from dotenv import load_dotenv

from book import Book
from fine import Fine, FinePolicy, FineStatus
from loan import Loan
from members import Librarian, Student
from repository import LibraryRepository, LoanStatusFilter, _status_set
from suggestion import SuggestedBook, SuggestionStatus

# Make sure .env is loaded before the environment is read below.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override)
# 2) per-process temp file
DATABASE_FILE = (
    os.environ.get("LIBRARY_DB_FILE")
    or os.path.join(tempfile.gettempdir(), f"library_{os.getpid()}.db")
)


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database with dict-like rows."""
    conn = sqlite3.connect(db_file or DATABASE_FILE)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the required tables and indexes if they do not exist."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT UNIQUE,
                category TEXT,
                publisher TEXT,
                edition TEXT,
                publication_year INTEGER,
                location TEXT,
                description TEXT,
                total_copies INTEGER NOT NULL DEFAULT 1,
                available_copies INTEGER NOT NULL DEFAULT 1,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT,
                CHECK (available_copies >= 0 AND available_copies <= total_copies)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS students (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                student_id TEXT NOT NULL UNIQUE,
                semester TEXT,
                phone TEXT,
                max_books_allowed INTEGER NOT NULL DEFAULT 5,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS librarians (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                employee_id TEXT NOT NULL UNIQUE,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS issued_books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                student_id INTEGER NOT NULL REFERENCES students(id),
                book_id INTEGER NOT NULL REFERENCES books(id),
                librarian_id INTEGER REFERENCES librarians(id),
                issue_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'issued'
                    CHECK (status IN ('issued', 'overdue', 'returned', 'lost')),
                notes TEXT,
                CHECK ((return_date IS NULL) = (status != 'returned'))
            )
        """)

        # Fines keep a plain reference to their loan: history survives loan cleanup.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS fines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                loan_id INTEGER NOT NULL,
                student_id INTEGER NOT NULL REFERENCES students(id),
                amount TEXT NOT NULL DEFAULT '0.00',
                days_overdue INTEGER NOT NULL DEFAULT 0,
                fine_rate_per_day TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'paid', 'waived')),
                paid_date TEXT,
                notes TEXT,
                created_at TEXT,
                updated_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS fine_configs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rate_per_day TEXT NOT NULL,
                grace_period_days INTEGER NOT NULL DEFAULT 0,
                max_fine_amount TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                updated_by INTEGER REFERENCES librarians(id),
                created_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS suggested_books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                student_id INTEGER NOT NULL REFERENCES students(id),
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                reason TEXT NOT NULL,
                isbn TEXT,
                publisher TEXT,
                category TEXT,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'approved', 'rejected')),
                reviewed_by INTEGER REFERENCES librarians(id),
                review_date TEXT,
                review_notes TEXT,
                created_at TEXT
            )
        """)

        # At most one active loan per (student, book) and one pending fine per loan
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_issued_books_active_pair
            ON issued_books(student_id, book_id) WHERE status IN ('issued', 'overdue')
        """)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_fines_pending_loan
            ON fines(loan_id) WHERE status = 'pending'
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_issued_books_status_due ON issued_books(status, due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_issued_books_student ON issued_books(student_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_fines_student_status ON fines(student_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_fine_configs_created_at ON fine_configs(created_at)")

        conn.commit()
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)


def _to_db(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    return value


class SQLiteRepository(LibraryRepository):
    """LibraryRepository on top of sqlite3.

    Outside a transaction every call opens its own connection and commits.
    Inside ``transaction()`` all calls made by the same thread share one
    connection opened with ``BEGIN IMMEDIATE`` so concurrent writers queue
    behind it. Transaction state is per thread: the API's request threads and
    the scheduler thread each get their own connection.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or DATABASE_FILE
        self._local = threading.local()
        initialize_database(self.db_file)

    @property
    def _tx_conn(self) -> Optional[sqlite3.Connection]:
        return getattr(self._local, "conn", None)

    # ------------------------- Connection handling ------------------------- #
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._tx_conn is not None:
            yield self._tx_conn
            return
        conn = get_db_connection(self.db_file)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator["SQLiteRepository"]:
        if self._tx_conn is not None:
            self._local.depth += 1
            try:
                yield self
            finally:
                self._local.depth -= 1
            return
        conn = sqlite3.connect(self.db_file, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("BEGIN IMMEDIATE")
        self._local.conn = conn
        self._local.depth = 0
        try:
            yield self
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            self._local.conn = None
            conn.close()

    def _insert(self, table: str, values: Dict[str, Any]) -> int:
        values = {k: v for k, v in values.items() if k != "id"}
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with self._connection() as conn:
            cursor = conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                [_to_db(v) for v in values.values()],
            )
            return cursor.lastrowid

    def _update(self, table: str, record_id: int, values: Dict[str, Any]) -> None:
        values = {k: v for k, v in values.items() if k != "id"}
        assignments = ", ".join(f"{k} = ?" for k in values)
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                [_to_db(v) for v in values.values()] + [record_id],
            )
            if cursor.rowcount == 0:
                raise KeyError(f"{table} record {record_id} does not exist")

    def _select(self, sql: str, params: List[Any] = ()) -> List[Dict[str, Any]]:
        with self._connection() as conn:
            return [dict(row) for row in conn.execute(sql, [_to_db(p) for p in params]).fetchall()]

    def _select_one(self, sql: str, params: List[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = self._select(sql, params)
        return rows[0] if rows else None

    # ------------------------- Books ------------------------- #
    def add_book(self, book: Book) -> Book:
        values = book.to_dict()
        values["created_at"] = book.created_at or datetime.now()
        new_id = self._insert("books", values)
        return self.get_book(new_id)

    def get_book(self, book_id: int) -> Optional[Book]:
        row = self._select_one("SELECT * FROM books WHERE id = ?", [book_id])
        return Book.from_dict(row) if row else None

    def find_book_by_isbn(self, isbn: str) -> Optional[Book]:
        row = self._select_one("SELECT * FROM books WHERE isbn = ?", [isbn])
        return Book.from_dict(row) if row else None

    def update_book(self, book: Book) -> Book:
        self._update("books", book.id, book.to_dict())
        return book

    def list_books(self, active_only: bool = True, query: Optional[str] = None) -> List[Book]:
        sql = "SELECT * FROM books WHERE 1 = 1"
        params: List[Any] = []
        if active_only:
            sql += " AND is_active = 1"
        if query:
            like = f"%{query.strip()}%"
            sql += " AND (title LIKE ? OR author LIKE ? OR isbn LIKE ?)"
            params += [like, like, like]
        sql += " ORDER BY title COLLATE NOCASE"
        return [Book.from_dict(row) for row in self._select(sql, params)]

    # ------------------------- Members ------------------------- #
    def add_student(self, student: Student) -> Student:
        new_id = self._insert("students", student.to_dict())
        return self.get_student(new_id)

    def get_student(self, student_id: int) -> Optional[Student]:
        row = self._select_one("SELECT * FROM students WHERE id = ?", [student_id])
        return Student.from_dict(row) if row else None

    def update_student(self, student: Student) -> Student:
        self._update("students", student.id, student.to_dict())
        return student

    def list_students(self, active_only: bool = False) -> List[Student]:
        sql = "SELECT * FROM students"
        if active_only:
            sql += " WHERE is_active = 1"
        return [Student.from_dict(row) for row in self._select(sql + " ORDER BY id")]

    def add_librarian(self, librarian: Librarian) -> Librarian:
        new_id = self._insert("librarians", librarian.to_dict())
        return self.get_librarian(new_id)

    def get_librarian(self, librarian_id: int) -> Optional[Librarian]:
        row = self._select_one("SELECT * FROM librarians WHERE id = ?", [librarian_id])
        return Librarian.from_dict(row) if row else None

    # ------------------------- Loans ------------------------- #
    def add_loan(self, loan: Loan) -> Loan:
        new_id = self._insert("issued_books", loan.to_dict())
        return self.get_loan(new_id)

    def get_loan(self, loan_id: int) -> Optional[Loan]:
        row = self._select_one("SELECT * FROM issued_books WHERE id = ?", [loan_id])
        return Loan.from_dict(row) if row else None

    def update_loan(self, loan: Loan) -> Loan:
        self._update("issued_books", loan.id, loan.to_dict())
        return loan

    def list_loans(
        self,
        status: LoanStatusFilter = None,
        student_id: Optional[int] = None,
        book_id: Optional[int] = None,
        due_before: Optional[date] = None,
    ) -> List[Loan]:
        sql = "SELECT * FROM issued_books WHERE 1 = 1"
        params: List[Any] = []
        statuses = _status_set(status)
        if statuses is not None:
            if not statuses:
                return []
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params += list(statuses)
        if student_id is not None:
            sql += " AND student_id = ?"
            params.append(student_id)
        if book_id is not None:
            sql += " AND book_id = ?"
            params.append(book_id)
        if due_before is not None:
            sql += " AND due_date < ?"
            params.append(due_before)
        sql += " ORDER BY id"
        return [Loan.from_dict(row) for row in self._select(sql, params)]

    # ------------------------- Fines ------------------------- #
    def add_fine(self, fine: Fine) -> Fine:
        values = fine.to_dict()
        now = datetime.now()
        values["created_at"] = fine.created_at or now
        values["updated_at"] = fine.updated_at or now
        new_id = self._insert("fines", values)
        return self.get_fine(new_id)

    def get_fine(self, fine_id: int) -> Optional[Fine]:
        row = self._select_one("SELECT * FROM fines WHERE id = ?", [fine_id])
        return Fine.from_dict(row) if row else None

    def update_fine(self, fine: Fine) -> Fine:
        self._update("fines", fine.id, fine.to_dict())
        return fine

    def list_fines(
        self,
        student_id: Optional[int] = None,
        status: Optional[FineStatus] = None,
        loan_id: Optional[int] = None,
    ) -> List[Fine]:
        sql = "SELECT * FROM fines WHERE 1 = 1"
        params: List[Any] = []
        if student_id is not None:
            sql += " AND student_id = ?"
            params.append(student_id)
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        if loan_id is not None:
            sql += " AND loan_id = ?"
            params.append(loan_id)
        sql += " ORDER BY id DESC"
        return [Fine.from_dict(row) for row in self._select(sql, params)]

    # ------------------------- Fine policies ------------------------- #
    def add_policy(self, policy: FinePolicy) -> FinePolicy:
        values = policy.to_dict()
        values["created_at"] = policy.created_at or datetime.now()
        new_id = self._insert("fine_configs", values)
        row = self._select_one("SELECT * FROM fine_configs WHERE id = ?", [new_id])
        return FinePolicy.from_dict(row)

    def update_policy(self, policy: FinePolicy) -> FinePolicy:
        self._update("fine_configs", policy.id, policy.to_dict())
        return policy

    def list_policies(self) -> List[FinePolicy]:
        rows = self._select("SELECT * FROM fine_configs ORDER BY created_at DESC, id DESC")
        return [FinePolicy.from_dict(row) for row in rows]

    # ------------------------- Suggestions ------------------------- #
    def add_suggestion(self, suggestion: SuggestedBook) -> SuggestedBook:
        values = suggestion.to_dict()
        values["created_at"] = suggestion.created_at or datetime.now()
        new_id = self._insert("suggested_books", values)
        return self.get_suggestion(new_id)

    def get_suggestion(self, suggestion_id: int) -> Optional[SuggestedBook]:
        row = self._select_one("SELECT * FROM suggested_books WHERE id = ?", [suggestion_id])
        return SuggestedBook.from_dict(row) if row else None

    def update_suggestion(self, suggestion: SuggestedBook) -> SuggestedBook:
        self._update("suggested_books", suggestion.id, suggestion.to_dict())
        return suggestion

    def delete_suggestion(self, suggestion_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM suggested_books WHERE id = ?", (suggestion_id,))
            return cursor.rowcount > 0

    def list_suggestions(
        self, student_id: Optional[int] = None, status: Optional[SuggestionStatus] = None
    ) -> List[SuggestedBook]:
        sql = "SELECT * FROM suggested_books WHERE 1 = 1"
        params: List[Any] = []
        if student_id is not None:
            sql += " AND student_id = ?"
            params.append(student_id)
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY id DESC"
        return [SuggestedBook.from_dict(row) for row in self._select(sql, params)]
