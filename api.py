import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from book import Book
from config import settings
from errors import LibraryError
from fine import FineStatus
from library import Library
from loan import LoanStatus
from members import Student
from scheduler import build_scheduler, daily_fine_sweep_task
from suggestion import SuggestionStatus

logger = logging.getLogger(__name__)

library = Library(db_file=settings.database_file)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Start the nightly fine sweep alongside the API
    scheduler = None
    if settings.enable_scheduler:
        scheduler = build_scheduler([daily_fine_sweep_task(library)])
        scheduler.start()
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)

app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, debug=settings.debug, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Error mapping ---
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Server error", "code": "server_error"})

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")

def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the staff API key."""
    if api_key == settings.api_key:
        return api_key
    else:
        raise HTTPException(
            status_code=403,
            detail="Could not validate credentials",
        )

# --- Request models ---
class BookCreateModel(BaseModel):
    title: str
    author: str
    total_copies: int = Field(1, ge=1)
    isbn: Optional[str] = None
    category: Optional[str] = None
    publisher: Optional[str] = None
    edition: Optional[str] = None
    publication_year: Optional[int] = None
    location: Optional[str] = None
    description: Optional[str] = None

class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    total_copies: Optional[int] = Field(None, ge=1)
    isbn: Optional[str] = None
    category: Optional[str] = None
    publisher: Optional[str] = None
    edition: Optional[str] = None
    publication_year: Optional[int] = None
    location: Optional[str] = None
    description: Optional[str] = None

class StudentCreateModel(BaseModel):
    name: str
    email: str
    student_id: str
    semester: Optional[str] = None
    phone: Optional[str] = None
    max_books_allowed: int = Field(default_factory=lambda: settings.default_max_books, ge=0)

class IssueRequest(BaseModel):
    student_id: int = Field(..., ge=1)
    book_id: int = Field(..., ge=1)
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    librarian_id: Optional[int] = None
    notes: Optional[str] = None

class ReturnRequest(BaseModel):
    return_date: Optional[date] = None
    notes: Optional[str] = None

class LostRequest(BaseModel):
    notes: Optional[str] = None

class PayRequest(BaseModel):
    paid_date: Optional[date] = None

class WaiveRequest(BaseModel):
    notes: Optional[str] = ""

class PolicyRequest(BaseModel):
    rate_per_day: Decimal = Field(..., ge=0)
    grace_period_days: int = Field(0, ge=0)
    max_fine_amount: Optional[Decimal] = Field(None, ge=0)
    updated_by: Optional[int] = None

class SuggestionCreateModel(BaseModel):
    student_id: int
    title: str
    author: str
    reason: str
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    category: Optional[str] = None

class SuggestionReviewModel(BaseModel):
    status: SuggestionStatus
    librarian_id: Optional[int] = None
    review_notes: Optional[str] = None

# --- Health & stats ---
@app.get("/health")
def health():
    """Lightweight health endpoint for container checks."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "version": settings.app_version,
    }

@app.get("/stats")
def get_library_stats():
    return library.get_statistics()

# --- Books ---
@app.get("/books")
def get_books(q: Optional[str] = Query(None, description="Search in title, author or ISBN"),
              include_inactive: bool = False):
    return [b.to_dict() for b in library.list_books(query=q, include_inactive=include_inactive)]

@app.get("/books/{book_id}")
def get_book(book_id: int):
    return library.get_book(book_id).to_dict()

@app.post("/books", status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    book = library.add_book(Book(**payload.model_dump()))
    return {"message": "Book added successfully", "book": book.to_dict()}

@app.put("/books/{book_id}", dependencies=[Depends(get_api_key)])
def update_book(book_id: int, update: BookUpdateModel):
    book = library.update_book(book_id, **update.model_dump(exclude_none=True))
    return {"message": "Book updated successfully", "book": book.to_dict()}

@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: int):
    library.deactivate_book(book_id)
    return {"message": "Book deleted successfully"}

# --- Students ---
@app.post("/students", status_code=201, dependencies=[Depends(get_api_key)])
def register_student(payload: StudentCreateModel):
    student = library.register_student(Student(**payload.model_dump()))
    return student.to_dict()

@app.get("/students/{student_id}")
def get_student(student_id: int):
    return library.get_student(student_id).to_dict()

@app.get("/students/{student_id}/history")
def get_borrowing_history(student_id: int):
    return [l.to_dict() for l in library.circulation.borrowing_history(student_id)]

# --- Loans ---
@app.get("/loans")
def get_loans(status: Optional[LoanStatus] = None, student_id: Optional[int] = Query(None, ge=1),
              overdue_only: bool = False):
    loans = library.circulation.list_loans(status=status, student_id=student_id, overdue_only=overdue_only)
    return [l.to_dict() for l in loans]

@app.get("/loans/overdue", dependencies=[Depends(get_api_key)])
def get_overdue_loans():
    return [l.to_dict() for l in library.circulation.list_overdue()]

@app.get("/loans/{loan_id}")
def get_loan(loan_id: int):
    return library.circulation.get_loan(loan_id).to_dict()

@app.post("/loans/issue", status_code=201, dependencies=[Depends(get_api_key)])
def issue_book(payload: IssueRequest):
    loan = library.issue_book(
        payload.student_id,
        payload.book_id,
        payload.due_date,
        librarian_id=payload.librarian_id,
        notes=payload.notes,
        issue_date=payload.issue_date,
    )
    return {"message": "Book issued successfully", "loan": loan.to_dict()}

@app.put("/loans/{loan_id}/return", dependencies=[Depends(get_api_key)])
def return_book(loan_id: int, payload: Optional[ReturnRequest] = None):
    payload = payload or ReturnRequest()
    result = library.return_book(loan_id, payload.return_date, payload.notes)
    return {"message": "Book returned successfully", **result.to_dict()}

@app.post("/loans/{loan_id}/lost", dependencies=[Depends(get_api_key)])
def mark_loan_lost(loan_id: int, payload: Optional[LostRequest] = None):
    payload = payload or LostRequest()
    loan = library.circulation.mark_lost(loan_id, payload.notes)
    return {"message": "Loan marked as lost", "loan": loan.to_dict()}

# --- Fines ---
@app.get("/fines")
def get_fines(student_id: Optional[int] = Query(None, ge=1), status: Optional[FineStatus] = None,
              page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100)):
    fines, pagination = library.fines.list_fines(student_id=student_id, status=status, page=page, limit=limit)
    return {"fines": [f.to_dict() for f in fines], "pagination": pagination}

@app.post("/fines/generate", dependencies=[Depends(get_api_key)])
def generate_fines():
    report = library.generate_fines_for_overdue_books()
    return {"message": "Fines generated successfully", **report.to_dict()}

@app.post("/fines/{fine_id}/pay", dependencies=[Depends(get_api_key)])
def pay_fine(fine_id: int, payload: Optional[PayRequest] = None):
    payload = payload or PayRequest()
    fine = library.pay_fine(fine_id, payload.paid_date)
    return {"message": "Fine marked as paid successfully", "fine": fine.to_dict()}

@app.post("/fines/{fine_id}/waive", dependencies=[Depends(get_api_key)])
def waive_fine(fine_id: int, payload: Optional[WaiveRequest] = None):
    payload = payload or WaiveRequest()
    fine = library.waive_fine(fine_id, payload.notes)
    return {"message": "Fine waived successfully", "fine": fine.to_dict()}

@app.get("/fines/student/{student_id}")
def get_student_fines(student_id: int, status: Optional[FineStatus] = FineStatus.PENDING):
    fines = library.fines.get_student_fines(student_id, status)
    return {"fines": [f.to_dict() for f in fines], "summary": library.fines.student_fine_summary(student_id)}

# --- Fine policy ---
@app.get("/fine-policy")
def get_fine_policy():
    return library.policies.current().to_dict()

@app.post("/fine-policy", status_code=201, dependencies=[Depends(get_api_key)])
def set_fine_policy(payload: PolicyRequest):
    policy = library.policies.set_policy(
        payload.rate_per_day, payload.grace_period_days, payload.max_fine_amount, payload.updated_by
    )
    return policy.to_dict()

# --- Suggestions ---
@app.get("/suggestions")
def get_suggestions(student_id: Optional[int] = None, status: Optional[SuggestionStatus] = None):
    return [s.to_dict() for s in library.list_suggestions(student_id=student_id, status=status)]

@app.post("/suggestions", status_code=201)
def suggest_book(payload: SuggestionCreateModel):
    suggestion = library.suggest_book(**payload.model_dump())
    return {"message": "Book suggestion submitted successfully", "suggestion": suggestion.to_dict()}

@app.put("/suggestions/{suggestion_id}/review", dependencies=[Depends(get_api_key)])
def review_suggestion(suggestion_id: int, payload: SuggestionReviewModel):
    suggestion = library.review_suggestion(
        suggestion_id, payload.status, payload.librarian_id, payload.review_notes
    )
    return {"message": f"Suggestion {suggestion.status.value} successfully", "suggestion": suggestion.to_dict()}

@app.delete("/suggestions/{suggestion_id}", dependencies=[Depends(get_api_key)])
def delete_suggestion(suggestion_id: int):
    library.delete_suggestion(suggestion_id)
    return {"message": "Suggestion deleted successfully"}
