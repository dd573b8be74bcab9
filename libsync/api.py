from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from libsync import database
from libsync.circulation import Circulation
from libsync.config import settings
from libsync.errors import (
    CirculationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from libsync.loans import parse_due_date
from libsync.models import BookStatus, LoanStatus, ReservationStatus, to_iso, utcnow

app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_circulation() -> Circulation:
    """Process-wide facade. Tests override this dependency."""
    return Circulation()


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_actor_id(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Acting user, supplied by the authenticating gateway."""
    return x_actor_id


# --- Error mapping ---
_STATUS_CODES = (
    (NotFoundError, 404),
    (ValidationError, 422),
    (InvalidStateError, 409),
    (ConflictError, 409),
)


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    status_code = next((code for kind, code in _STATUS_CODES if isinstance(exc, kind)), 400)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# --- Models ---
class BookCreateModel(BaseModel):
    accession_number: str
    title: str
    author: str
    publisher: str | None = None
    year_of_publishing: int | None = None
    edition: str | None = None
    category: str | None = None
    price: int | None = None


class BookModel(BaseModel):
    id: int
    accession_number: str
    title: str
    author: str
    publisher: str | None = None
    year_of_publishing: int | None = None
    edition: str | None = None
    category: str | None = None
    price: int | None = None
    status: BookStatus
    verified: bool
    condition: str | None = None
    last_verified_at: str | None = None
    created_at: str | None = None


class StudentCreateModel(BaseModel):
    name: str
    student_code: str | None = None
    department: str | None = None
    email: str | None = None


class StudentModel(BaseModel):
    id: int
    name: str
    student_code: str | None = None
    department: str | None = None
    email: str | None = None
    active_loan_count: int


class IssueRequest(BaseModel):
    student_id: int
    book_id: int | None = Field(default=None, description="Book id, or give accession_number")
    accession_number: str | None = Field(default=None, description="Raw accession number")
    due_date: str | None = Field(default=None, description="ISO date; defaults to the loan duration setting")


class ReturnByAccessionRequest(BaseModel):
    accession_number: str


class LoanModel(BaseModel):
    id: int
    book_id: int
    student_id: int
    issue_date: str
    due_date: str
    return_date: str | None = None
    status: LoanStatus
    fine: int
    issued_by: str | None = None
    last_reminder_sent_at: str | None = None


class OverdueLoanModel(LoanModel):
    days_overdue: int


class ReserveRequest(BaseModel):
    student_id: int
    book_id: int


class FulfillRequest(BaseModel):
    due_date: str | None = None


class ReservationModel(BaseModel):
    id: int
    book_id: int
    student_id: int
    reserved_at: str
    status: ReservationStatus
    closed_at: str | None = None


class StockEntryModel(BaseModel):
    accession_number: str | None = None
    status: str | None = None


class StockImportRequest(BaseModel):
    entries: List[StockEntryModel]
    source_name: str | None = None


class StockBulkRequest(BaseModel):
    accession_numbers: List[str]
    status: str


class AccessionListRequest(BaseModel):
    accession_numbers: List[str]


class SettingsUpdateModel(BaseModel):
    loan_duration_days: int | None = None
    fine_per_day: int | None = None
    max_active_loans_per_student: int | None = None
    overdue_reminder_template: str | None = None
    reservation_ready_template: str | None = None


class SettingsModel(BaseModel):
    loan_duration_days: int
    fine_per_day: int
    max_active_loans_per_student: int
    overdue_reminder_template: str
    reservation_ready_template: str


# --- Health ---
@app.get("/health")
def health(circulation: Circulation = Depends(get_circulation)):
    """Lightweight health check with a quick database round-trip."""
    db_ok = True
    try:
        with database.read_connection(circulation.db_file) as conn:
            conn.execute("SELECT 1")
    except Exception:
        db_ok = False
    return {"status": "healthy" if db_ok else "degraded", "timestamp": to_iso(utcnow()),
            "db": db_ok}


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def list_books(status: Optional[BookStatus] = Query(default=None),
               circulation: Circulation = Depends(get_circulation)):
    return [b.to_dict() for b in circulation.list_books(status)]


@app.post("/books", response_model=BookModel, status_code=201)
def add_book(payload: BookCreateModel, api_key: str = Depends(get_api_key),
             actor_id: Optional[str] = Depends(get_actor_id),
             circulation: Circulation = Depends(get_circulation)):
    data = payload.model_dump()
    book = circulation.add_book(data.pop("accession_number"), data.pop("title"), data.pop("author"),
                                actor_id=actor_id, **data)
    return book.to_dict()


@app.get("/books/count-to-reset")
def count_to_reset(api_key: str = Depends(get_api_key), circulation: Circulation = Depends(get_circulation)):
    return {"count": circulation.count_to_reset()}


@app.put("/books/bulk-reset")
def bulk_reset(payload: AccessionListRequest, api_key: str = Depends(get_api_key),
               actor_id: Optional[str] = Depends(get_actor_id),
               circulation: Circulation = Depends(get_circulation)):
    return {"count": circulation.bulk_reset_verification(payload.accession_numbers, actor_id=actor_id)}


@app.put("/books/reset-all")
def reset_all(api_key: str = Depends(get_api_key), actor_id: Optional[str] = Depends(get_actor_id),
              circulation: Circulation = Depends(get_circulation)):
    return {"count": circulation.reset_all_verification(actor_id=actor_id)}


@app.get("/books/search-accession/{partial}", response_model=List[BookModel])
def search_accession(partial: str, circulation: Circulation = Depends(get_circulation)):
    return [b.to_dict() for b in circulation.search_accession(partial)]


@app.get("/books/accession/{accession_number}", response_model=BookModel)
def get_book_by_accession(accession_number: str, circulation: Circulation = Depends(get_circulation)):
    return circulation.find_book(accession_number).to_dict()


@app.put("/books/accession/{accession_number}/reset-verification", response_model=BookModel)
def reset_verification(accession_number: str, api_key: str = Depends(get_api_key),
                       actor_id: Optional[str] = Depends(get_actor_id),
                       circulation: Circulation = Depends(get_circulation)):
    return circulation.reset_verification(accession_number, actor_id=actor_id).to_dict()


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int, circulation: Circulation = Depends(get_circulation)):
    return circulation.get_book(book_id).to_dict()


# --- Students ---
@app.get("/students", response_model=List[StudentModel])
def list_students(circulation: Circulation = Depends(get_circulation)):
    return [s.to_dict() for s in circulation.list_students()]


@app.post("/students", response_model=StudentModel, status_code=201)
def add_student(payload: StudentCreateModel, api_key: str = Depends(get_api_key),
                actor_id: Optional[str] = Depends(get_actor_id),
                circulation: Circulation = Depends(get_circulation)):
    student = circulation.add_student(payload.name, payload.student_code, payload.department, payload.email,
                                      actor_id=actor_id)
    return student.to_dict()


@app.get("/students/code/{student_code}", response_model=StudentModel)
def get_student_by_code(student_code: str, circulation: Circulation = Depends(get_circulation)):
    return circulation.find_student(student_code).to_dict()


@app.get("/students/{student_id}", response_model=StudentModel)
def get_student(student_id: int, circulation: Circulation = Depends(get_circulation)):
    return circulation.get_student(student_id).to_dict()


# --- Loans ---
@app.get("/loans", response_model=List[LoanModel])
def list_loans(student_id: Optional[int] = None, status: Optional[LoanStatus] = None,
               circulation: Circulation = Depends(get_circulation)):
    return [loan.to_dict() for loan in circulation.list_loans(student_id, status)]


@app.get("/loans/overdue", response_model=List[OverdueLoanModel])
def list_overdue(circulation: Circulation = Depends(get_circulation)):
    return circulation.list_overdue()


@app.post("/loans/issue", response_model=LoanModel, status_code=201)
def issue_book(payload: IssueRequest, api_key: str = Depends(get_api_key),
               actor_id: Optional[str] = Depends(get_actor_id),
               circulation: Circulation = Depends(get_circulation)):
    due_date = parse_due_date(payload.due_date)
    if payload.book_id is not None:
        loan = circulation.issue(payload.student_id, payload.book_id, actor_id=actor_id, due_date=due_date)
    elif payload.accession_number:
        loan = circulation.issue_by_accession(payload.student_id, payload.accession_number,
                                              actor_id=actor_id, due_date=due_date)
    else:
        raise ValidationError("Provide book_id or accession_number.", code="missing_book")
    return loan.to_dict()


@app.post("/loans/reminders")
def send_overdue_reminders(api_key: str = Depends(get_api_key), actor_id: Optional[str] = Depends(get_actor_id),
                           circulation: Circulation = Depends(get_circulation)):
    return {"sent": circulation.send_overdue_reminders(actor_id=actor_id)}


@app.post("/loans/return-by-accession", response_model=LoanModel)
def return_by_accession(payload: ReturnByAccessionRequest, api_key: str = Depends(get_api_key),
                        actor_id: Optional[str] = Depends(get_actor_id),
                        circulation: Circulation = Depends(get_circulation)):
    return circulation.return_by_book(payload.accession_number, actor_id=actor_id).to_dict()


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: int, circulation: Circulation = Depends(get_circulation)):
    return circulation.get_loan(loan_id).to_dict()


@app.put("/loans/{loan_id}/return", response_model=LoanModel)
def return_book(loan_id: int, api_key: str = Depends(get_api_key), actor_id: Optional[str] = Depends(get_actor_id),
                circulation: Circulation = Depends(get_circulation)):
    return circulation.return_loan(loan_id, actor_id=actor_id).to_dict()


@app.post("/loans/{loan_id}/reminder")
def send_reminder(loan_id: int, api_key: str = Depends(get_api_key), actor_id: Optional[str] = Depends(get_actor_id),
                  circulation: Circulation = Depends(get_circulation)):
    return {"sent": circulation.send_reminder(loan_id, actor_id=actor_id)}


# --- Reservations ---
@app.get("/reservations", response_model=List[ReservationModel])
def list_reservations(student_id: Optional[int] = None, status: Optional[ReservationStatus] = None,
                      circulation: Circulation = Depends(get_circulation)):
    return [r.to_dict() for r in circulation.list_reservations(student_id, status)]


@app.post("/reservations/reserve", response_model=ReservationModel, status_code=201)
def reserve_book(payload: ReserveRequest, api_key: str = Depends(get_api_key),
                 actor_id: Optional[str] = Depends(get_actor_id),
                 circulation: Circulation = Depends(get_circulation)):
    return circulation.reserve(payload.student_id, payload.book_id, actor_id=actor_id).to_dict()


@app.put("/reservations/{reservation_id}/cancel", response_model=ReservationModel)
def cancel_reservation(reservation_id: int, api_key: str = Depends(get_api_key),
                       actor_id: Optional[str] = Depends(get_actor_id),
                       circulation: Circulation = Depends(get_circulation)):
    return circulation.cancel(reservation_id, actor_id=actor_id).to_dict()


@app.put("/reservations/{reservation_id}/fulfill", response_model=LoanModel)
def fulfill_reservation(reservation_id: int, payload: Optional[FulfillRequest] = None,
                        api_key: str = Depends(get_api_key), actor_id: Optional[str] = Depends(get_actor_id),
                        circulation: Circulation = Depends(get_circulation)):
    due_date = parse_due_date(payload.due_date) if payload else None
    return circulation.fulfill(reservation_id, actor_id=actor_id, due_date=due_date).to_dict()


# --- Stock verification ---
def _entries(payload: StockImportRequest) -> list:
    return [(e.accession_number or "", e.status) for e in payload.entries]


@app.post("/stock/preview")
def preview_stock(payload: StockImportRequest, api_key: str = Depends(get_api_key),
                  circulation: Circulation = Depends(get_circulation)):
    return circulation.preview_stock(_entries(payload))


@app.post("/stock/import")
def import_stock(payload: StockImportRequest, api_key: str = Depends(get_api_key),
                 actor_id: Optional[str] = Depends(get_actor_id),
                 circulation: Circulation = Depends(get_circulation)) -> Dict[str, Any]:
    if not payload.entries:
        raise ValidationError("No data found in import.", code="empty_import")
    result = circulation.reconcile(_entries(payload), actor_id=actor_id, source_name=payload.source_name)
    return dict(result.to_dict(), message="Import complete")


@app.post("/stock/import/bulk")
def import_stock_bulk(payload: StockBulkRequest, api_key: str = Depends(get_api_key),
                      actor_id: Optional[str] = Depends(get_actor_id),
                      circulation: Circulation = Depends(get_circulation)) -> Dict[str, Any]:
    if not payload.accession_numbers:
        raise ValidationError("Accession numbers array is required.", code="empty_import")
    result = circulation.reconcile_keys(payload.accession_numbers, payload.status, actor_id=actor_id)
    return dict(result.to_dict(), message="Bulk import complete")


@app.post("/stock/import/single")
def import_stock_single(payload: StockEntryModel, api_key: str = Depends(get_api_key),
                        actor_id: Optional[str] = Depends(get_actor_id),
                        circulation: Circulation = Depends(get_circulation)):
    if not payload.accession_number:
        raise ValidationError("Accession number is required.", code="invalid_accession")
    return circulation.verify_single(payload.accession_number, payload.status, actor_id=actor_id).to_dict()


@app.get("/stock/imports/latest")
def latest_import(api_key: str = Depends(get_api_key), circulation: Circulation = Depends(get_circulation)):
    latest = circulation.latest_import()
    if latest is None:
        return {"message": "No stock imports found", "data": None}
    return {"message": "Latest stock import retrieved", "data": latest.to_dict()}


# --- Settings & stats ---
@app.get("/settings", response_model=SettingsModel)
def get_settings(circulation: Circulation = Depends(get_circulation)):
    return circulation.get_settings().to_dict()


@app.put("/settings", response_model=SettingsModel)
def update_settings(payload: SettingsUpdateModel, api_key: str = Depends(get_api_key),
                    actor_id: Optional[str] = Depends(get_actor_id),
                    circulation: Circulation = Depends(get_circulation)):
    return circulation.update_settings(actor_id=actor_id, **payload.model_dump(exclude_none=True)).to_dict()


@app.get("/stats")
def stats(circulation: Circulation = Depends(get_circulation)):
    return circulation.stats()
