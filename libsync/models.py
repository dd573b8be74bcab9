"""Data models for the circulation core.

Books, loans, reservations and students are plain dataclasses loaded from
SQLite rows. Enum values are the exact strings persisted and returned to
clients, so ``BookStatus.ISSUED == "Issued"``.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class BookStatus(str, Enum):
    AVAILABLE = "Available"
    ISSUED = "Issued"
    RESERVED = "Reserved"


class LoanStatus(str, Enum):
    ISSUED = "Issued"
    RETURNED = "Returned"


class ReservationStatus(str, Enum):
    ACTIVE = "Active"
    FULFILLED = "Fulfilled"
    CANCELLED = "Cancelled"


class Condition(str, Enum):
    VERIFIED = "Verified"
    DAMAGED = "Damaged"
    LOST = "Lost"


class Outcome(str, Enum):
    UPDATED = "Updated"
    NOT_FOUND = "NotFound"
    ERROR = "Error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Loan:
    """One issuance of a book to a student."""

    id: int
    book_id: int
    student_id: int
    issue_date: datetime
    due_date: datetime
    status: LoanStatus = LoanStatus.ISSUED
    return_date: Optional[datetime] = None
    fine: int = 0
    issued_by: Optional[str] = None
    last_reminder_sent_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == LoanStatus.ISSUED

    def is_overdue(self, now: datetime) -> bool:
        return self.is_open and now > self.due_date

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "student_id": self.student_id,
            "issue_date": to_iso(self.issue_date),
            "due_date": to_iso(self.due_date),
            "return_date": to_iso(self.return_date),
            "status": self.status.value,
            "fine": self.fine,
            "issued_by": self.issued_by,
            "last_reminder_sent_at": to_iso(self.last_reminder_sent_at),
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Loan":
        return Loan(
            id=row["id"],
            book_id=row["book_id"],
            student_id=row["student_id"],
            issue_date=from_iso(row["issue_date"]),
            due_date=from_iso(row["due_date"]),
            status=LoanStatus(row["status"]),
            return_date=from_iso(row["return_date"]),
            fine=row["fine"] or 0,
            issued_by=row["issued_by"],
            last_reminder_sent_at=from_iso(row["last_reminder_sent_at"]),
        )


@dataclass
class Reservation:
    """A student's claim on one book record."""

    id: int
    book_id: int
    student_id: int
    reserved_at: datetime
    status: ReservationStatus = ReservationStatus.ACTIVE
    closed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "student_id": self.student_id,
            "reserved_at": to_iso(self.reserved_at),
            "status": self.status.value,
            "closed_at": to_iso(self.closed_at),
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Reservation":
        return Reservation(
            id=row["id"],
            book_id=row["book_id"],
            student_id=row["student_id"],
            reserved_at=from_iso(row["reserved_at"]),
            status=ReservationStatus(row["status"]),
            closed_at=from_iso(row["closed_at"]),
        )


@dataclass
class Book:
    """One physical copy in the catalog, with the claims currently on it.

    ``open_loan`` and ``active_reservation`` are loaded together with the
    row; the status is always derived from them, never stored.
    """

    id: int
    accession_number: str
    title: str
    author: str
    publisher: Optional[str] = None
    year_of_publishing: Optional[int] = None
    edition: Optional[str] = None
    category: Optional[str] = None
    price: Optional[int] = None
    verified: bool = False
    condition: Optional[Condition] = None
    last_verified_at: Optional[datetime] = None
    created_at: Optional[str] = None
    open_loan: Optional[Loan] = None
    active_reservation: Optional[Reservation] = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (Accession: {self.accession_number})"

    @property
    def status(self) -> BookStatus:
        from libsync.ledger import derive_status

        return derive_status(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "accession_number": self.accession_number,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "year_of_publishing": self.year_of_publishing,
            "edition": self.edition,
            "category": self.category,
            "price": self.price,
            "status": self.status.value,
            "verified": self.verified,
            "condition": self.condition.value if self.condition else None,
            "last_verified_at": to_iso(self.last_verified_at),
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Book":
        return Book(
            id=row["id"],
            accession_number=row["accession_number"],
            title=row["title"],
            author=row["author"],
            publisher=row["publisher"],
            year_of_publishing=row["year_of_publishing"],
            edition=row["edition"],
            category=row["category"],
            price=row["price"],
            verified=bool(row["verified"]),
            condition=Condition(row["condition"]) if row["condition"] else None,
            last_verified_at=from_iso(row["last_verified_at"]),
            created_at=row["created_at"],
        )


@dataclass
class Student:
    id: int
    name: str
    student_code: Optional[str] = None
    department: Optional[str] = None
    email: Optional[str] = None
    active_loan_count: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_code": self.student_code,
            "name": self.name,
            "department": self.department,
            "email": self.email,
            "active_loan_count": self.active_loan_count,
        }


@dataclass
class Policy:
    """Circulation policy, read fresh from the settings table on every use."""

    loan_duration_days: int
    fine_per_day: int
    max_active_loans_per_student: int
    overdue_reminder_template: str
    reservation_ready_template: str

    def to_dict(self) -> dict:
        return {
            "loan_duration_days": self.loan_duration_days,
            "fine_per_day": self.fine_per_day,
            "max_active_loans_per_student": self.max_active_loans_per_student,
            "overdue_reminder_template": self.overdue_reminder_template,
            "reservation_ready_template": self.reservation_ready_template,
        }


@dataclass
class StockVerificationEntry:
    """Outcome of reconciling one stock-check line. Audit only, owns no book state."""

    raw: str
    accession_number: Optional[str]
    condition: Condition
    outcome: Optional[Outcome] = None
    row: Optional[int] = None
    error: Optional[str] = None
    book_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "raw": self.raw,
            "accession_number": self.accession_number,
            "condition": self.condition.value,
            "outcome": self.outcome.value if self.outcome else None,
            "row": self.row,
            "error": self.error,
            "book_id": self.book_id,
        }


@dataclass
class ReconciliationResult:
    batch_id: str
    updated: List[StockVerificationEntry] = field(default_factory=list)
    not_found: List[StockVerificationEntry] = field(default_factory=list)
    errors: List[StockVerificationEntry] = field(default_factory=list)
    duplicates: int = 0

    @property
    def total_processed(self) -> int:
        return len(self.updated) + len(self.not_found) + len(self.errors)

    def summary(self) -> dict:
        return {
            "total_processed": self.total_processed,
            "updated": len(self.updated),
            "not_found": len(self.not_found),
            "errors": len(self.errors),
            "duplicates": self.duplicates,
        }

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "results": {
                "updated": [e.to_dict() for e in self.updated],
                "not_found": [e.to_dict() for e in self.not_found],
                "errors": [e.to_dict() for e in self.errors],
            },
            "summary": self.summary(),
        }


@dataclass
class StockImport:
    batch_id: str
    uploaded_at: datetime
    action: str = "import"
    source_name: Optional[str] = None
    uploaded_by: Optional[str] = None
    total_rows: int = 0
    updated_count: int = 0
    not_found_count: int = 0
    error_count: int = 0
    count: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "uploaded_at": to_iso(self.uploaded_at),
            "action": self.action,
            "source_name": self.source_name,
            "uploaded_by": self.uploaded_by,
            "total_rows": self.total_rows,
            "updated_count": self.updated_count,
            "not_found_count": self.not_found_count,
            "error_count": self.error_count,
            "count": self.count,
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "StockImport":
        return StockImport(
            batch_id=row["batch_id"],
            uploaded_at=from_iso(row["uploaded_at"]),
            action=row["action"],
            source_name=row["source_name"],
            uploaded_by=row["uploaded_by"],
            total_rows=row["total_rows"],
            updated_count=row["updated_count"],
            not_found_count=row["not_found_count"],
            error_count=row["error_count"],
            count=row["count"],
        )
