import logging
import math
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from libsync.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from libsync.ledger import InventoryLedger
from libsync.models import Loan, LoanStatus, from_iso, to_iso
from libsync.policy import PolicyStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


# ------------------------- Pure computations ------------------------- #
def compute_due_date(issue_date: datetime, loan_duration_days: int) -> datetime:
    return issue_date + timedelta(days=loan_duration_days)


def days_overdue(due_date: datetime, at: datetime) -> int:
    """Whole days late, rounded up. Zero on or before the due date."""
    late_seconds = (at - due_date).total_seconds()
    if late_seconds <= 0:
        return 0
    return math.ceil(late_seconds / SECONDS_PER_DAY)


def compute_fine(due_date: datetime, at: datetime, fine_per_day: int) -> int:
    return max(0, days_overdue(due_date, at) * fine_per_day)


def reminder_due(loan: Loan, now: datetime, daily_window_days: int, interval_days: int) -> bool:
    """Whether an overdue loan should get a reminder today.

    Daily for the first ``daily_window_days`` days late, then once every
    ``interval_days`` days since the previous reminder.
    """
    late = days_overdue(loan.due_date, now)
    if not loan.is_open or late == 0:
        return False
    if late <= daily_window_days:
        if loan.last_reminder_sent_at is None:
            return True
        return loan.last_reminder_sent_at.date() < now.date()
    if loan.last_reminder_sent_at is None:
        return True
    return days_overdue(loan.last_reminder_sent_at, now) >= interval_days


class LoanManager:
    """Loan lifecycle: Issued -> Returned (terminal), due dates and fines."""

    def __init__(self, ledger: InventoryLedger, policies: PolicyStore) -> None:
        self.ledger = ledger
        self.policies = policies

    # ------------------------- Transitions ------------------------- #
    def issue(self, conn: sqlite3.Connection, student_id: int, book_id: int, now: datetime,
              due_date: Optional[datetime] = None, issued_by: Optional[str] = None) -> Loan:
        """Create an Issued loan. Must run inside the caller's write transaction."""
        book = self.ledger.get_book(conn, book_id)
        if book.open_loan is not None:
            raise ConflictError(
                "Book is already issued.",
                code="book_already_issued",
                book_id=book_id,
                loan_id=book.open_loan.id,
            )

        policy = self.policies.get(conn)
        active = self.active_count(conn, student_id)
        if active >= policy.max_active_loans_per_student:
            raise ConflictError(
                f"Student has reached the {policy.max_active_loans_per_student}-book limit.",
                code="loan_limit_reached",
                student_id=student_id,
                active_loans=active,
            )

        if due_date is None:
            due_date = compute_due_date(now, policy.loan_duration_days)
        else:
            if due_date.tzinfo is None:
                due_date = due_date.replace(tzinfo=timezone.utc)
            if due_date < now:
                raise ValidationError(
                    "Due date cannot be before the issue date.",
                    code="invalid_due_date",
                    due_date=to_iso(due_date),
                )

        try:
            cursor = conn.execute(
                """
                INSERT INTO loans (book_id, student_id, issue_date, due_date, status, fine, issued_by)
                VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                (book_id, student_id, to_iso(now), to_iso(due_date), LoanStatus.ISSUED.value, issued_by),
            )
        except sqlite3.IntegrityError as e:
            # partial unique index on open loans per book
            raise ConflictError("Book is already issued.", code="book_already_issued", book_id=book_id) from e
        return self.get(conn, cursor.lastrowid)

    def return_by_id(self, conn: sqlite3.Connection, loan_id: int, now: datetime) -> Loan:
        loan = self.get(conn, loan_id)
        if not loan.is_open:
            raise NotFoundError(
                f"No open loan with id {loan_id}.",
                code="loan_not_found",
                loan_id=loan_id,
            )
        return self._close(conn, loan, now)

    def return_by_book(self, conn: sqlite3.Connection, raw_accession: str, now: datetime) -> Loan:
        book = self.ledger.require_by_accession(conn, raw_accession)
        if book.open_loan is None:
            raise NotFoundError(
                f"No open loan for accession number {book.accession_number}.",
                code="loan_not_found",
                accession_number=book.accession_number,
            )
        return self._close(conn, book.open_loan, now)

    def mark_reminded(self, conn: sqlite3.Connection, loan_id: int, now: datetime) -> None:
        conn.execute("UPDATE loans SET last_reminder_sent_at = ? WHERE id = ?", (to_iso(now), loan_id))

    # ------------------------- Fines ------------------------- #
    def current_fine(self, loan: Loan, now: datetime, fine_per_day: int) -> int:
        """Fine accrued so far for an open loan; returned loans keep their frozen fine."""
        if not loan.is_open:
            return loan.fine
        return compute_fine(loan.due_date, now, fine_per_day)

    def with_current_fines(self, conn: sqlite3.Connection, loans: List[Loan], now: datetime) -> List[Loan]:
        fine_per_day = self.policies.get(conn).fine_per_day
        for loan in loans:
            loan.fine = self.current_fine(loan, now, fine_per_day)
        return loans

    # ------------------------- Queries ------------------------- #
    def get(self, conn: sqlite3.Connection, loan_id: int) -> Loan:
        row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Loan {loan_id} not found.", code="loan_not_found", loan_id=loan_id)
        return Loan.from_row(row)

    def active_count(self, conn: sqlite3.Connection, student_id: int) -> int:
        return conn.execute(
            "SELECT COUNT(*) FROM loans WHERE student_id = ? AND status = ?",
            (student_id, LoanStatus.ISSUED.value),
        ).fetchone()[0]

    def list_loans(self, conn: sqlite3.Connection, student_id: Optional[int] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        query = "SELECT * FROM loans WHERE 1 = 1"
        params: list = []
        if student_id is not None:
            query += " AND student_id = ?"
            params.append(student_id)
        if status is not None:
            query += " AND status = ?"
            params.append(LoanStatus(status).value)
        query += " ORDER BY issue_date DESC, id DESC"
        return [Loan.from_row(row) for row in conn.execute(query, params)]

    def overdue(self, conn: sqlite3.Connection, now: datetime) -> List[Loan]:
        open_loans = self.list_loans(conn, status=LoanStatus.ISSUED)
        return sorted((loan for loan in open_loans if loan.is_overdue(now)), key=lambda loan: loan.due_date)

    # ------------------------- Helpers ------------------------- #
    def _close(self, conn: sqlite3.Connection, loan: Loan, now: datetime) -> Loan:
        fine = compute_fine(loan.due_date, now, self.policies.get(conn).fine_per_day)
        cursor = conn.execute(
            "UPDATE loans SET status = ?, return_date = ?, fine = ? WHERE id = ? AND status = ?",
            (LoanStatus.RETURNED.value, to_iso(now), fine, loan.id, LoanStatus.ISSUED.value),
        )
        if cursor.rowcount != 1:
            raise InvalidStateError(
                f"Loan {loan.id} changed concurrently.", code="loan_not_open", loan_id=loan.id
            )
        return self.get(conn, loan.id)


def parse_due_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a client-supplied ISO due date; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    try:
        return from_iso(value)
    except ValueError as e:
        raise ValidationError(f"Invalid due date: {value!r}", code="invalid_due_date") from e
