import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from libsync.errors import ConflictError, InvalidStateError, NotFoundError
from libsync.ledger import InventoryLedger
from libsync.models import BookStatus, Reservation, ReservationStatus, to_iso

logger = logging.getLogger(__name__)


class ReservationManager:
    """Reservation lifecycle: Active -> Fulfilled | Cancelled, both terminal."""

    def __init__(self, ledger: InventoryLedger) -> None:
        self.ledger = ledger

    def reserve(self, conn: sqlite3.Connection, student_id: int, book_id: int, now: datetime) -> Reservation:
        book = self.ledger.get_book(conn, book_id)

        if book.active_reservation is not None and book.active_reservation.student_id == student_id:
            raise ConflictError(
                "Student already holds an active reservation for this book.",
                code="duplicate_reservation",
                book_id=book_id,
                student_id=student_id,
            )
        if book.open_loan is not None and book.open_loan.student_id == student_id:
            raise ConflictError(
                "Student already has this book on loan.",
                code="already_borrowed",
                book_id=book_id,
                student_id=student_id,
            )
        status = book.status
        if status == BookStatus.ISSUED:
            raise ConflictError("Book is already issued.", code="book_already_issued", book_id=book_id)
        if status == BookStatus.RESERVED:
            raise ConflictError("Book is already reserved.", code="book_reserved", book_id=book_id)

        try:
            cursor = conn.execute(
                "INSERT INTO reservations (book_id, student_id, reserved_at, status) VALUES (?, ?, ?, ?)",
                (book_id, student_id, to_iso(now), ReservationStatus.ACTIVE.value),
            )
        except sqlite3.IntegrityError as e:
            # partial unique index: another active reservation slipped in
            raise ConflictError("Book is already reserved.", code="book_reserved", book_id=book_id) from e
        return self.get(conn, cursor.lastrowid)

    def cancel(self, conn: sqlite3.Connection, reservation_id: int, now: datetime) -> Reservation:
        return self._close(conn, reservation_id, ReservationStatus.CANCELLED, now)

    def fulfill(self, conn: sqlite3.Connection, reservation_id: int, now: datetime) -> Reservation:
        """Mark the reservation fulfilled. Does not create the loan."""
        return self._close(conn, reservation_id, ReservationStatus.FULFILLED, now)

    def get(self, conn: sqlite3.Connection, reservation_id: int) -> Reservation:
        row = conn.execute("SELECT * FROM reservations WHERE id = ?", (reservation_id,)).fetchone()
        if row is None:
            raise NotFoundError(
                f"Reservation {reservation_id} not found.",
                code="reservation_not_found",
                reservation_id=reservation_id,
            )
        return Reservation.from_row(row)

    def list_reservations(self, conn: sqlite3.Connection, student_id: Optional[int] = None,
                          status: Optional[ReservationStatus] = None) -> List[Reservation]:
        query = "SELECT * FROM reservations WHERE 1 = 1"
        params: list = []
        if student_id is not None:
            query += " AND student_id = ?"
            params.append(student_id)
        if status is not None:
            query += " AND status = ?"
            params.append(ReservationStatus(status).value)
        query += " ORDER BY reserved_at DESC, id DESC"
        return [Reservation.from_row(row) for row in conn.execute(query, params)]

    def _close(self, conn: sqlite3.Connection, reservation_id: int, target: ReservationStatus,
               now: datetime) -> Reservation:
        reservation = self.get(conn, reservation_id)
        if not reservation.is_active:
            raise InvalidStateError(
                f"Reservation {reservation_id} is {reservation.status.value}, not Active.",
                code="reservation_not_active",
                reservation_id=reservation_id,
                status=reservation.status.value,
            )
        # compare-and-swap on the status column
        cursor = conn.execute(
            "UPDATE reservations SET status = ?, closed_at = ? WHERE id = ? AND status = ?",
            (target.value, to_iso(now), reservation_id, ReservationStatus.ACTIVE.value),
        )
        if cursor.rowcount != 1:
            raise InvalidStateError(
                f"Reservation {reservation_id} changed concurrently.",
                code="reservation_not_active",
                reservation_id=reservation_id,
            )
        return self.get(conn, reservation_id)
