import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from libsync import accession
from libsync.errors import ConflictError, NotFoundError, ValidationError
from libsync.models import (
    Book,
    BookStatus,
    Condition,
    Loan,
    LoanStatus,
    Reservation,
    ReservationStatus,
    from_iso,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

_CATALOG_FIELDS = ("publisher", "year_of_publishing", "edition", "category", "price")


def derive_status(book: Book) -> BookStatus:
    """Issued if an open loan exists, else Reserved if an active reservation exists, else Available."""
    if book.open_loan is not None and book.open_loan.is_open:
        return BookStatus.ISSUED
    if book.active_reservation is not None and book.active_reservation.is_active:
        return BookStatus.RESERVED
    return BookStatus.AVAILABLE


class InventoryLedger:
    """Single source of truth for book records and their derived status.

    Loan and reservation managers only write their own rows and then call
    :meth:`refresh` to get the book with its re-derived status.
    """

    # ------------------------- Catalog ------------------------- #
    def add_book(self, conn: sqlite3.Connection, raw_accession: str, title: str, author: str,
                 **metadata: Any) -> Book:
        """Add a catalog entry. Accession numbers are normalized and must be unique."""
        key = accession.normalize(raw_accession)
        if key is None:
            raise ValidationError(
                f"Invalid accession number: {raw_accession!r}", code="invalid_accession", raw=raw_accession
            )
        if not title or not title.strip():
            raise ValidationError("Title cannot be empty.", code="invalid_title")
        if not author or not author.strip():
            raise ValidationError("Author cannot be empty.", code="invalid_author")
        unknown = set(metadata) - set(_CATALOG_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown book fields: {', '.join(sorted(unknown))}", code="invalid_field")

        if self.find_by_accession(conn, key) is not None:
            raise ConflictError(
                f"Book with accession number {key} already exists.",
                code="duplicate_accession",
                accession_number=key,
            )
        values = [metadata.get(name) for name in _CATALOG_FIELDS]
        try:
            cursor = conn.execute(
                f"""
                INSERT INTO books (accession_number, title, author, {", ".join(_CATALOG_FIELDS)})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [key, title.strip(), author.strip(), *values],
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                f"Book with accession number {key} already exists.",
                code="duplicate_accession",
                accession_number=key,
            ) from e
        logger.info("Catalogued book %s (%s)", key, title.strip())
        return self.get_book(conn, cursor.lastrowid)

    def get_book(self, conn: sqlite3.Connection, book_id: int) -> Book:
        row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Book {book_id} not found.", code="book_not_found", book_id=book_id)
        return self._with_claims(conn, Book.from_row(row))

    def find_by_accession(self, conn: sqlite3.Connection, key: str) -> Optional[Book]:
        """Find a book by canonical accession key, or None."""
        row = conn.execute("SELECT * FROM books WHERE accession_number = ?", (key,)).fetchone()
        return self._with_claims(conn, Book.from_row(row)) if row else None

    def require_by_accession(self, conn: sqlite3.Connection, raw_accession: str) -> Book:
        key = accession.normalize(raw_accession)
        if key is None:
            raise ValidationError(
                f"Invalid accession number: {raw_accession!r}", code="invalid_accession", raw=raw_accession
            )
        book = self.find_by_accession(conn, key)
        if book is None:
            raise NotFoundError(
                f"Book not found with accession number: {key}",
                code="book_not_found",
                accession_number=key,
            )
        return book

    def refresh(self, conn: sqlite3.Connection, book_id: int) -> Book:
        """Reload a book after a loan or reservation mutation; the status is re-derived."""
        return self.get_book(conn, book_id)

    def list_books(self, conn: sqlite3.Connection, status: Optional[BookStatus] = None) -> List[Book]:
        rows = conn.execute("SELECT * FROM books ORDER BY accession_number").fetchall()
        books = [self._with_claims(conn, Book.from_row(row)) for row in rows]
        if status is not None:
            books = [b for b in books if b.status == status]
        return books

    def search_accession(self, conn: sqlite3.Connection, partial: str, limit: int = 10) -> List[Book]:
        """Autocomplete: books whose accession number starts with the padded partial."""
        prefix = accession.pad_prefix(partial)
        if not prefix:
            return []
        rows = conn.execute(
            "SELECT * FROM books WHERE accession_number LIKE ? ORDER BY accession_number LIMIT ?",
            (prefix + "%", limit),
        ).fetchall()
        return [self._with_claims(conn, Book.from_row(row)) for row in rows]

    # ------------------------- Stock verification ------------------------- #
    def apply_verification(self, conn: sqlite3.Connection, key: str, condition: Condition, *,
                           actor_id: Optional[str] = None, source: Optional[str] = None,
                           at: Optional[datetime] = None) -> Book:
        """Mark a book verified and record its condition. Status is left untouched.

        Re-verifying a book simply overwrites its condition.
        """
        book = self.find_by_accession(conn, key)
        if book is None:
            raise NotFoundError(
                f"Book not found with accession number: {key}",
                code="book_not_found",
                accession_number=key,
            )
        at = at or utcnow()
        conn.execute(
            "UPDATE books SET verified = 1, condition = ?, last_verified_at = ? WHERE id = ?",
            (condition.value, to_iso(at), book.id),
        )
        conn.execute(
            """
            INSERT INTO verification_history (book_id, status, performed_by, performed_at, source)
            VALUES (?, ?, ?, ?, ?)
            """,
            (book.id, condition.value, actor_id, to_iso(at), source),
        )
        return self.get_book(conn, book.id)

    def reset_verification(self, conn: sqlite3.Connection, raw_accession: str) -> Book:
        book = self.require_by_accession(conn, raw_accession)
        conn.execute("UPDATE books SET verified = 0, condition = NULL WHERE id = ?", (book.id,))
        return self.get_book(conn, book.id)

    def bulk_reset_verification(self, conn: sqlite3.Connection, raw_accessions: Iterable[str]) -> int:
        """Reset the verified flag for the given accession numbers. Unknown keys are skipped."""
        keys = {k for k in (accession.normalize(raw) for raw in raw_accessions) if k}
        if not keys:
            return 0
        placeholders = ", ".join("?" for _ in keys)
        cursor = conn.execute(
            f"UPDATE books SET verified = 0, condition = NULL WHERE accession_number IN ({placeholders})",
            sorted(keys),
        )
        return cursor.rowcount

    def reset_all_verification(self, conn: sqlite3.Connection) -> int:
        cursor = conn.execute("UPDATE books SET verified = 0, condition = NULL WHERE verified = 1")
        return cursor.rowcount

    def count_to_reset(self, conn: sqlite3.Connection) -> int:
        return conn.execute("SELECT COUNT(*) FROM books WHERE verified = 1").fetchone()[0]

    # ------------------------- Reporting ------------------------- #
    def stats(self, conn: sqlite3.Connection, now: datetime) -> Dict[str, int]:
        by_status = {status.value: 0 for status in BookStatus}
        for row in conn.execute("SELECT status, COUNT(*) AS n FROM book_status GROUP BY status"):
            by_status[row["status"]] = row["n"]
        open_loans = conn.execute(
            "SELECT due_date FROM loans WHERE status = ?", (LoanStatus.ISSUED.value,)
        ).fetchall()
        overdue = sum(1 for row in open_loans if from_iso(row["due_date"]) < now)
        return {
            "total_books": sum(by_status.values()),
            "available": by_status[BookStatus.AVAILABLE.value],
            "issued": by_status[BookStatus.ISSUED.value],
            "reserved": by_status[BookStatus.RESERVED.value],
            "active_loans": len(open_loans),
            "active_reservations": conn.execute(
                "SELECT COUNT(*) FROM reservations WHERE status = ?", (ReservationStatus.ACTIVE.value,)
            ).fetchone()[0],
            "overdue_loans": overdue,
            "verified": self.count_to_reset(conn),
        }

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _with_claims(conn: sqlite3.Connection, book: Book) -> Book:
        loan_row = conn.execute(
            "SELECT * FROM loans WHERE book_id = ? AND status = ?", (book.id, LoanStatus.ISSUED.value)
        ).fetchone()
        reservation_row = conn.execute(
            "SELECT * FROM reservations WHERE book_id = ? AND status = ?",
            (book.id, ReservationStatus.ACTIVE.value),
        ).fetchone()
        book.open_loan = Loan.from_row(loan_row) if loan_row else None
        book.active_reservation = Reservation.from_row(reservation_row) if reservation_row else None
        return book
