import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from libsync import database
from libsync.config import settings
from libsync.errors import (
    CirculationError,
    ConflictError,
    FulfillmentError,
    InvalidStateError,
    ValidationError,
)
from libsync.ledger import InventoryLedger
from libsync.loans import LoanManager, days_overdue, reminder_due
from libsync.models import (
    Book,
    BookStatus,
    Loan,
    LoanStatus,
    Policy,
    ReconciliationResult,
    Reservation,
    ReservationStatus,
    StockImport,
    StockVerificationEntry,
    Student,
    utcnow,
)
from libsync.policy import PolicyStore
from libsync.reservations import ReservationManager
from libsync.services.notifications import NotificationKind, Notifier, build_notifier
from libsync.services.students import StudentDirectory
from libsync.stock import RawEntry, StockReconciliationJob

logger = logging.getLogger(__name__)


class Circulation:
    """Single entry point for circulation and inventory operations.

    Every mutation is one ``BEGIN IMMEDIATE`` transaction covering the checks
    and the write. Notifications go out only after the commit, and their
    failures are logged, never raised.
    """

    def __init__(self, db_file: Optional[str] = None, notifier: Optional[Notifier] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        database.initialize_database(self.db_file)

        self.clock = clock or utcnow
        self.notifier = notifier or build_notifier()
        self.policies = PolicyStore()
        self.ledger = InventoryLedger()
        self.reservations = ReservationManager(self.ledger)
        self.loans = LoanManager(self.ledger, self.policies)
        self.students = StudentDirectory()
        self.stock = StockReconciliationJob(self.ledger, self.db_file)

    def now(self) -> datetime:
        return self.clock()

    # ------------------------- Catalog & directory ------------------------- #
    def add_book(self, accession_number: str, title: str, author: str, *,
                 actor_id: Optional[str] = None, **metadata: Any) -> Book:
        with database.transaction(self.db_file) as conn:
            book = self.ledger.add_book(conn, accession_number, title, author, **metadata)
        logger.info("Book %s added by %s", book.accession_number, actor_id)
        return book

    def get_book(self, book_id: int) -> Book:
        with database.read_connection(self.db_file) as conn:
            return self.ledger.get_book(conn, book_id)

    def find_book(self, raw_accession: str) -> Book:
        with database.read_connection(self.db_file) as conn:
            return self.ledger.require_by_accession(conn, raw_accession)

    def list_books(self, status: Optional[BookStatus] = None) -> List[Book]:
        with database.read_connection(self.db_file) as conn:
            return self.ledger.list_books(conn, status)

    def search_accession(self, partial: str, limit: int = 10) -> List[Book]:
        with database.read_connection(self.db_file) as conn:
            return self.ledger.search_accession(conn, partial, limit)

    def add_student(self, name: str, student_code: Optional[str] = None, department: Optional[str] = None,
                    email: Optional[str] = None, *, actor_id: Optional[str] = None) -> Student:
        with database.transaction(self.db_file) as conn:
            student = self.students.add_student(conn, name, student_code, department, email)
        logger.info("Student %s added by %s", student.id, actor_id)
        return student

    def get_student(self, student_id: int) -> Student:
        with database.read_connection(self.db_file) as conn:
            return self.students.lookup(conn, student_id)

    def find_student(self, student_code: str) -> Student:
        with database.read_connection(self.db_file) as conn:
            return self.students.lookup_by_code(conn, student_code)

    def list_students(self) -> List[Student]:
        with database.read_connection(self.db_file) as conn:
            return self.students.list_students(conn)

    # ------------------------- Loans ------------------------- #
    def issue(self, student_id: int, book_id: int, *, actor_id: Optional[str] = None,
              due_date: Optional[datetime] = None) -> Loan:
        """Issue a book. Issuing to the reservation holder fulfils that reservation."""
        now = self.now()
        with database.transaction(self.db_file) as conn:
            loan = self._issue(conn, student_id, self.ledger.get_book(conn, book_id), now, due_date, actor_id)
        return loan

    def issue_by_accession(self, student_id: int, raw_accession: str, *, actor_id: Optional[str] = None,
                           due_date: Optional[datetime] = None) -> Loan:
        now = self.now()
        with database.transaction(self.db_file) as conn:
            book = self.ledger.require_by_accession(conn, raw_accession)
            loan = self._issue(conn, student_id, book, now, due_date, actor_id)
        return loan

    def return_loan(self, loan_id: int, *, actor_id: Optional[str] = None) -> Loan:
        now = self.now()
        with database.transaction(self.db_file) as conn:
            loan = self.loans.return_by_id(conn, loan_id, now)
            book = self.ledger.refresh(conn, loan.book_id)
        self._after_return(loan, book, actor_id)
        return loan

    def return_by_book(self, raw_accession: str, *, actor_id: Optional[str] = None) -> Loan:
        now = self.now()
        with database.transaction(self.db_file) as conn:
            loan = self.loans.return_by_book(conn, raw_accession, now)
            book = self.ledger.refresh(conn, loan.book_id)
        self._after_return(loan, book, actor_id)
        return loan

    def get_loan(self, loan_id: int) -> Loan:
        """Load a loan; open loans carry the fine accrued as of now."""
        with database.read_connection(self.db_file) as conn:
            loan = self.loans.get(conn, loan_id)
            return self.loans.with_current_fines(conn, [loan], self.now())[0]

    def current_fine(self, loan_id: int) -> int:
        return self.get_loan(loan_id).fine

    def list_loans(self, student_id: Optional[int] = None, status: Optional[LoanStatus] = None) -> List[Loan]:
        with database.read_connection(self.db_file) as conn:
            loans = self.loans.list_loans(conn, student_id, status)
            return self.loans.with_current_fines(conn, loans, self.now())

    def list_overdue(self) -> List[Dict[str, Any]]:
        now = self.now()
        with database.read_connection(self.db_file) as conn:
            loans = self.loans.with_current_fines(conn, self.loans.overdue(conn, now), now)
        return [dict(loan.to_dict(), days_overdue=days_overdue(loan.due_date, now)) for loan in loans]

    # ------------------------- Reservations ------------------------- #
    def reserve(self, student_id: int, book_id: int, *, actor_id: Optional[str] = None) -> Reservation:
        now = self.now()
        with database.transaction(self.db_file) as conn:
            self.students.lookup(conn, student_id)
            reservation = self.reservations.reserve(conn, student_id, book_id, now)
            book = self.ledger.refresh(conn, book_id)
            template = self.policies.get(conn).reservation_ready_template
        logger.info("Reservation %s: book %s reserved for student %s by %s (status %s)",
                    reservation.id, book.accession_number, student_id, actor_id, book.status.value)
        self._notify(student_id, NotificationKind.RESERVATION_READY,
                     f"{template}\n\nBook: {book.title} (Accession No.: {book.accession_number})")
        return reservation

    def cancel(self, reservation_id: int, *, actor_id: Optional[str] = None) -> Reservation:
        now = self.now()
        with database.transaction(self.db_file) as conn:
            reservation = self.reservations.cancel(conn, reservation_id, now)
            book = self.ledger.refresh(conn, reservation.book_id)
        logger.info("Reservation %s cancelled by %s; book %s is now %s",
                    reservation_id, actor_id, book.accession_number, book.status.value)
        return reservation

    def fulfill(self, reservation_id: int, *, actor_id: Optional[str] = None,
                due_date: Optional[datetime] = None) -> Loan:
        """Fulfil a reservation and issue the loan to its holder in one transaction.

        If the loan cannot be issued, the reservation stays Active and a
        FulfillmentError is raised.
        """
        now = self.now()
        try:
            with database.transaction(self.db_file) as conn:
                reservation = self.reservations.fulfill(conn, reservation_id, now)
                try:
                    loan = self.loans.issue(conn, reservation.student_id, reservation.book_id, now,
                                            due_date=due_date, issued_by=actor_id)
                except ValidationError:
                    raise
                except CirculationError as e:
                    raise FulfillmentError(
                        f"Reservation {reservation_id} could not be fulfilled: {e.message}",
                        reservation_id=reservation_id,
                        cause=e.code,
                    ) from e
        except FulfillmentError as e:
            logger.error("Fulfilment of reservation %s rolled back: %s", reservation_id, e.message)
            raise
        logger.info("Reservation %s fulfilled by %s as loan %s", reservation_id, actor_id, loan.id)
        return loan

    def get_reservation(self, reservation_id: int) -> Reservation:
        with database.read_connection(self.db_file) as conn:
            return self.reservations.get(conn, reservation_id)

    def list_reservations(self, student_id: Optional[int] = None,
                          status: Optional[ReservationStatus] = None) -> List[Reservation]:
        with database.read_connection(self.db_file) as conn:
            return self.reservations.list_reservations(conn, student_id, status)

    # ------------------------- Reminders ------------------------- #
    def send_reminder(self, loan_id: int, *, actor_id: Optional[str] = None) -> bool:
        """Send one overdue reminder now. Returns whether it was delivered."""
        now = self.now()
        with database.read_connection(self.db_file) as conn:
            loan = self.loans.get(conn, loan_id)
            if not loan.is_open:
                raise InvalidStateError(
                    f"Loan {loan_id} is {loan.status.value}, not Issued.", code="loan_not_open", loan_id=loan_id
                )
            if not loan.is_overdue(now):
                raise InvalidStateError(
                    f"Loan {loan_id} is not overdue yet.", code="loan_not_overdue", loan_id=loan_id
                )
            message = self._reminder_message(conn, loan, now)
        return self._deliver_reminder(loan, message, now, actor_id)

    def send_overdue_reminders(self, *, actor_id: Optional[str] = None) -> int:
        """Walk overdue loans and remind those due a reminder per the schedule."""
        now = self.now()
        with database.read_connection(self.db_file) as conn:
            pending = [
                (loan, self._reminder_message(conn, loan, now))
                for loan in self.loans.overdue(conn, now)
                if reminder_due(loan, now, settings.reminder_daily_window_days, settings.reminder_interval_days)
            ]
        sent = sum(1 for loan, message in pending if self._deliver_reminder(loan, message, now, actor_id))
        logger.info("Overdue reminder job: %d of %d reminders delivered", sent, len(pending))
        return sent

    # ------------------------- Stock verification ------------------------- #
    def reconcile(self, entries: Iterable[RawEntry], *, actor_id: Optional[str] = None,
                  source_name: Optional[str] = None) -> ReconciliationResult:
        return self.stock.reconcile(entries, actor_id=actor_id, source_name=source_name, now=self.now())

    def reconcile_keys(self, raw_accessions: Iterable[str], status: str, *,
                       actor_id: Optional[str] = None) -> ReconciliationResult:
        return self.stock.reconcile_keys(raw_accessions, status, actor_id=actor_id, now=self.now())

    def preview_stock(self, entries: Iterable[RawEntry]) -> dict:
        return self.stock.preview(entries)

    def verify_single(self, raw_accession: str, raw_status: Optional[str] = None, *,
                      actor_id: Optional[str] = None) -> StockVerificationEntry:
        return self.stock.verify_single(raw_accession, raw_status, actor_id=actor_id, now=self.now())

    def latest_import(self) -> Optional[StockImport]:
        return self.stock.latest_import()

    def reset_verification(self, raw_accession: str, *, actor_id: Optional[str] = None) -> Book:
        with database.transaction(self.db_file) as conn:
            book = self.ledger.reset_verification(conn, raw_accession)
        logger.info("Verification reset for %s by %s", book.accession_number, actor_id)
        return book

    def bulk_reset_verification(self, raw_accessions: Iterable[str], *, actor_id: Optional[str] = None) -> int:
        with database.transaction(self.db_file) as conn:
            count = self.ledger.bulk_reset_verification(conn, raw_accessions)
        logger.info("Verification reset for %d books by %s", count, actor_id)
        return count

    def reset_all_verification(self, *, actor_id: Optional[str] = None) -> int:
        now = self.now()
        with database.transaction(self.db_file) as conn:
            count = self.ledger.reset_all_verification(conn)
            self.stock.record_reset_all(conn, actor_id, count, now)
        logger.info("All verification reset (%d books) by %s", count, actor_id)
        return count

    def count_to_reset(self) -> int:
        with database.read_connection(self.db_file) as conn:
            return self.ledger.count_to_reset(conn)

    # ------------------------- Settings & stats ------------------------- #
    def get_settings(self) -> Policy:
        with database.read_connection(self.db_file) as conn:
            return self.policies.get(conn)

    def update_settings(self, *, actor_id: Optional[str] = None, **changes: Any) -> Policy:
        with database.transaction(self.db_file) as conn:
            policy = self.policies.update(conn, **changes)
        logger.info("Settings updated by %s", actor_id)
        return policy

    def stats(self) -> Dict[str, int]:
        with database.read_connection(self.db_file) as conn:
            return self.ledger.stats(conn, self.now())

    # ------------------------- Helpers ------------------------- #
    def _issue(self, conn, student_id: int, book: Book, now: datetime, due_date: Optional[datetime],
               actor_id: Optional[str]) -> Loan:
        self.students.lookup(conn, student_id)
        reservation = book.active_reservation
        if reservation is not None and reservation.student_id != student_id:
            raise ConflictError(
                "Book is reserved by another student.",
                code="book_reserved",
                book_id=book.id,
                reservation_id=reservation.id,
            )
        loan = self.loans.issue(conn, student_id, book.id, now, due_date=due_date, issued_by=actor_id)
        if reservation is not None:
            self.reservations.fulfill(conn, reservation.id, now)
        book = self.ledger.refresh(conn, book.id)
        logger.info("Loan %s: book %s issued to student %s by %s, due %s (status %s)",
                    loan.id, book.accession_number, student_id, actor_id,
                    loan.due_date.date().isoformat(), book.status.value)
        return loan

    def _after_return(self, loan: Loan, book: Book, actor_id: Optional[str]) -> None:
        logger.info("Loan %s returned by %s: book %s is now %s, fine %d",
                    loan.id, actor_id, book.accession_number, book.status.value, loan.fine)

    def _reminder_message(self, conn, loan: Loan, now: datetime) -> str:
        policy = self.policies.get(conn)
        book = self.ledger.get_book(conn, loan.book_id)
        fine = self.loans.current_fine(loan, now, policy.fine_per_day)
        return (
            f"{policy.overdue_reminder_template}\n\n"
            f"Book: {book.title} (Accession No.: {book.accession_number})\n"
            f"Due: {loan.due_date.date().isoformat()}\n"
            f"Days overdue: {days_overdue(loan.due_date, now)}\n"
            f"Fine so far: {fine}"
        )

    def _deliver_reminder(self, loan: Loan, message: str, now: datetime, actor_id: Optional[str]) -> bool:
        if not self._notify(loan.student_id, NotificationKind.LOAN_REMINDER, message):
            return False
        with database.transaction(self.db_file) as conn:
            self.loans.mark_reminded(conn, loan.id, now)
        logger.info("Overdue reminder for loan %s sent to student %s by %s", loan.id, loan.student_id, actor_id)
        return True

    def _notify(self, student_id: int, kind: NotificationKind, message: str) -> bool:
        try:
            self.notifier.notify(student_id, kind, message)
            return True
        except Exception:
            logger.warning("Notification %s to student %s failed", kind.value, student_id, exc_info=True)
            return False

    def close(self) -> None:
        self.notifier.close()
