from datetime import timedelta

import pytest

from conftest import T0
from libsync.errors import ConflictError, NotFoundError, ValidationError
from libsync.loans import compute_due_date, compute_fine, days_overdue, parse_due_date, reminder_due
from libsync.models import BookStatus, Loan, LoanStatus


# ------------------------- Fines ------------------------- #
def test_no_fine_on_or_before_due_date():
    due = T0 + timedelta(days=14)
    assert compute_fine(due, T0, 10) == 0
    assert compute_fine(due, due, 10) == 0


def test_partial_day_counts_as_a_whole_day():
    due = T0
    assert days_overdue(due, due + timedelta(minutes=1)) == 1
    assert compute_fine(due, due + timedelta(days=2, hours=1), 10) == 30


def test_fine_never_decreases_over_time():
    due = T0
    fines = [compute_fine(due, due + timedelta(hours=h), 10) for h in range(0, 24 * 10, 7)]
    assert fines == sorted(fines)
    assert all(f >= 0 for f in fines)


def test_compute_due_date():
    assert compute_due_date(T0, 14) == T0 + timedelta(days=14)


def test_parse_due_date():
    assert parse_due_date(None) is None
    assert parse_due_date("2024-02-01").tzinfo is not None
    with pytest.raises(ValidationError):
        parse_due_date("next tuesday")


# ------------------------- Reminder schedule ------------------------- #
def _loan(due, last=None):
    return Loan(id=1, book_id=1, student_id=1, issue_date=due - timedelta(days=14), due_date=due,
                last_reminder_sent_at=last)


def test_reminder_not_due_before_loan_is_late():
    assert not reminder_due(_loan(T0), T0 - timedelta(hours=1), 15, 15)


def test_reminder_daily_in_first_window():
    loan = _loan(T0, last=T0 + timedelta(days=2))
    assert not reminder_due(loan, T0 + timedelta(days=2, hours=3), 15, 15)
    assert reminder_due(loan, T0 + timedelta(days=3), 15, 15)


def test_reminder_every_interval_after_window():
    loan = _loan(T0, last=T0 + timedelta(days=16))
    assert not reminder_due(loan, T0 + timedelta(days=20), 15, 15)
    assert reminder_due(loan, T0 + timedelta(days=31), 15, 15)


def test_reminder_never_for_returned_loan():
    loan = _loan(T0)
    loan.status = LoanStatus.RETURNED
    assert not reminder_due(loan, T0 + timedelta(days=3), 15, 15)


# ------------------------- Issue & return ------------------------- #
def test_issue_then_late_return_charges_fine(circ, clock, book, students):
    loan = circ.issue(students[0].id, book.id)
    assert loan.status == LoanStatus.ISSUED
    assert loan.due_date == T0 + timedelta(days=14)
    assert circ.get_book(book.id).status == BookStatus.ISSUED

    clock.advance(days=20)
    returned = circ.return_loan(loan.id)

    assert returned.status == LoanStatus.RETURNED
    assert returned.fine == 60
    assert returned.return_date == T0 + timedelta(days=20)
    assert circ.get_book(book.id).status == BookStatus.AVAILABLE


def test_on_time_return_has_no_fine(circ, clock, book, students):
    loan = circ.issue(students[0].id, book.id)
    clock.advance(days=14)
    assert circ.return_loan(loan.id).fine == 0


def test_open_loan_reports_fine_accrued_so_far(circ, clock, book, students):
    loan = circ.issue(students[0].id, book.id)
    clock.advance(days=16, hours=2)
    assert circ.current_fine(loan.id) == 30


def test_returned_fine_is_frozen(circ, clock, book, students):
    loan = circ.issue(students[0].id, book.id)
    clock.advance(days=15)
    circ.return_loan(loan.id)
    clock.advance(days=30)
    assert circ.get_loan(loan.id).fine == 10


def test_cannot_issue_an_issued_book(circ, book, students):
    circ.issue(students[0].id, book.id)
    with pytest.raises(ConflictError) as exc:
        circ.issue(students[1].id, book.id)
    assert exc.value.code == "book_already_issued"


def test_loan_cap(circ, students):
    books = [circ.add_book(str(n), f"Book {n}", "Author") for n in range(1, 6)]
    for b in books[:4]:
        circ.issue(students[0].id, b.id)
    with pytest.raises(ConflictError) as exc:
        circ.issue(students[0].id, books[4].id)
    assert exc.value.code == "loan_limit_reached"
    assert "4-book limit" in exc.value.message
    assert circ.get_book(books[4].id).status == BookStatus.AVAILABLE
    assert circ.get_student(students[0].id).active_loan_count == 4


def test_due_date_before_issue_date_is_rejected(circ, book, students):
    with pytest.raises(ValidationError):
        circ.issue(students[0].id, book.id, due_date=T0 - timedelta(days=1))


def test_issue_to_unknown_student(circ, book):
    with pytest.raises(NotFoundError):
        circ.issue(999, book.id)


def test_return_twice_is_not_found(circ, book, students):
    loan = circ.issue(students[0].id, book.id)
    circ.return_loan(loan.id)
    with pytest.raises(NotFoundError):
        circ.return_loan(loan.id)


def test_issue_and_return_by_accession(circ, clock, book, students):
    loan = circ.issue_by_accession(students[0].id, "ACC-1")
    assert loan.book_id == book.id
    clock.advance(days=1)
    assert circ.return_by_book("000001").id == loan.id
    assert circ.get_book(book.id).status == BookStatus.AVAILABLE


def test_overdue_listing(circ, clock, book, students):
    circ.issue(students[0].id, book.id)
    assert circ.list_overdue() == []
    clock.advance(days=17)
    (row,) = circ.list_overdue()
    assert row["days_overdue"] == 3
    assert row["fine"] == 30


def test_fine_rate_change_applies_to_next_computation(circ, clock, book, students):
    loan = circ.issue(students[0].id, book.id)
    clock.advance(days=16)
    assert circ.current_fine(loan.id) == 20
    circ.update_settings(fine_per_day=25)
    assert circ.current_fine(loan.id) == 50
    assert circ.return_loan(loan.id).fine == 50


def test_loan_duration_change_applies_to_next_issue(circ, book, students):
    circ.update_settings(loan_duration_days=7)
    loan = circ.issue(students[0].id, book.id)
    assert loan.due_date == T0 + timedelta(days=7)


def test_naive_due_date_is_taken_as_utc(circ, book, students):
    naive_due = (T0 + timedelta(days=3)).replace(tzinfo=None)
    loan = circ.issue(students[0].id, book.id, due_date=naive_due)
    assert loan.due_date == T0 + timedelta(days=3)


def test_naive_due_date_before_issue_is_rejected(circ, book, students):
    with pytest.raises(ValidationError):
        circ.issue(students[0].id, book.id, due_date=(T0 - timedelta(hours=1)).replace(tzinfo=None))
