from datetime import timedelta

import pytest

from libsync.errors import ConflictError, FulfillmentError, InvalidStateError, NotFoundError, ValidationError
from libsync.models import BookStatus, LoanStatus, ReservationStatus
from libsync.services.notifications import NotificationKind


def test_reserve_available_book(circ, book, students):
    reservation = circ.reserve(students[0].id, book.id)
    assert reservation.status == ReservationStatus.ACTIVE
    assert circ.get_book(book.id).status == BookStatus.RESERVED


def test_second_reservation_conflicts(circ, book, students):
    circ.reserve(students[0].id, book.id)
    with pytest.raises(ConflictError) as exc:
        circ.reserve(students[1].id, book.id)
    assert exc.value.code == "book_reserved"
    with pytest.raises(ConflictError) as exc:
        circ.reserve(students[0].id, book.id)
    assert exc.value.code == "duplicate_reservation"


def test_cannot_reserve_issued_book(circ, book, students):
    circ.issue(students[0].id, book.id)
    with pytest.raises(ConflictError) as exc:
        circ.reserve(students[0].id, book.id)
    assert exc.value.code == "already_borrowed"
    with pytest.raises(ConflictError) as exc:
        circ.reserve(students[1].id, book.id)
    assert exc.value.code == "book_already_issued"


def test_cancel_makes_book_available(circ, book, students):
    reservation = circ.reserve(students[0].id, book.id)
    cancelled = circ.cancel(reservation.id)
    assert cancelled.status == ReservationStatus.CANCELLED
    assert cancelled.closed_at is not None
    assert circ.get_book(book.id).status == BookStatus.AVAILABLE
    # the book can be reserved again by someone else
    assert circ.reserve(students[1].id, book.id).is_active


def test_terminal_reservations_cannot_change(circ, book, students):
    reservation = circ.reserve(students[0].id, book.id)
    circ.cancel(reservation.id)
    with pytest.raises(InvalidStateError):
        circ.cancel(reservation.id)
    with pytest.raises(InvalidStateError):
        circ.fulfill(reservation.id)


def test_unknown_reservation(circ):
    with pytest.raises(NotFoundError):
        circ.cancel(42)


def test_fulfill_issues_loan_to_holder(circ, book, students):
    reservation = circ.reserve(students[0].id, book.id)
    loan = circ.fulfill(reservation.id, actor_id="librarian-1")

    assert loan.student_id == students[0].id
    assert loan.status == LoanStatus.ISSUED
    assert loan.issued_by == "librarian-1"
    assert circ.get_reservation(reservation.id).status == ReservationStatus.FULFILLED
    assert circ.get_book(book.id).status == BookStatus.ISSUED


def test_failed_fulfil_rolls_back(circ, students):
    books = [circ.add_book(str(n), f"Book {n}", "Author") for n in range(1, 6)]
    reservation = circ.reserve(students[0].id, books[4].id)
    for b in books[:4]:
        circ.issue(students[0].id, b.id)

    with pytest.raises(FulfillmentError) as exc:
        circ.fulfill(reservation.id)

    assert exc.value.context["cause"] == "loan_limit_reached"
    assert circ.get_reservation(reservation.id).status == ReservationStatus.ACTIVE
    assert circ.get_book(books[4].id).status == BookStatus.RESERVED
    assert circ.get_student(students[0].id).active_loan_count == 4


def test_issue_to_holder_fulfils_reservation(circ, book, students):
    reservation = circ.reserve(students[0].id, book.id)
    circ.issue(students[0].id, book.id)
    assert circ.get_reservation(reservation.id).status == ReservationStatus.FULFILLED
    assert circ.get_book(book.id).status == BookStatus.ISSUED


def test_issue_to_other_student_blocked_by_reservation(circ, book, students):
    circ.reserve(students[0].id, book.id)
    with pytest.raises(ConflictError) as exc:
        circ.issue(students[1].id, book.id)
    assert exc.value.code == "book_reserved"


def test_reserve_notifies_student(circ, notifier, book, students):
    circ.reserve(students[0].id, book.id)
    (student_id, kind, message), = notifier.sent
    assert student_id == students[0].id
    assert kind == NotificationKind.RESERVATION_READY
    assert "000001" in message


def test_notification_failure_keeps_reservation(circ, notifier, book, students):
    notifier.fail = True
    reservation = circ.reserve(students[0].id, book.id)
    assert circ.get_reservation(reservation.id).is_active
    assert circ.get_book(book.id).status == BookStatus.RESERVED


def test_list_reservations_by_student(circ, students):
    first = circ.add_book("1", "A", "X")
    second = circ.add_book("2", "B", "Y")
    circ.reserve(students[0].id, first.id)
    circ.reserve(students[1].id, second.id)
    mine = circ.list_reservations(student_id=students[0].id)
    assert [r.book_id for r in mine] == [first.id]
    assert len(circ.list_reservations(status=ReservationStatus.ACTIVE)) == 2


def test_fulfil_with_past_due_date_is_a_validation_error(circ, clock, book, students):
    reservation = circ.reserve(students[0].id, book.id)
    with pytest.raises(ValidationError) as exc:
        circ.fulfill(reservation.id, due_date=clock() - timedelta(days=1))
    assert not isinstance(exc.value, FulfillmentError)
    assert exc.value.code == "invalid_due_date"
    assert circ.get_reservation(reservation.id).status == ReservationStatus.ACTIVE
    assert circ.get_book(book.id).status == BookStatus.RESERVED
