import pytest

from libsync.errors import ConflictError, NotFoundError, ValidationError
from libsync.ledger import derive_status
from libsync.models import Book, BookStatus, Loan, Reservation, ReservationStatus

from conftest import T0


def _book(**claims):
    return Book(id=1, accession_number="000001", title="T", author="A", **claims)


def test_derive_status():
    loan = Loan(id=1, book_id=1, student_id=1, issue_date=T0, due_date=T0)
    reservation = Reservation(id=1, book_id=1, student_id=2, reserved_at=T0)
    assert derive_status(_book()) == BookStatus.AVAILABLE
    assert derive_status(_book(active_reservation=reservation)) == BookStatus.RESERVED
    assert derive_status(_book(open_loan=loan, active_reservation=reservation)) == BookStatus.ISSUED
    reservation.status = ReservationStatus.CANCELLED
    assert derive_status(_book(active_reservation=reservation)) == BookStatus.AVAILABLE


def test_add_book_normalizes_accession(circ):
    book = circ.add_book("ACC 42", "Emma", "Jane Austen", year_of_publishing=1815)
    assert book.accession_number == "000042"
    assert book.status == BookStatus.AVAILABLE
    assert book.year_of_publishing == 1815


def test_duplicate_accession_rejected(circ, book):
    with pytest.raises(ConflictError) as exc:
        circ.add_book("000001", "Other", "Someone")
    assert exc.value.code == "duplicate_accession"


def test_invalid_accession_rejected(circ):
    with pytest.raises(ValidationError):
        circ.add_book("no digits", "Title", "Author")


def test_find_book(circ, book):
    assert circ.find_book("1").id == book.id
    with pytest.raises(NotFoundError):
        circ.find_book("2")


def test_search_accession(circ):
    for raw in ("12", "120", "0001201", "1200"):
        circ.add_book(raw, f"Book {raw}", "Author")
    hits = [b.accession_number for b in circ.search_accession("120")]
    assert hits == ["000120", "0001201"]
    assert [b.accession_number for b in circ.search_accession("12")] == ["000012"]
    assert circ.search_accession("") == []


def test_list_books_by_status(circ, students):
    first = circ.add_book("1", "A", "X")
    second = circ.add_book("2", "B", "Y")
    circ.add_book("3", "C", "Z")
    circ.issue(students[0].id, first.id)
    circ.reserve(students[1].id, second.id)
    assert [b.id for b in circ.list_books(BookStatus.ISSUED)] == [first.id]
    assert [b.id for b in circ.list_books(BookStatus.RESERVED)] == [second.id]
    assert len(circ.list_books(BookStatus.AVAILABLE)) == 1


def test_stats(circ, clock, students):
    first = circ.add_book("1", "A", "X")
    second = circ.add_book("2", "B", "Y")
    circ.add_book("3", "C", "Z")
    circ.issue(students[0].id, first.id)
    circ.reserve(students[1].id, second.id)
    clock.advance(days=15)
    stats = circ.stats()
    assert stats["total_books"] == 3
    assert (stats["available"], stats["issued"], stats["reserved"]) == (1, 1, 1)
    assert stats["overdue_loans"] == 1
    assert stats["active_reservations"] == 1


@pytest.mark.parametrize("raw", ["１", "١", "０００００１"])
def test_non_ascii_digits_cannot_create_a_second_copy(circ, book, raw):
    with pytest.raises(ValidationError) as exc:
        circ.add_book(raw, "Dune", "Frank Herbert")
    assert exc.value.code == "invalid_accession"
    assert [b.accession_number for b in circ.list_books()] == ["000001"]
