import csv
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from libsync import database
from libsync.circulation import Circulation
from libsync.config import settings
from libsync.errors import CirculationError
from libsync.loans import parse_due_date
from libsync.models import BookStatus
from libsync.ui_helpers import print_record, print_rows, set_output_mode

console = Console(stderr=True)

BOOK_COLUMNS = ("id", "accession_number", "title", "author", "status", "condition")
LOAN_COLUMNS = ("id", "book_id", "student_id", "due_date", "status", "fine")
OVERDUE_COLUMNS = ("id", "book_id", "student_id", "due_date", "days_overdue", "fine")


class CirculationManager:
    """One Circulation per database file for the lifetime of the process."""

    _instances: Dict[str, Circulation] = {}

    @classmethod
    def get_instance(cls) -> Circulation:
        db_file = os.environ.get("LIBSYNC_DB_FILE") or database.DATABASE_FILE
        if db_file not in cls._instances:
            cls._instances[db_file] = Circulation(db_file=db_file)
        return cls._instances[db_file]


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def _fail(error: CirculationError) -> None:
    print(f"Error: {error.message}")
    raise typer.Exit(code=1)


# --- Typer CLI ---
app = typer.Typer(help=f"{settings.app_name} CLI")
settings_app = typer.Typer(help="Show or change circulation settings.")
app.add_typer(settings_app, name="settings")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Logging level"),
):
    """Global options (output mode, logging)."""
    if output:
        set_output_mode(output)
    _configure_logging(log_level)


# ------------------------- Catalog ------------------------- #
@app.command("add-book")
def cli_add_book(
    accession_number: str,
    title: str,
    author: str,
    category: Optional[str] = typer.Option(None, "--category"),
    publisher: Optional[str] = typer.Option(None, "--publisher"),
):
    """Add a book copy under an accession number."""
    try:
        book = CirculationManager.get_instance().add_book(
            accession_number, title, author, category=category, publisher=publisher
        )
    except CirculationError as e:
        _fail(e)
    print(f"Added book {book.accession_number}: {book.title} by {book.author} (id {book.id})")


@app.command("books")
def cli_books(status: Optional[BookStatus] = typer.Option(None, "--status", help="Available | Issued | Reserved")):
    """List books with their derived status."""
    books = CirculationManager.get_instance().list_books(status)
    print_rows("Books", [b.to_dict() for b in books], BOOK_COLUMNS, "No books in library.")


@app.command("find")
def cli_find(accession_number: str):
    """Show one book by accession number."""
    try:
        book = CirculationManager.get_instance().find_book(accession_number)
    except CirculationError as e:
        _fail(e)
    print_record("Book Found", book.to_dict(), BOOK_COLUMNS)


@app.command("add-student")
def cli_add_student(
    name: str,
    student_code: Optional[str] = typer.Option(None, "--code"),
    department: Optional[str] = typer.Option(None, "--department"),
    email: Optional[str] = typer.Option(None, "--email"),
):
    """Register a student."""
    try:
        student = CirculationManager.get_instance().add_student(name, student_code, department, email)
    except CirculationError as e:
        _fail(e)
    print(f"Added student {student.name} (id {student.id})")


@app.command("find-student")
def cli_find_student(student_code: str):
    """Show a student by student code."""
    try:
        student = CirculationManager.get_instance().find_student(student_code)
    except CirculationError as e:
        _fail(e)
    print_record("Student Found", student.to_dict())


# ------------------------- Circulation ------------------------- #
@app.command("issue")
def cli_issue(
    student_id: int,
    accession_number: str,
    due_date: Optional[str] = typer.Option(None, "--due", help="ISO due date"),
    actor: Optional[str] = typer.Option(None, "--actor"),
):
    """Issue a book to a student by accession number."""
    try:
        loan = CirculationManager.get_instance().issue_by_accession(
            student_id, accession_number, actor_id=actor, due_date=parse_due_date(due_date)
        )
    except CirculationError as e:
        _fail(e)
    print(f"Issued loan {loan.id}, due {loan.due_date.date().isoformat()}")


@app.command("return")
def cli_return(accession_number: str, actor: Optional[str] = typer.Option(None, "--actor")):
    """Return the open loan on a book."""
    try:
        loan = CirculationManager.get_instance().return_by_book(accession_number, actor_id=actor)
    except CirculationError as e:
        _fail(e)
    print(f"Returned loan {loan.id}, fine {loan.fine}")


@app.command("loans")
def cli_loans(student_id: Optional[int] = typer.Option(None, "--student")):
    """List loans with fines accrued so far."""
    loans = CirculationManager.get_instance().list_loans(student_id)
    print_rows("Loans", [loan.to_dict() for loan in loans], LOAN_COLUMNS, "No loans.")


@app.command("reserve")
def cli_reserve(student_id: int, book_id: int, actor: Optional[str] = typer.Option(None, "--actor")):
    """Reserve a book for a student."""
    try:
        reservation = CirculationManager.get_instance().reserve(student_id, book_id, actor_id=actor)
    except CirculationError as e:
        _fail(e)
    print(f"Reservation {reservation.id} is {reservation.status.value}")


@app.command("cancel")
def cli_cancel(reservation_id: int, actor: Optional[str] = typer.Option(None, "--actor")):
    """Cancel an active reservation."""
    try:
        reservation = CirculationManager.get_instance().cancel(reservation_id, actor_id=actor)
    except CirculationError as e:
        _fail(e)
    print(f"Reservation {reservation.id} is {reservation.status.value}")


@app.command("fulfill")
def cli_fulfill(reservation_id: int, actor: Optional[str] = typer.Option(None, "--actor")):
    """Fulfil a reservation and issue the book to its holder."""
    try:
        loan = CirculationManager.get_instance().fulfill(reservation_id, actor_id=actor)
    except CirculationError as e:
        _fail(e)
    print(f"Reservation {reservation_id} fulfilled as loan {loan.id}")


@app.command("overdue")
def cli_overdue():
    """List overdue loans."""
    rows = CirculationManager.get_instance().list_overdue()
    print_rows("Overdue loans", rows, OVERDUE_COLUMNS, "No overdue loans.")


@app.command("remind")
def cli_remind():
    """Send overdue reminders that are due today."""
    sent = CirculationManager.get_instance().send_overdue_reminders()
    print(f"Sent {sent} reminders")


# ------------------------- Stock verification ------------------------- #
def _read_stock_file(path: Path) -> List[tuple]:
    entries = []
    with path.open(newline="", encoding="utf-8") as fh:
        for row in csv.reader(fh):
            if not row or not any(cell.strip() for cell in row):
                continue
            entries.append((row[0], row[1] if len(row) > 1 else None))
    return entries


@app.command("reconcile")
def cli_reconcile(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="One 'accession[,status]' per line"),
    preview: bool = typer.Option(False, "--preview", help="Show matches without writing"),
    actor: Optional[str] = typer.Option(None, "--actor"),
):
    """Apply a stock-check file to the catalog."""
    circulation = CirculationManager.get_instance()
    entries = _read_stock_file(file)
    if preview:
        result = circulation.preview_stock(entries)
        print_record("Preview", result, ("matched", "unmatched", "duplicates"))
        return
    result = circulation.reconcile(entries, actor_id=actor, source_name=file.name)
    print_record(f"Batch {result.batch_id}", result.summary())


@app.command("reset-all")
def cli_reset_all(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    actor: Optional[str] = typer.Option(None, "--actor"),
):
    """Clear verification on every book."""
    circulation = CirculationManager.get_instance()
    if not yes and not typer.confirm(f"Reset verification on {circulation.count_to_reset()} books?"):
        raise typer.Abort()
    print(f"Reset verification on {circulation.reset_all_verification(actor_id=actor)} books")


# ------------------------- Settings & stats ------------------------- #
@settings_app.command("show")
def cli_settings_show():
    """Show the current circulation policy."""
    print_record("Settings", CirculationManager.get_instance().get_settings().to_dict())


@settings_app.command("set")
def cli_settings_set(key: str, value: str, actor: Optional[str] = typer.Option(None, "--actor")):
    """Change one setting; takes effect on the next operation."""
    changes = {key: int(value) if value.lstrip("-").isdigit() else value}
    try:
        policy = CirculationManager.get_instance().update_settings(actor_id=actor, **changes)
    except CirculationError as e:
        _fail(e)
    print(f"{key} = {policy.to_dict()[key]}")


@app.command("stats")
def cli_stats():
    """Show catalog and circulation counters."""
    print_record("Statistics", CirculationManager.get_instance().stats())


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before exiting (0 = no timeout)")):
    """Run the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "libsync.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if timeout and timeout > 0:
        proc = subprocess.Popen(args, start_new_session=os.name != "nt")
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
    else:
        subprocess.run(args)


if __name__ == "__main__":
    app()
