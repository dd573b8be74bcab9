import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from libsync.config import settings

# Make sure .env is loaded before the database file is resolved.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBSYNC_DB_FILE (explicit override, read again here so tests can set it late)
# 2) settings.data_file
DATABASE_FILE = os.environ.get("LIBSYNC_DB_FILE") or settings.data_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode (``isolation_level=None``); writes go
    through :func:`transaction`, which issues ``BEGIN IMMEDIATE`` itself.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.db_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute(f"PRAGMA busy_timeout={int(settings.db_timeout * 1000)};")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a block as one serialized read-modify-write unit.

    ``BEGIN IMMEDIATE`` takes the database write lock before the first read,
    so two writers can never both observe the same pre-state and commit.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def read_connection(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    conn = get_db_connection(db_file)
    try:
        yield conn
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables, indexes and views if they do not exist."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                accession_number TEXT UNIQUE NOT NULL,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                publisher TEXT,
                year_of_publishing INTEGER,
                edition TEXT,
                category TEXT,
                price INTEGER,
                verified INTEGER NOT NULL DEFAULT 0,
                condition TEXT,
                last_verified_at TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS students (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                student_code TEXT UNIQUE,
                name TEXT NOT NULL,
                department TEXT,
                email TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL REFERENCES books(id),
                student_id INTEGER NOT NULL REFERENCES students(id),
                issue_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL CHECK(status IN ('Issued', 'Returned')),
                fine INTEGER NOT NULL DEFAULT 0 CHECK(fine >= 0),
                issued_by TEXT,
                last_reminder_sent_at TEXT
            );

            CREATE TABLE IF NOT EXISTS reservations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL REFERENCES books(id),
                student_id INTEGER NOT NULL REFERENCES students(id),
                reserved_at TEXT NOT NULL,
                status TEXT NOT NULL CHECK(status IN ('Active', 'Fulfilled', 'Cancelled')),
                closed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS verification_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
                status TEXT NOT NULL,
                performed_by TEXT,
                performed_at TEXT NOT NULL,
                source TEXT
            );

            CREATE TABLE IF NOT EXISTS stock_imports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                batch_id TEXT UNIQUE NOT NULL,
                source_name TEXT,
                uploaded_by TEXT,
                uploaded_at TEXT NOT NULL,
                total_rows INTEGER NOT NULL DEFAULT 0,
                updated_count INTEGER NOT NULL DEFAULT 0,
                not_found_count INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                action TEXT NOT NULL DEFAULT 'import' CHECK(action IN ('import', 'reset-all')),
                count INTEGER
            );

            CREATE TABLE IF NOT EXISTS settings (
                id INTEGER PRIMARY KEY CHECK(id = 1),
                loan_duration_days INTEGER NOT NULL,
                fine_per_day INTEGER NOT NULL,
                max_active_loans_per_student INTEGER NOT NULL,
                overdue_reminder_template TEXT NOT NULL,
                reservation_ready_template TEXT NOT NULL,
                updated_at TEXT
            );

            -- at most one open loan and one active reservation per book
            CREATE UNIQUE INDEX IF NOT EXISTS uq_loans_open_per_book
                ON loans(book_id) WHERE status = 'Issued';
            CREATE UNIQUE INDEX IF NOT EXISTS uq_reservations_active_per_book
                ON reservations(book_id) WHERE status = 'Active';

            CREATE INDEX IF NOT EXISTS idx_loans_student_status ON loans(student_id, status);
            CREATE INDEX IF NOT EXISTS idx_loans_due_date ON loans(due_date);
            CREATE INDEX IF NOT EXISTS idx_reservations_student ON reservations(student_id, status);
            CREATE INDEX IF NOT EXISTS idx_verification_history_book ON verification_history(book_id);
            CREATE INDEX IF NOT EXISTS idx_stock_imports_uploaded_at ON stock_imports(uploaded_at DESC);

            CREATE VIEW IF NOT EXISTS book_status AS
                SELECT b.id AS book_id,
                       b.accession_number,
                       CASE
                           WHEN EXISTS (SELECT 1 FROM loans l
                                        WHERE l.book_id = b.id AND l.status = 'Issued') THEN 'Issued'
                           WHEN EXISTS (SELECT 1 FROM reservations r
                                        WHERE r.book_id = b.id AND r.status = 'Active') THEN 'Reserved'
                           ELSE 'Available'
                       END AS status
                FROM books b;
        """)
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug("Database ready at %s", db_file or DATABASE_FILE)
