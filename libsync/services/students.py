import logging
import sqlite3
from typing import List, Optional

from libsync.errors import ConflictError, NotFoundError, ValidationError
from libsync.models import LoanStatus, Student

logger = logging.getLogger(__name__)

_STUDENT_QUERY = """
    SELECT s.id, s.student_code, s.name, s.department, s.email,
           (SELECT COUNT(*) FROM loans l
             WHERE l.student_id = s.id AND l.status = ?) AS active_loan_count
    FROM students s
"""


class StudentDirectory:
    """Student lookup by id or student code, with the live active-loan count."""

    def add_student(self, conn: sqlite3.Connection, name: str, student_code: Optional[str] = None,
                    department: Optional[str] = None, email: Optional[str] = None) -> Student:
        if not name or not name.strip():
            raise ValidationError("Student name cannot be empty.", code="invalid_student")
        code = student_code.strip() if student_code else None
        try:
            cursor = conn.execute(
                "INSERT INTO students (student_code, name, department, email) VALUES (?, ?, ?, ?)",
                (code, name.strip(), department, email),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                f"Student with code {code} already exists.", code="duplicate_student", student_code=code
            ) from e
        return self.lookup(conn, cursor.lastrowid)

    def lookup(self, conn: sqlite3.Connection, student_id: int) -> Student:
        row = conn.execute(_STUDENT_QUERY + " WHERE s.id = ?", (LoanStatus.ISSUED.value, student_id)).fetchone()
        if row is None:
            raise NotFoundError(f"Student {student_id} not found.", code="student_not_found", student_id=student_id)
        return self._from_row(row)

    def lookup_by_code(self, conn: sqlite3.Connection, student_code: str) -> Student:
        row = conn.execute(
            _STUDENT_QUERY + " WHERE s.student_code = ?", (LoanStatus.ISSUED.value, student_code)
        ).fetchone()
        if row is None:
            raise NotFoundError(
                f"Student {student_code} not found.", code="student_not_found", student_code=student_code
            )
        return self._from_row(row)

    def list_students(self, conn: sqlite3.Connection) -> List[Student]:
        rows = conn.execute(_STUDENT_QUERY + " ORDER BY s.name", (LoanStatus.ISSUED.value,)).fetchall()
        return [self._from_row(row) for row in rows]

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Student:
        return Student(
            id=row["id"],
            name=row["name"],
            student_code=row["student_code"],
            department=row["department"],
            email=row["email"],
            active_loan_count=row["active_loan_count"],
        )
