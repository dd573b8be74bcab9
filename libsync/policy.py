import logging
import sqlite3
from typing import Any, Dict

from libsync.config import settings
from libsync.errors import ValidationError
from libsync.models import Policy, to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_OVERDUE_REMINDER = "Your book is overdue. Please return it as soon as possible."
DEFAULT_RESERVATION_READY = "Your reserved book is ready for pickup."

_INTEGER_FIELDS = {
    # field -> minimum allowed value
    "loan_duration_days": 1,
    "fine_per_day": 0,
    "max_active_loans_per_student": 1,
}
_TEXT_FIELDS = ("overdue_reminder_template", "reservation_ready_template")


class PolicyStore:
    """Hot-reloadable circulation policy backed by a single settings row.

    Nothing is cached: every call reads the row again, so an update is seen
    by the very next issuance or fine computation.
    """

    def get(self, conn: sqlite3.Connection) -> Policy:
        row = conn.execute("SELECT * FROM settings WHERE id = 1").fetchone()
        if row is None:
            self._seed(conn)
            row = conn.execute("SELECT * FROM settings WHERE id = 1").fetchone()
        return Policy(
            loan_duration_days=row["loan_duration_days"],
            fine_per_day=row["fine_per_day"],
            max_active_loans_per_student=row["max_active_loans_per_student"],
            overdue_reminder_template=row["overdue_reminder_template"],
            reservation_ready_template=row["reservation_ready_template"],
        )

    def update(self, conn: sqlite3.Connection, **changes: Any) -> Policy:
        """Validate and persist policy changes. Unknown keys are rejected."""
        updates: Dict[str, Any] = {}
        for key, value in changes.items():
            if value is None:
                continue
            if key in _INTEGER_FIELDS:
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ValidationError(f"{key} must be an integer", code="invalid_setting", field=key)
                if value < _INTEGER_FIELDS[key]:
                    raise ValidationError(
                        f"{key} must be at least {_INTEGER_FIELDS[key]}",
                        code="invalid_setting",
                        field=key,
                    )
            elif key in _TEXT_FIELDS:
                if not str(value).strip():
                    raise ValidationError(f"{key} cannot be empty", code="invalid_setting", field=key)
                value = str(value).strip()
            else:
                raise ValidationError(f"Unknown setting: {key}", code="invalid_setting", field=key)
            updates[key] = value

        self.get(conn)  # seeds the row if missing
        if updates:
            set_clause = ", ".join(f"{name} = ?" for name in updates)
            params = list(updates.values()) + [to_iso(utcnow())]
            conn.execute(f"UPDATE settings SET {set_clause}, updated_at = ? WHERE id = 1", params)
            logger.info("Circulation policy updated: %s", updates)
        return self.get(conn)

    @staticmethod
    def _seed(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            INSERT OR IGNORE INTO settings (
                id, loan_duration_days, fine_per_day, max_active_loans_per_student,
                overdue_reminder_template, reservation_ready_template, updated_at
            ) VALUES (1, ?, ?, ?, ?, ?, ?)
            """,
            (
                settings.loan_duration_days,
                settings.fine_per_day,
                settings.max_active_loans_per_student,
                DEFAULT_OVERDUE_REMINDER,
                DEFAULT_RESERVATION_READY,
                to_iso(utcnow()),
            ),
        )
