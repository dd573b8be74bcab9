"""Stock verification reconciliation.

A stock check produces lines of ``(accession, status)`` free text. The job
normalizes each accession, resolves the status to a condition and applies it
to the matching book through the ledger. Each line is committed on its own:
a bad line is reported and the batch carries on.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from libsync import accession, database
from libsync.errors import CirculationError, NotFoundError, ValidationError
from libsync.ledger import InventoryLedger
from libsync.models import (
    Condition,
    Outcome,
    ReconciliationResult,
    StockImport,
    StockVerificationEntry,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

RawEntry = Union[str, Tuple[Optional[str], Optional[str]], Sequence[Optional[str]]]


def _split(entry: RawEntry) -> Tuple[str, Optional[str]]:
    if isinstance(entry, str):
        return entry, None
    items = list(entry)
    raw_accession = items[0] if items else ""
    raw_status = items[1] if len(items) > 1 else None
    return ("" if raw_accession is None else str(raw_accession)), raw_status


class StockReconciliationJob:
    def __init__(self, ledger: InventoryLedger, db_file: Optional[str] = None) -> None:
        self.ledger = ledger
        self.db_file = db_file

    def prepare(self, entries: Iterable[RawEntry]) -> Tuple[List[StockVerificationEntry], List[StockVerificationEntry], int]:
        """Normalize and de-duplicate entries without touching the database.

        Returns ``(unique, invalid, duplicates)``. The first occurrence of a
        canonical key wins; later ones are only counted.
        """
        unique: List[StockVerificationEntry] = []
        invalid: List[StockVerificationEntry] = []
        seen = set()
        duplicates = 0
        for row, entry in enumerate(entries, start=1):
            raw_accession, raw_status = _split(entry)
            key = accession.normalize(raw_accession)
            item = StockVerificationEntry(
                raw=raw_accession,
                accession_number=key,
                condition=accession.resolve_condition_label(raw_status),
                row=row,
            )
            if key is None:
                item.outcome = Outcome.ERROR
                item.error = "Invalid accession number format" if raw_accession.strip() else "Missing accession number"
                invalid.append(item)
                continue
            if key in seen:
                duplicates += 1
                continue
            seen.add(key)
            unique.append(item)
        return unique, invalid, duplicates

    def preview(self, entries: Iterable[RawEntry]) -> dict:
        """Dry run: show what a reconcile would match, nothing is written."""
        unique, invalid, duplicates = self.prepare(entries)
        with database.read_connection(self.db_file) as conn:
            for item in unique:
                book = self.ledger.find_by_accession(conn, item.accession_number)
                item.book_id = book.id if book else None
        return {
            "entries": [item.to_dict() for item in unique],
            "matched": sum(1 for item in unique if item.book_id is not None),
            "unmatched": sum(1 for item in unique if item.book_id is None),
            "invalid": [item.to_dict() for item in invalid],
            "duplicates": duplicates,
        }

    def reconcile(self, entries: Iterable[RawEntry], actor_id: Optional[str] = None,
                  source_name: Optional[str] = None, now: Optional[datetime] = None) -> ReconciliationResult:
        """Apply a stock check. Partial success is a normal outcome."""
        now = now or utcnow()
        batch_id = str(uuid.uuid4())
        unique, invalid, duplicates = self.prepare(entries)
        result = ReconciliationResult(batch_id=batch_id, errors=list(invalid), duplicates=duplicates)
        source = f"{source_name or 'stock-check'} (batch: {batch_id})"

        logger.info("Reconciling %d unique accession numbers (%d duplicates removed), batch %s",
                    len(unique), duplicates, batch_id)
        for item in unique:
            self._apply(item, actor_id, source, now)
            if item.outcome == Outcome.UPDATED:
                result.updated.append(item)
            elif item.outcome == Outcome.NOT_FOUND:
                result.not_found.append(item)
            else:
                result.errors.append(item)

        with database.transaction(self.db_file) as conn:
            self._record_import(conn, StockImport(
                batch_id=batch_id,
                uploaded_at=now,
                source_name=source_name,
                uploaded_by=actor_id,
                total_rows=len(unique) + len(invalid),
                updated_count=len(result.updated),
                not_found_count=len(result.not_found),
                error_count=len(result.errors),
            ))
        logger.info("Import complete: %d updated, %d not found, %d errors. Batch %s",
                    len(result.updated), len(result.not_found), len(result.errors), batch_id)
        return result

    def reconcile_keys(self, raw_accessions: Iterable[str], status: Union[str, Condition],
                       actor_id: Optional[str] = None, now: Optional[datetime] = None) -> ReconciliationResult:
        """Apply one status to many accession numbers (bulk form entry)."""
        label = status.value if isinstance(status, Condition) else status
        return self.reconcile([(raw, label) for raw in raw_accessions], actor_id=actor_id,
                              source_name="bulk-import", now=now)

    def verify_single(self, raw_accession: str, raw_status: Optional[str] = None,
                      actor_id: Optional[str] = None, now: Optional[datetime] = None) -> StockVerificationEntry:
        """Single-line variant for ad hoc corrections.

        A malformed accession raises ValidationError; an unknown one is a NotFound outcome.
        """
        unique, invalid, _ = self.prepare([(raw_accession, raw_status)])
        if invalid:
            raise ValidationError(invalid[0].error, code="invalid_accession", raw=raw_accession)
        item = unique[0]
        self._apply(item, actor_id, "single-import", now or utcnow())
        return item

    def latest_import(self) -> Optional[StockImport]:
        with database.read_connection(self.db_file) as conn:
            row = conn.execute(
                "SELECT * FROM stock_imports ORDER BY uploaded_at DESC, id DESC LIMIT 1"
            ).fetchone()
        return StockImport.from_row(row) if row else None

    def record_reset_all(self, conn: sqlite3.Connection, actor_id: Optional[str], count: int,
                         now: datetime) -> StockImport:
        record = StockImport(
            batch_id=str(uuid.uuid4()),
            uploaded_at=now,
            action="reset-all",
            source_name="reset-all",
            uploaded_by=actor_id,
            count=count,
        )
        self._record_import(conn, record)
        return record

    # ------------------------- Helpers ------------------------- #
    def _apply(self, item: StockVerificationEntry, actor_id: Optional[str], source: str,
               now: datetime) -> None:
        try:
            with database.transaction(self.db_file) as conn:
                book = self.ledger.apply_verification(
                    conn, item.accession_number, item.condition, actor_id=actor_id, source=source, at=now
                )
            item.outcome = Outcome.UPDATED
            item.book_id = book.id
        except NotFoundError:
            item.outcome = Outcome.NOT_FOUND
        except (CirculationError, sqlite3.Error) as e:
            logger.warning("Stock entry %s (row %s) failed: %s", item.accession_number, item.row, e)
            item.outcome = Outcome.ERROR
            item.error = str(e)

    @staticmethod
    def _record_import(conn: sqlite3.Connection, record: StockImport) -> None:
        conn.execute(
            """
            INSERT INTO stock_imports (
                batch_id, source_name, uploaded_by, uploaded_at, total_rows,
                updated_count, not_found_count, error_count, action, count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.batch_id, record.source_name, record.uploaded_by, to_iso(record.uploaded_at),
                record.total_rows, record.updated_count, record.not_found_count, record.error_count,
                record.action, record.count,
            ),
        )
