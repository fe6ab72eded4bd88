"""
Tender Store - per-document persistence with compare-and-set

The store is the only shared mutable resource in tenderdesk. It offers
four operations and one guarantee: a write only lands if the stored
revision is the one the writer read. Two writers that both read version 3
cannot both produce version 4.

Two adapters:
- SQLiteTenderStore: the tender is a JSON document, with the fields the
  scheduler filters on copied into indexed columns.
- InMemoryTenderStore: same semantics behind an RLock, for tests and
  single-process embedding.
"""

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from tenderdesk.kernel.errors import (
    AuditTrailViolation,
    DuplicateTender,
    StoreError,
    VersionConflict,
)
from tenderdesk.kernel.logging import get_logger
from tenderdesk.kernel.retry import retry_on_sqlite_lock
from tenderdesk.kernel.time import ensure_utc
from tenderdesk.tender.models import Tender, TenderStatus, WorkflowType

logger = get_logger(__name__)


class TenderQuery(BaseModel):
    """
    Filter for find(). Unset fields do not constrain.

    Deleted tenders are excluded unless include_deleted is set.
    """

    statuses: list[TenderStatus] | None = None
    workflow_type: WorkflowType | None = None
    owner_id: str | None = None
    deadline_at_or_before: datetime | None = None
    deadline_after: datetime | None = None
    revealed: bool | None = None
    include_deleted: bool = False
    limit: int | None = Field(default=None, ge=1)

    def matches(self, tender: Tender) -> bool:
        if tender.is_deleted and not self.include_deleted:
            return False
        if self.statuses is not None and tender.status not in self.statuses:
            return False
        if self.workflow_type is not None and tender.workflow_type != self.workflow_type:
            return False
        if self.owner_id is not None and tender.owner_id != self.owner_id:
            return False
        if self.deadline_at_or_before is not None:
            if tender.deadline is None or tender.deadline > self.deadline_at_or_before:
                return False
        if self.deadline_after is not None:
            if tender.deadline is None or tender.deadline <= self.deadline_after:
                return False
        if self.revealed is not None and (tender.revealed_at is not None) != self.revealed:
            return False
        return True


class TenderStore(Protocol):
    """Persistence port used by the lifecycle engine and the scheduler"""

    def get(self, tender_id: str) -> Tender | None:
        """Return the stored tender, or None"""
        ...

    def insert(self, tender: Tender) -> Tender:
        """Store a new tender at version 1"""
        ...

    def compare_and_set(self, tender: Tender, expected_version: int) -> Tender:
        """Replace the stored tender if its version is still expected_version"""
        ...

    def find(self, query: TenderQuery) -> list[Tender]:
        """Return matching tenders ordered by deadline, then id"""
        ...


def check_audit_extension(stored: Tender, new: Tender) -> None:
    """
    Refuse writes that drop or rewrite audit entries

    Raises:
        AuditTrailViolation: If new.audit_log does not start with stored.audit_log
    """
    stored_log = [e.model_dump() for e in stored.audit_log]
    new_log = [e.model_dump() for e in new.audit_log]
    if len(new_log) < len(stored_log) or new_log[: len(stored_log)] != stored_log:
        raise AuditTrailViolation(stored.tender_id, len(stored_log), len(new_log))


def _sort_key(tender: Tender) -> tuple[bool, str, str]:
    return (tender.deadline is None, _to_db_time(tender.deadline) or "", tender.tender_id)


def _to_db_time(dt: datetime | None) -> str | None:
    # Fixed-width UTC so lexical order in SQLite equals time order
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


class InMemoryTenderStore:
    """Dictionary-backed store with the same compare-and-set semantics"""

    def __init__(self) -> None:
        self._tenders: dict[str, Tender] = {}
        self._lock = threading.RLock()

    def get(self, tender_id: str) -> Tender | None:
        with self._lock:
            tender = self._tenders.get(tender_id)
            return tender.model_copy(deep=True) if tender else None

    def insert(self, tender: Tender) -> Tender:
        with self._lock:
            if tender.tender_id in self._tenders:
                raise DuplicateTender(tender.tender_id)
            stored = tender.model_copy(update={"version": 1}, deep=True)
            self._tenders[tender.tender_id] = stored
            return stored.model_copy(deep=True)

    def compare_and_set(self, tender: Tender, expected_version: int) -> Tender:
        with self._lock:
            current = self._tenders.get(tender.tender_id)
            if current is None:
                raise StoreError(f"Tender {tender.tender_id} does not exist")
            if current.version != expected_version:
                raise VersionConflict(tender.tender_id, expected_version, current.version)
            check_audit_extension(current, tender)
            stored = tender.model_copy(update={"version": expected_version + 1}, deep=True)
            self._tenders[tender.tender_id] = stored
            return stored.model_copy(deep=True)

    def find(self, query: TenderQuery) -> list[Tender]:
        with self._lock:
            matched = [t.model_copy(deep=True) for t in self._tenders.values() if query.matches(t)]
        matched.sort(key=_sort_key)
        if query.limit is not None:
            matched = matched[: query.limit]
        return matched

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for tender in self._tenders.values():
                if not tender.is_deleted:
                    counts[tender.status.value] = counts.get(tender.status.value, 0) + 1
        return counts


class SQLiteTenderStore:
    """
    SQLite-backed tender store

    WAL mode so the scheduler thread can read while an API request
    writes. Compare-and-set is a single UPDATE ... WHERE version = ?,
    which SQLite executes atomically.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS tenders (
                    tender_id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    workflow_type TEXT NOT NULL,
                    deadline TEXT,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    revealed INTEGER NOT NULL DEFAULT 0,
                    document_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_tenders_scan "
                "ON tenders(is_deleted, status, deadline)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_tenders_owner ON tenders(owner_id)"
            )

            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _row_values(self, tender: Tender, version: int) -> tuple:
        document = tender.model_copy(update={"version": version})
        return (
            version,
            tender.owner_id,
            tender.status.value,
            tender.workflow_type.value,
            _to_db_time(tender.deadline),
            1 if tender.is_deleted else 0,
            1 if tender.revealed_at is not None else 0,
            document.model_dump_json(),
            _to_db_time(datetime.now(timezone.utc)),
        )

    @retry_on_sqlite_lock()
    def get(self, tender_id: str) -> Tender | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT document_json FROM tenders WHERE tender_id = ?",
                (tender_id,),
            ).fetchone()
        return self._row_to_tender(row) if row else None

    @retry_on_sqlite_lock()
    def insert(self, tender: Tender) -> Tender:
        stored = tender.model_copy(update={"version": 1})
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO tenders (
                        tender_id, version, owner_id, status, workflow_type,
                        deadline, is_deleted, revealed, document_json, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (tender.tender_id, *self._row_values(tender, 1)),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise DuplicateTender(tender.tender_id) from e
        return stored

    @retry_on_sqlite_lock()
    def compare_and_set(self, tender: Tender, expected_version: int) -> Tender:
        new_version = expected_version + 1
        with self._connect() as conn:
            try:
                # BEGIN IMMEDIATE so the audit check and the update see the same row
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT version, document_json FROM tenders WHERE tender_id = ?",
                    (tender.tender_id,),
                ).fetchone()
                if row is None:
                    raise StoreError(f"Tender {tender.tender_id} does not exist")
                if row["version"] != expected_version:
                    raise VersionConflict(tender.tender_id, expected_version, row["version"])
                check_audit_extension(self._row_to_tender(row), tender)

                values = self._row_values(tender, new_version)
                cursor = conn.execute(
                    """
                    UPDATE tenders SET
                        version = ?, owner_id = ?, status = ?, workflow_type = ?,
                        deadline = ?, is_deleted = ?, revealed = ?,
                        document_json = ?, updated_at = ?
                    WHERE tender_id = ? AND version = ?
                """,
                    (*values, tender.tender_id, expected_version),
                )
                if cursor.rowcount != 1:
                    raise VersionConflict(tender.tender_id, expected_version, -1)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return tender.model_copy(update={"version": new_version})

    @retry_on_sqlite_lock()
    def find(self, query: TenderQuery) -> list[Tender]:
        conditions = []
        params: list[object] = []

        if not query.include_deleted:
            conditions.append("is_deleted = 0")
        if query.statuses is not None:
            if not query.statuses:
                return []
            conditions.append(f"status IN ({', '.join('?' for _ in query.statuses)})")
            params.extend(s.value for s in query.statuses)
        if query.workflow_type is not None:
            conditions.append("workflow_type = ?")
            params.append(query.workflow_type.value)
        if query.owner_id is not None:
            conditions.append("owner_id = ?")
            params.append(query.owner_id)
        if query.deadline_at_or_before is not None:
            conditions.append("deadline IS NOT NULL AND deadline <= ?")
            params.append(_to_db_time(query.deadline_at_or_before))
        if query.deadline_after is not None:
            conditions.append("deadline IS NOT NULL AND deadline > ?")
            params.append(_to_db_time(query.deadline_after))
        if query.revealed is not None:
            conditions.append("revealed = ?")
            params.append(1 if query.revealed else 0)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        sql = f"""
            SELECT document_json FROM tenders
            WHERE {where_clause}
            ORDER BY deadline IS NULL, deadline ASC, tender_id ASC
        """
        if query.limit:
            sql += " LIMIT ?"
            params.append(query.limit)

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_tender(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM tenders WHERE is_deleted = 0 GROUP BY status"
            ).fetchall()
        return {row["status"]: row["n"] for row in rows}

    def _row_to_tender(self, row: sqlite3.Row) -> Tender:
        try:
            return Tender.model_validate(json.loads(row["document_json"]))
        except ValueError as e:
            logger.error("Stored tender document is unreadable", error=str(e))
            raise StoreError(f"Corrupt tender document: {e}") from e
