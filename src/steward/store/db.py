"""
SQLite storage for Steward.

This module persists proposals (with their lifecycle status and expiry) and
audit records. Everything lives in a single SQLite database file.

Design Principles:
    - Append-only audit: triggers reject UPDATE and DELETE on audit_records
    - Atomic transitions: proposal status changes are conditional UPDATEs,
      so a proposal can be claimed for execution at most once
    - Thread-safe: one connection guarded by a lock, usable from
      asyncio.to_thread workers
    - Self-contained: Single .db file contains everything

Tables:
    - proposals: Proposals and their status (pending, approved, ...)
    - audit_records: One row per terminal governance event
"""

import hashlib
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

from steward.errors import StorageConnectionError, StorageReadError, StorageWriteError
from steward.schema import (
    AuditKind,
    AuditRecord,
    Proposal,
    ProposalStatus,
    StoredProposal,
)

# Schema version for migrations
SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Proposals awaiting (or past) human approval
CREATE TABLE IF NOT EXISTS proposals (
    proposal_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    actor_id TEXT,
    tool TEXT NOT NULL,
    idempotency_key TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    proposal_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT,
    resolved_at TEXT,
    resolved_by TEXT,
    note TEXT
);

-- Audit trail: rows are written once and never changed
CREATE TABLE IF NOT EXISTS audit_records (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id TEXT NOT NULL UNIQUE,
    tenant_id TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    action TEXT NOT NULL,
    target_table TEXT,
    kind TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    amount REAL,
    timestamp TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS audit_records_no_update
BEFORE UPDATE ON audit_records
BEGIN
    SELECT RAISE(ABORT, 'audit records are append-only');
END;

CREATE TRIGGER IF NOT EXISTS audit_records_no_delete
BEFORE DELETE ON audit_records
BEGIN
    SELECT RAISE(ABORT, 'audit records are append-only');
END;

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_proposals_tenant_status ON proposals(tenant_id, status);
CREATE INDEX IF NOT EXISTS idx_proposals_idempotency ON proposals(tenant_id, idempotency_key);
CREATE INDEX IF NOT EXISTS idx_audit_tenant_actor ON audit_records(tenant_id, actor_id);
"""

# Statuses a proposal can never leave
TERMINAL_STATUSES = frozenset({
    ProposalStatus.EXECUTED,
    ProposalStatus.FAILED,
    ProposalStatus.REJECTED,
    ProposalStatus.EXPIRED,
})


def compute_hash(data: Any) -> str:
    """Compute SHA256 hash of data."""
    if data is None:
        return ""
    if isinstance(data, str):
        content = data.encode("utf-8")
    elif isinstance(data, bytes):
        content = data
    else:
        content = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def to_iso(value: datetime) -> str:
    """UTC ISO timestamp with fixed precision, so stored values sort as text."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return to_iso(datetime.now(UTC))


class StewardDB:
    """
    SQLite database for Steward storage.

    Usage:
        db = StewardDB("steward.db")
        stored = db.save_proposal(proposal)
        if db.claim_proposal("studio-1", stored.proposal.id, resolved_by="owner"):
            ...
        db.write_audit(record)
        db.close()

    Or use as context manager:
        with StewardDB("steward.db") as db:
            ...

    Use ":memory:" as the path for a throwaway database.
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file.
                     Will be created if it doesn't exist.
        """
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else None
        self._path_str = str(db_path)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._conn = sqlite3.connect(
                self._path_str,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=self._path_str,
                operation="connect",
                message=f"Failed to connect to database: {e}",
            ) from e

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        try:
            with self._lock:
                cursor = self._conn.executescript(CREATE_TABLES_SQL)
                cursor.close()

                cursor = self._conn.execute(
                    "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
                )
                if cursor.fetchone() is None:
                    self._conn.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now_iso()),
                    )
                self._conn.commit()
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="init_schema",
                underlying_error=str(e),
            ) from e

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Locked transaction: commit on success, roll back on error."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def schema_version(self) -> int:
        """Return the applied schema version."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
                ).fetchone()
            return int(row["version"]) if row else 0
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="schema_version",
                underlying_error=str(e),
            ) from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "StewardDB":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Proposal Operations
    # =========================================================================

    def _row_to_stored(self, row: sqlite3.Row) -> StoredProposal:
        return StoredProposal(
            proposal=Proposal.model_validate_json(row["proposal_json"]),
            status=ProposalStatus(row["status"]),
            resolved_by=row["resolved_by"],
            resolved_at=(
                datetime.fromisoformat(row["resolved_at"]) if row["resolved_at"] else None
            ),
            note=row["note"],
        )

    def _expire_stale(self, conn: sqlite3.Connection, now: str, tenant_id: str | None) -> int:
        sql = (
            "UPDATE proposals SET status = ?, resolved_at = ? "
            "WHERE status = ? AND expires_at IS NOT NULL AND expires_at <= ?"
        )
        params: list[Any] = [
            ProposalStatus.EXPIRED.value,
            now,
            ProposalStatus.PENDING.value,
            now,
        ]
        if tenant_id is not None:
            sql += " AND tenant_id = ?"
            params.append(tenant_id)
        return conn.execute(sql, params).rowcount

    def save_proposal(self, proposal: Proposal, now: datetime | None = None) -> StoredProposal:
        """
        Persist a new pending proposal.

        If a live pending proposal with the same tenant and idempotency key
        exists, nothing is inserted and the existing proposal is returned.

        Args:
            proposal: The proposal to persist (must carry a tenant_id)
            now: Clock override for expiry checks

        Returns:
            The stored proposal (new or existing duplicate)
        """
        if not proposal.tenant_id:
            msg = "proposal must carry a tenant_id to be persisted"
            raise ValueError(msg)

        now_str = to_iso(now or datetime.now(UTC))
        try:
            with self.transaction() as conn:
                self._expire_stale(conn, now_str, proposal.tenant_id)
                if proposal.idempotency_key:
                    row = conn.execute(
                        "SELECT * FROM proposals WHERE tenant_id = ? AND idempotency_key = ? "
                        "AND status = ? ORDER BY created_at LIMIT 1",
                        (
                            proposal.tenant_id,
                            proposal.idempotency_key,
                            ProposalStatus.PENDING.value,
                        ),
                    ).fetchone()
                    if row is not None:
                        return self._row_to_stored(row)

                conn.execute(
                    """
                    INSERT INTO proposals (
                        proposal_id, tenant_id, actor_id, tool, idempotency_key,
                        status, proposal_json, created_at, expires_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        proposal.id,
                        proposal.tenant_id,
                        proposal.actor_id,
                        proposal.tool,
                        proposal.idempotency_key,
                        ProposalStatus.PENDING.value,
                        proposal.model_dump_json(),
                        to_iso(proposal.created_at),
                        to_iso(proposal.expires_at) if proposal.expires_at else None,
                    ),
                )
            return StoredProposal(proposal=proposal)
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="save_proposal",
                underlying_error=str(e),
            ) from e

    def get_proposal(
        self,
        tenant_id: str,
        proposal_id: str,
        now: datetime | None = None,
    ) -> StoredProposal | None:
        """
        Get a proposal by ID, expiring it first if it is pending and stale.

        Args:
            tenant_id: Tenant the proposal must belong to
            proposal_id: The proposal ID to look up
            now: Clock override for expiry checks

        Returns:
            StoredProposal or None if not found for this tenant
        """
        now_str = to_iso(now or datetime.now(UTC))
        try:
            with self.transaction() as conn:
                self._expire_stale(conn, now_str, tenant_id)
                row = conn.execute(
                    "SELECT * FROM proposals WHERE proposal_id = ? AND tenant_id = ?",
                    (proposal_id, tenant_id),
                ).fetchone()
            return self._row_to_stored(row) if row else None
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="get_proposal",
                underlying_error=str(e),
            ) from e

    def list_proposals(
        self,
        tenant_id: str | None = None,
        status: ProposalStatus | None = None,
        limit: int = 100,
        now: datetime | None = None,
    ) -> list[StoredProposal]:
        """
        List proposals, newest first.

        Args:
            tenant_id: Only this tenant's proposals (all tenants if None)
            status: Only proposals in this status
            limit: Maximum number of proposals to return
            now: Clock override for expiry checks
        """
        now_str = to_iso(now or datetime.now(UTC))
        sql = "SELECT * FROM proposals WHERE 1 = 1"
        params: list[Any] = []
        if tenant_id is not None:
            sql += " AND tenant_id = ?"
            params.append(tenant_id)
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        try:
            with self.transaction() as conn:
                self._expire_stale(conn, now_str, tenant_id)
                rows = conn.execute(sql, params).fetchall()
            return [self._row_to_stored(row) for row in rows]
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="list_proposals",
                underlying_error=str(e),
            ) from e

    def claim_proposal(
        self,
        tenant_id: str,
        proposal_id: str,
        resolved_by: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Atomically move a live pending proposal to approved.

        Only one caller can win the claim; later calls return False.

        Returns:
            True if this call claimed the proposal
        """
        now_str = to_iso(now or datetime.now(UTC))
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE proposals
                    SET status = ?, resolved_at = ?, resolved_by = ?
                    WHERE proposal_id = ? AND tenant_id = ? AND status = ?
                      AND (expires_at IS NULL OR expires_at > ?)
                    """,
                    (
                        ProposalStatus.APPROVED.value,
                        now_str,
                        resolved_by,
                        proposal_id,
                        tenant_id,
                        ProposalStatus.PENDING.value,
                        now_str,
                    ),
                )
            return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="claim_proposal",
                underlying_error=str(e),
            ) from e

    def transition_proposal(
        self,
        tenant_id: str,
        proposal_id: str,
        from_status: ProposalStatus,
        to_status: ProposalStatus,
        resolved_by: str | None = None,
        note: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Conditionally move a proposal from one status to another.

        Returns:
            True if the proposal was in from_status and has been moved
        """
        if from_status in TERMINAL_STATUSES:
            return False
        now_str = to_iso(now or datetime.now(UTC))
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE proposals
                    SET status = ?, resolved_at = ?,
                        resolved_by = COALESCE(?, resolved_by),
                        note = COALESCE(?, note)
                    WHERE proposal_id = ? AND tenant_id = ? AND status = ?
                    """,
                    (
                        to_status.value,
                        now_str,
                        resolved_by,
                        note,
                        proposal_id,
                        tenant_id,
                        from_status.value,
                    ),
                )
            return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="transition_proposal",
                underlying_error=str(e),
            ) from e

    def expire_proposals(
        self,
        tenant_id: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """
        Expire every pending proposal past its expiry time.

        Returns:
            Number of proposals expired
        """
        now_str = to_iso(now or datetime.now(UTC))
        try:
            with self.transaction() as conn:
                return self._expire_stale(conn, now_str, tenant_id)
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="expire_proposals",
                underlying_error=str(e),
            ) from e

    # =========================================================================
    # Audit Operations
    # =========================================================================

    def write_audit(self, record: AuditRecord) -> None:
        """
        Append an audit record.

        Raises:
            StorageWriteError: If the insert fails (including duplicate ids)
        """
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_records (
                        record_id, tenant_id, actor_id, action, target_table,
                        kind, payload_json, amount, timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.record_id,
                        record.tenant_id,
                        record.actor_id,
                        record.action,
                        record.target_table,
                        record.kind.value,
                        json.dumps(record.payload, default=str),
                        record.amount,
                        to_iso(record.timestamp),
                    ),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="write_audit",
                underlying_error=str(e),
            ) from e

    def list_audit(
        self,
        tenant_id: str,
        actor_id: str | None = None,
        kind: AuditKind | None = None,
        limit: int = 1000,
    ) -> list[AuditRecord]:
        """
        List a tenant's audit records in write order.

        Args:
            tenant_id: Tenant to list
            actor_id: Only records for this actor
            kind: Only records of this kind
            limit: Maximum number of records to return
        """
        sql = "SELECT * FROM audit_records WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if actor_id is not None:
            sql += " AND actor_id = ?"
            params.append(actor_id)
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind.value)
        sql += " ORDER BY seq LIMIT ?"
        params.append(limit)

        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
            return [
                AuditRecord(
                    record_id=row["record_id"],
                    tenant_id=row["tenant_id"],
                    actor_id=row["actor_id"],
                    action=row["action"],
                    target_table=row["target_table"],
                    kind=AuditKind(row["kind"]),
                    payload=json.loads(row["payload_json"]),
                    amount=row["amount"],
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                )
                for row in rows
            ]
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="list_audit",
                underlying_error=str(e),
            ) from e

    def count_audit(self, tenant_id: str | None = None) -> int:
        """Count audit records, optionally for one tenant."""
        sql = "SELECT COUNT(*) AS n FROM audit_records"
        params: tuple[Any, ...] = ()
        if tenant_id is not None:
            sql += " WHERE tenant_id = ?"
            params = (tenant_id,)
        try:
            with self._lock:
                row = self._conn.execute(sql, params).fetchone()
            return int(row["n"])
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="count_audit",
                underlying_error=str(e),
            ) from e
