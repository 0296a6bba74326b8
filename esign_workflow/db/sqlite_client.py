"""SQLite implementation of DatabaseInterface"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from esign_workflow.db.base import DatabaseInterface
from esign_workflow.db import sqlite as sqlite_ops
from esign_workflow.db.sqlite import fetch_all, fetch_one, get_connection, insert_row, update_row
from esign_workflow.errors import DuplicateRecordError
from esign_workflow.utils.config import get_settings

logger = logging.getLogger(__name__)


class SQLiteClient(DatabaseInterface):
    """SQLite implementation of DatabaseInterface.
    Each call opens its own connection; CAS updates are single statements."""

    def init_db(self) -> None:
        sqlite_ops.init_db()

    # ---- contracts ----

    def insert_contract(self, contract: dict) -> str:
        with get_connection() as conn:
            return insert_row(conn, "contracts", contract)

    def get_contract(self, contract_id: str) -> Optional[dict]:
        with get_connection() as conn:
            return fetch_one(conn, "SELECT * FROM contracts WHERE id = ?", (contract_id,))

    def list_contracts(self, status: Optional[str] = None, limit: int = 100) -> List[dict]:
        with get_connection() as conn:
            if status:
                return fetch_all(
                    conn,
                    "SELECT * FROM contracts WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (status, limit),
                )
            return fetch_all(conn, "SELECT * FROM contracts ORDER BY created_at DESC LIMIT ?", (limit,))

    def update_contract(self, contract_id: str, fields: Dict[str, Any]) -> bool:
        with get_connection() as conn:
            return update_row(conn, "contracts", contract_id, fields) == 1

    def transition_contract(
        self,
        contract_id: str,
        from_statuses: List[str],
        to_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        patch = {**(fields or {}), "status": to_status}
        placeholders = ", ".join("?" for _ in from_statuses)
        with get_connection() as conn:
            changed = update_row(
                conn, "contracts", contract_id, patch,
                where=f"status IN ({placeholders})", params=from_statuses,
            )
        return changed == 1

    # ---- signatures ----

    def insert_signature(self, signature: dict) -> str:
        try:
            with get_connection() as conn:
                return insert_row(conn, "signatures", signature)
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(
                f"Signature already exists for role {signature.get('role')}"
            ) from e

    def get_signatures(self, contract_id: str) -> List[dict]:
        with get_connection() as conn:
            return fetch_all(
                conn,
                "SELECT * FROM signatures WHERE contract_id = ? ORDER BY signed_at, rowid",
                (contract_id,),
            )

    # ---- verification tokens ----

    def insert_token(self, token: dict) -> str:
        with get_connection() as conn:
            return insert_row(conn, "verification_tokens", token)

    def find_token(self, contract_id: str, code: str) -> Optional[dict]:
        with get_connection() as conn:
            return fetch_one(
                conn,
                "SELECT * FROM verification_tokens WHERE contract_id = ? AND code = ? "
                "ORDER BY issued_at DESC, rowid DESC LIMIT 1",
                (contract_id, code),
            )

    def list_tokens(self, contract_id: str) -> List[dict]:
        with get_connection() as conn:
            return fetch_all(
                conn,
                "SELECT * FROM verification_tokens WHERE contract_id = ? "
                "ORDER BY issued_at DESC, rowid DESC",
                (contract_id,),
            )

    def supersede_tokens(self, contract_id: str, used_at: str) -> int:
        with get_connection() as conn:
            cursor = conn.execute(
                "UPDATE verification_tokens SET used_at = ? "
                "WHERE contract_id = ? AND used_at IS NULL",
                (used_at, contract_id),
            )
            return cursor.rowcount

    def mark_token_used(self, token_id: str, used_at: str, ip_address: str, user_agent: str) -> bool:
        with get_connection() as conn:
            changed = update_row(
                conn, "verification_tokens", token_id,
                {"used_at": used_at, "used_ip": ip_address, "used_user_agent": user_agent},
                where="used_at IS NULL",
            )
        return changed == 1

    # ---- audit ledger ----

    def insert_audit_entry(self, entry: dict) -> str:
        with get_connection() as conn:
            return insert_row(conn, "audit_entries", entry)

    def list_audit_entries(self, contract_id: str) -> List[dict]:
        with get_connection() as conn:
            return fetch_all(
                conn,
                "SELECT * FROM audit_entries WHERE contract_id = ? ORDER BY timestamp, rowid",
                (contract_id,),
            )

    def insert_evidence(self, record: dict) -> str:
        with get_connection() as conn:
            return insert_row(conn, "evidence_records", record)

    def list_evidence(self, contract_id: str) -> List[dict]:
        with get_connection() as conn:
            return fetch_all(
                conn,
                "SELECT * FROM evidence_records WHERE contract_id = ? ORDER BY collected_at, rowid",
                (contract_id,),
            )

    # ---- document jobs ----

    def insert_job(self, job: dict) -> str:
        with get_connection() as conn:
            return insert_row(conn, "document_jobs", job)

    def get_job(self, job_id: str) -> Optional[dict]:
        with get_connection() as conn:
            return fetch_one(conn, "SELECT * FROM document_jobs WHERE id = ?", (job_id,))

    def find_active_job(self, contract_id: str) -> Optional[dict]:
        with get_connection() as conn:
            return fetch_one(
                conn,
                "SELECT * FROM document_jobs WHERE contract_id = ? "
                "AND status IN ('pending', 'processing') ORDER BY created_at LIMIT 1",
                (contract_id,),
            )

    def list_jobs(self, status: Optional[str] = None, limit: int = 100) -> List[dict]:
        with get_connection() as conn:
            if status:
                return fetch_all(
                    conn,
                    "SELECT * FROM document_jobs WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (status, limit),
                )
            return fetch_all(conn, "SELECT * FROM document_jobs ORDER BY created_at DESC LIMIT ?", (limit,))

    def list_claimable_jobs(self, now: str, limit: int) -> List[dict]:
        with get_connection() as conn:
            return fetch_all(
                conn,
                """
                SELECT * FROM document_jobs
                WHERE (status = 'pending' AND attempts < max_attempts
                       AND (next_attempt_at IS NULL OR next_attempt_at <= ?))
                   OR (status = 'processing' AND lease_expires_at IS NOT NULL
                       AND lease_expires_at <= ?)
                ORDER BY created_at, rowid
                LIMIT ?
                """,
                (now, now, limit),
            )

    def claim_job(
        self,
        job_id: str,
        expected_status: str,
        expected_attempts: int,
        fields: Dict[str, Any],
    ) -> bool:
        with get_connection() as conn:
            changed = update_row(
                conn, "document_jobs", job_id, fields,
                where="status = ? AND attempts = ?",
                params=(expected_status, expected_attempts),
            )
        return changed == 1

    def update_job(self, job_id: str, fields: Dict[str, Any]) -> bool:
        with get_connection() as conn:
            return update_row(conn, "document_jobs", job_id, fields) == 1

    # ---- reminders ----

    def insert_reminders(self, reminders: List[dict]) -> int:
        with get_connection() as conn:
            for reminder in reminders:
                insert_row(conn, "reminders", reminder)
        return len(reminders)

    def list_reminders(self, contract_id: str) -> List[dict]:
        with get_connection() as conn:
            return fetch_all(
                conn,
                "SELECT * FROM reminders WHERE contract_id = ? ORDER BY due_at, rowid",
                (contract_id,),
            )

    def list_due_reminders(self, now: str, max_attempts: int) -> List[dict]:
        with get_connection() as conn:
            return fetch_all(
                conn,
                "SELECT * FROM reminders WHERE sent = 0 AND cancelled_at IS NULL "
                "AND due_at <= ? AND attempts < ? ORDER BY due_at, rowid",
                (now, max_attempts),
            )

    def update_reminder(self, reminder_id: str, fields: Dict[str, Any]) -> bool:
        with get_connection() as conn:
            return update_row(conn, "reminders", reminder_id, fields) == 1

    def cancel_reminders(self, contract_id: str, reason: str, cancelled_at: str) -> int:
        with get_connection() as conn:
            cursor = conn.execute(
                "UPDATE reminders SET cancelled_at = ?, cancel_reason = ? "
                "WHERE contract_id = ? AND sent = 0 AND cancelled_at IS NULL",
                (cancelled_at, reason, contract_id),
            )
            return cursor.rowcount

    def get_status(self) -> dict:
        settings = get_settings()
        try:
            counts = {}
            with get_connection() as conn:
                for table in sqlite_ops.TABLE_COLUMNS:
                    counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            return {
                "mode": "sqlite",
                "path": settings.database_path,
                **counts,
                "status": "connected",
            }
        except Exception as e:
            logger.warning(f"SQLite status check failed: {e}")
            return {
                "mode": "sqlite",
                "path": settings.database_path,
                "status": f"error: {e}",
            }
