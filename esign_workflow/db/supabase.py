"""Supabase database client implementing DatabaseInterface"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from esign_workflow.db.base import DatabaseInterface
from esign_workflow.errors import DuplicateRecordError
from esign_workflow.utils.config import get_settings

logger = logging.getLogger(__name__)

# Lazy imports to avoid requiring supabase when using sqlite mode
_supabase_client = None
_service_client = None

_UNIQUE_VIOLATION = "23505"


def _get_supabase_client():
    """Get or create the singleton Supabase client (anon key)."""
    global _supabase_client
    if _supabase_client is None:
        from supabase import ClientOptions, create_client

        settings = get_settings()
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_KEY must be set when DB_MODE=supabase"
            )
        _supabase_client = create_client(
            settings.supabase_url,
            settings.supabase_key,
            options=ClientOptions(
                postgrest_client_timeout=10,
                storage_client_timeout=30,
            ),
        )
    return _supabase_client


def _get_service_client():
    """Get or create the singleton Supabase service-role client (bypasses RLS)."""
    global _service_client
    if _service_client is None:
        from supabase import ClientOptions, create_client

        settings = get_settings()
        key = settings.supabase_service_key or settings.supabase_key
        if not settings.supabase_url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set for write operations"
            )
        _service_client = create_client(
            settings.supabase_url,
            key,
            options=ClientOptions(
                postgrest_client_timeout=10,
                storage_client_timeout=30,
            ),
        )
    return _service_client


class SupabaseClient(DatabaseInterface):
    """Supabase implementation of DatabaseInterface.

    Reads go through the anon client, writes through the service-role client.
    Conditional updates rely on PostgREST returning the updated rows.
    """

    def __init__(self):
        self._read = _get_supabase_client
        self._write = _get_service_client

    def init_db(self) -> None:
        """Users run the migration in the Supabase SQL Editor.
        This method verifies the schema exists."""
        client = self._read()
        try:
            client.table("contracts").select("id").limit(1).execute()
            logger.info("Supabase schema verified: tables accessible")
        except Exception as e:
            migration_path = Path(__file__).parent / "migrations" / "001_supabase.sql"
            logger.error(
                f"Schema not found. Run migration SQL in Supabase SQL Editor: {migration_path}"
            )
            raise RuntimeError(
                f"Supabase schema not initialized. Run 001_supabase.sql in SQL Editor. Error: {e}"
            ) from e

    def _insert(self, table: str, row: dict) -> str:
        result = self._write().table(table).insert(row).execute()
        return result.data[0]["id"]

    def _get(self, table: str, row_id: str) -> Optional[dict]:
        result = self._read().table(table).select("*").eq("id", row_id).execute()
        return result.data[0] if result.data else None

    def _patch(self, table: str, row_id: str, fields: Dict[str, Any]) -> bool:
        result = self._write().table(table).update(fields).eq("id", row_id).execute()
        return bool(result.data)

    # ---- contracts ----

    def insert_contract(self, contract: dict) -> str:
        return self._insert("contracts", contract)

    def get_contract(self, contract_id: str) -> Optional[dict]:
        return self._get("contracts", contract_id)

    def list_contracts(self, status: Optional[str] = None, limit: int = 100) -> List[dict]:
        query = self._read().table("contracts").select("*")
        if status:
            query = query.eq("status", status)
        return query.order("created_at", desc=True).limit(limit).execute().data

    def update_contract(self, contract_id: str, fields: Dict[str, Any]) -> bool:
        return self._patch("contracts", contract_id, fields)

    def transition_contract(
        self,
        contract_id: str,
        from_statuses: List[str],
        to_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        patch = {**(fields or {}), "status": to_status}
        result = (
            self._write()
            .table("contracts")
            .update(patch)
            .eq("id", contract_id)
            .in_("status", from_statuses)
            .execute()
        )
        return len(result.data) == 1

    # ---- signatures ----

    def insert_signature(self, signature: dict) -> str:
        from postgrest.exceptions import APIError

        try:
            return self._insert("signatures", signature)
        except APIError as e:
            if e.code == _UNIQUE_VIOLATION:
                raise DuplicateRecordError(
                    f"Signature already exists for role {signature.get('role')}"
                ) from e
            raise

    def get_signatures(self, contract_id: str) -> List[dict]:
        result = (
            self._read()
            .table("signatures")
            .select("*")
            .eq("contract_id", contract_id)
            .order("signed_at")
            .execute()
        )
        return result.data

    # ---- verification tokens ----

    def insert_token(self, token: dict) -> str:
        return self._insert("verification_tokens", token)

    def find_token(self, contract_id: str, code: str) -> Optional[dict]:
        result = (
            self._read()
            .table("verification_tokens")
            .select("*")
            .eq("contract_id", contract_id)
            .eq("code", code)
            .order("issued_at", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def list_tokens(self, contract_id: str) -> List[dict]:
        result = (
            self._read()
            .table("verification_tokens")
            .select("*")
            .eq("contract_id", contract_id)
            .order("issued_at", desc=True)
            .execute()
        )
        return result.data

    def supersede_tokens(self, contract_id: str, used_at: str) -> int:
        result = (
            self._write()
            .table("verification_tokens")
            .update({"used_at": used_at})
            .eq("contract_id", contract_id)
            .is_("used_at", "null")
            .execute()
        )
        return len(result.data)

    def mark_token_used(self, token_id: str, used_at: str, ip_address: str, user_agent: str) -> bool:
        result = (
            self._write()
            .table("verification_tokens")
            .update({"used_at": used_at, "used_ip": ip_address, "used_user_agent": user_agent})
            .eq("id", token_id)
            .is_("used_at", "null")
            .execute()
        )
        return len(result.data) == 1

    # ---- audit ledger ----

    def insert_audit_entry(self, entry: dict) -> str:
        return self._insert("audit_entries", entry)

    def list_audit_entries(self, contract_id: str) -> List[dict]:
        result = (
            self._read()
            .table("audit_entries")
            .select("*")
            .eq("contract_id", contract_id)
            .order("timestamp")
            .execute()
        )
        return result.data

    def insert_evidence(self, record: dict) -> str:
        return self._insert("evidence_records", record)

    def list_evidence(self, contract_id: str) -> List[dict]:
        result = (
            self._read()
            .table("evidence_records")
            .select("*")
            .eq("contract_id", contract_id)
            .order("collected_at")
            .execute()
        )
        return result.data

    # ---- document jobs ----

    def insert_job(self, job: dict) -> str:
        return self._insert("document_jobs", job)

    def get_job(self, job_id: str) -> Optional[dict]:
        return self._get("document_jobs", job_id)

    def find_active_job(self, contract_id: str) -> Optional[dict]:
        result = (
            self._read()
            .table("document_jobs")
            .select("*")
            .eq("contract_id", contract_id)
            .in_("status", ["pending", "processing"])
            .order("created_at")
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def list_jobs(self, status: Optional[str] = None, limit: int = 100) -> List[dict]:
        query = self._read().table("document_jobs").select("*")
        if status:
            query = query.eq("status", status)
        return query.order("created_at", desc=True).limit(limit).execute().data

    def list_claimable_jobs(self, now: str, limit: int) -> List[dict]:
        client = self._read()
        pending = (
            client.table("document_jobs")
            .select("*")
            .eq("status", "pending")
            .or_(f"next_attempt_at.is.null,next_attempt_at.lte.{now}")
            .order("created_at")
            .limit(limit)
            .execute()
        )
        stale = (
            client.table("document_jobs")
            .select("*")
            .eq("status", "processing")
            .lte("lease_expires_at", now)
            .order("created_at")
            .limit(limit)
            .execute()
        )
        # PostgREST cannot compare two columns, so attempts < max_attempts is checked here
        rows = [r for r in pending.data if r["attempts"] < r["max_attempts"]] + stale.data
        rows.sort(key=lambda r: r["created_at"])
        return rows[:limit]

    def claim_job(
        self,
        job_id: str,
        expected_status: str,
        expected_attempts: int,
        fields: Dict[str, Any],
    ) -> bool:
        result = (
            self._write()
            .table("document_jobs")
            .update(fields)
            .eq("id", job_id)
            .eq("status", expected_status)
            .eq("attempts", expected_attempts)
            .execute()
        )
        return len(result.data) == 1

    def update_job(self, job_id: str, fields: Dict[str, Any]) -> bool:
        return self._patch("document_jobs", job_id, fields)

    # ---- reminders ----

    def insert_reminders(self, reminders: List[dict]) -> int:
        if not reminders:
            return 0
        result = self._write().table("reminders").insert(reminders).execute()
        return len(result.data)

    def list_reminders(self, contract_id: str) -> List[dict]:
        result = (
            self._read()
            .table("reminders")
            .select("*")
            .eq("contract_id", contract_id)
            .order("due_at")
            .execute()
        )
        return result.data

    def list_due_reminders(self, now: str, max_attempts: int) -> List[dict]:
        result = (
            self._read()
            .table("reminders")
            .select("*")
            .eq("sent", False)
            .is_("cancelled_at", "null")
            .lte("due_at", now)
            .lt("attempts", max_attempts)
            .order("due_at")
            .execute()
        )
        return result.data

    def update_reminder(self, reminder_id: str, fields: Dict[str, Any]) -> bool:
        return self._patch("reminders", reminder_id, fields)

    def cancel_reminders(self, contract_id: str, reason: str, cancelled_at: str) -> int:
        result = (
            self._write()
            .table("reminders")
            .update({"cancelled_at": cancelled_at, "cancel_reason": reason})
            .eq("contract_id", contract_id)
            .eq("sent", False)
            .is_("cancelled_at", "null")
            .execute()
        )
        return len(result.data)

    def get_status(self) -> dict:
        """Row counts per table."""
        client = self._read()
        try:
            counts = {}
            for table in (
                "contracts", "signatures", "verification_tokens", "audit_entries",
                "evidence_records", "document_jobs", "reminders",
            ):
                result = client.table(table).select("id", count="exact").limit(1).execute()
                counts[table] = result.count or 0
            return {"mode": "supabase", **counts, "status": "connected"}
        except Exception as e:
            logger.warning(f"Supabase status check failed: {e}")
            return {"mode": "supabase", "status": f"error: {e}"}

    # Storage operations

    def upload_document(self, path: str, content: bytes, content_type: str = "application/pdf") -> str:
        """Upload a rendered document to Supabase Storage. Returns public URL."""
        settings = get_settings()
        bucket = self._write().storage.from_(settings.supabase_bucket)
        bucket.upload(
            path=path,
            file=content,
            file_options={"content-type": content_type, "upsert": "true"},
        )
        return bucket.get_public_url(path)


def get_database(mode: str = None) -> DatabaseInterface:
    """Factory: returns appropriate database implementation.

    mode: 'supabase' or 'sqlite'. Defaults to DB_MODE env var.
    """
    if mode is None:
        mode = get_settings().db_mode

    if mode == "supabase":
        return SupabaseClient()
    else:
        # Import here to avoid circular imports
        from esign_workflow.db.sqlite_client import SQLiteClient

        return SQLiteClient()
