"""Abstract database interface: strategy pattern for SQLite/Supabase switching.

Rows cross this boundary as plain dicts with ISO timestamp strings and
JSON-compatible nested values. Contract updates are targeted field patches;
status moves, token redemption and job claims are compare-and-set updates
that report whether the row matched.

Audit entries and evidence records have insert and read methods only.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from esign_workflow.utils.clock import to_iso


def serialize_row(value: Any) -> Any:
    """Convert model dumps into storable values (ISO datetimes, enum values)."""
    if isinstance(value, BaseModel):
        return serialize_row(value.model_dump())
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: serialize_row(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_row(v) for v in value]
    return value


class DatabaseInterface(ABC):
    """Abstract interface for workflow persistence.
    Implemented by both SQLite and Supabase backends."""

    @abstractmethod
    def init_db(self) -> None:
        """Initialize database schema (create tables, indexes)."""

    # ---- contracts ----

    @abstractmethod
    def insert_contract(self, contract: dict) -> str:
        """Insert a contract. Returns contract ID."""

    @abstractmethod
    def get_contract(self, contract_id: str) -> Optional[dict]:
        """Get contract by ID."""

    @abstractmethod
    def list_contracts(self, status: Optional[str] = None, limit: int = 100) -> List[dict]:
        """List contracts, newest first."""

    @abstractmethod
    def update_contract(self, contract_id: str, fields: Dict[str, Any]) -> bool:
        """Patch only the given columns. Returns False if the contract is unknown."""

    @abstractmethod
    def transition_contract(
        self,
        contract_id: str,
        from_statuses: List[str],
        to_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move status only if the current status is one of ``from_statuses``."""

    # ---- signatures ----

    @abstractmethod
    def insert_signature(self, signature: dict) -> str:
        """Insert a signature. Raises DuplicateRecordError for a second signature per role."""

    @abstractmethod
    def get_signatures(self, contract_id: str) -> List[dict]:
        """All signatures of a contract, oldest first."""

    # ---- verification tokens ----

    @abstractmethod
    def insert_token(self, token: dict) -> str:
        """Insert a verification token. Returns token ID."""

    @abstractmethod
    def find_token(self, contract_id: str, code: str) -> Optional[dict]:
        """Most recently issued token with this code for the contract."""

    @abstractmethod
    def list_tokens(self, contract_id: str) -> List[dict]:
        """All tokens of a contract, newest first."""

    @abstractmethod
    def supersede_tokens(self, contract_id: str, used_at: str) -> int:
        """Mark every unused token of the contract as used. Returns count."""

    @abstractmethod
    def mark_token_used(self, token_id: str, used_at: str, ip_address: str, user_agent: str) -> bool:
        """Set used_at only where it is still NULL. True if this call won."""

    # ---- audit ledger ----

    @abstractmethod
    def insert_audit_entry(self, entry: dict) -> str:
        """Append an audit entry. Returns entry ID."""

    @abstractmethod
    def list_audit_entries(self, contract_id: str) -> List[dict]:
        """Audit entries of a contract in ascending timestamp order."""

    @abstractmethod
    def insert_evidence(self, record: dict) -> str:
        """Append an evidence record. Returns record ID."""

    @abstractmethod
    def list_evidence(self, contract_id: str) -> List[dict]:
        """Evidence records of a contract, oldest first."""

    # ---- document jobs ----

    @abstractmethod
    def insert_job(self, job: dict) -> str:
        """Insert a document job. Returns job ID."""

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[dict]:
        """Get job by ID."""

    @abstractmethod
    def find_active_job(self, contract_id: str) -> Optional[dict]:
        """Pending or processing job for the contract, if any."""

    @abstractmethod
    def list_jobs(self, status: Optional[str] = None, limit: int = 100) -> List[dict]:
        """List jobs, newest first."""

    @abstractmethod
    def list_claimable_jobs(self, now: str, limit: int) -> List[dict]:
        """Pending jobs that are due, plus processing jobs whose lease expired. FIFO."""

    @abstractmethod
    def claim_job(
        self,
        job_id: str,
        expected_status: str,
        expected_attempts: int,
        fields: Dict[str, Any],
    ) -> bool:
        """Patch the job only if status and attempts still match. True if claimed."""

    @abstractmethod
    def update_job(self, job_id: str, fields: Dict[str, Any]) -> bool:
        """Patch the given job columns."""

    # ---- reminders ----

    @abstractmethod
    def insert_reminders(self, reminders: List[dict]) -> int:
        """Insert reminder rows. Returns count."""

    @abstractmethod
    def list_reminders(self, contract_id: str) -> List[dict]:
        """Reminders of a contract ordered by due time."""

    @abstractmethod
    def list_due_reminders(self, now: str, max_attempts: int) -> List[dict]:
        """Unsent, uncancelled reminders due at ``now`` with attempts left."""

    @abstractmethod
    def update_reminder(self, reminder_id: str, fields: Dict[str, Any]) -> bool:
        """Patch the given reminder columns."""

    @abstractmethod
    def cancel_reminders(self, contract_id: str, reason: str, cancelled_at: str) -> int:
        """Cancel every open reminder of the contract. Returns count."""

    @abstractmethod
    def get_status(self) -> dict:
        """Get database status info (table counts, connection status)."""
