"""Audit ledger models.

Every event kind carries a payload of fixed shape. The ``kind`` field on the
payload is the discriminator, so stored JSON is parsed back into the right
model and consumers match on the payload class instead of probing keys.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class AuditEventKind(str, Enum):
    CONTRACT_CREATED = "contract_created"
    CONTRACT_EDITED = "contract_edited"
    STATUS_CHANGED = "status_changed"
    SIGNATURE_APPLIED = "signature_applied"
    TOKEN_ISSUED = "token_issued"
    TOKEN_VALIDATED = "token_validated"
    TOKEN_REJECTED = "token_rejected"
    EMAIL_SENT = "email_sent"
    EMAIL_FAILED = "email_failed"
    REMINDERS_SCHEDULED = "reminders_scheduled"
    REMINDERS_CANCELLED = "reminders_cancelled"
    REMINDER_SENT = "reminder_sent"
    REMINDER_FAILED = "reminder_failed"
    DOCUMENT_GENERATED = "document_generated"
    DOCUMENT_GENERATION_FAILED = "document_generation_failed"
    JOB_REPROCESSED = "job_reprocessed"
    EVIDENCE_RECORDED = "evidence_recorded"
    ACCESS_ATTEMPT = "access_attempt"
    VALIDATION_PERFORMED = "validation_performed"


class Geolocation(BaseModel):
    latitude: float
    longitude: float
    accuracy: float = 0.0


class TechnicalEvidence(BaseModel):
    """Environment facts captured with each audit entry"""
    ip_address: str = ""
    user_agent: str = ""
    timestamp: str                  # ISO-8601
    timezone: str = "UTC"           # IANA name
    geolocation: Optional[Geolocation] = None


# ---- Payloads, one per event kind ----

class ContractCreatedPayload(BaseModel):
    kind: Literal["contract_created"] = "contract_created"
    title: str
    external_signer: str
    initial_status: str
    template_name: Optional[str] = None


class ContractEditedPayload(BaseModel):
    kind: Literal["contract_edited"] = "contract_edited"
    changed_fields: List[str]
    changes: Dict[str, Any] = {}


class StatusChangedPayload(BaseModel):
    kind: Literal["status_changed"] = "status_changed"
    previous_status: str
    new_status: str
    automatic: bool = False


class SignatureAppliedPayload(BaseModel):
    kind: Literal["signature_applied"] = "signature_applied"
    signature_id: str
    role: str
    signer_name: str
    certificate_issuer: Optional[str] = None
    certificate_thumbprint: Optional[str] = None
    signature_hash: Optional[str] = None
    token_id: Optional[str] = None


class TokenIssuedPayload(BaseModel):
    kind: Literal["token_issued"] = "token_issued"
    token_id: str
    destination_email: str
    code_hint: str
    valid_until: str
    superseded_count: int = 0


class TokenValidatedPayload(BaseModel):
    kind: Literal["token_validated"] = "token_validated"
    token_id: str
    code_hint: str


class TokenRejectedPayload(BaseModel):
    kind: Literal["token_rejected"] = "token_rejected"
    code_hint: str
    reason: str
    token_id: Optional[str] = None


class EmailSentPayload(BaseModel):
    kind: Literal["email_sent"] = "email_sent"
    email_type: str
    recipient: str
    message_id: Optional[str] = None


class EmailFailedPayload(BaseModel):
    kind: Literal["email_failed"] = "email_failed"
    email_type: str
    recipient: str
    error: str


class ScheduledReminder(BaseModel):
    reminder_kind: str
    due_at: str


class RemindersScheduledPayload(BaseModel):
    kind: Literal["reminders_scheduled"] = "reminders_scheduled"
    reminders: List[ScheduledReminder]


class RemindersCancelledPayload(BaseModel):
    kind: Literal["reminders_cancelled"] = "reminders_cancelled"
    reason: str
    cancelled_count: int


class ReminderSentPayload(BaseModel):
    kind: Literal["reminder_sent"] = "reminder_sent"
    reminder_kind: str
    reminder_id: Optional[str] = None   # None for manual reminders
    attempt: int = 1


class ReminderFailedPayload(BaseModel):
    kind: Literal["reminder_failed"] = "reminder_failed"
    reminder_id: str
    reminder_kind: str
    attempts: int
    error: str


class DocumentGeneratedPayload(BaseModel):
    kind: Literal["document_generated"] = "document_generated"
    document_hash: str
    document_url: str
    storage: str
    size_bytes: int = 0
    job_id: Optional[str] = None
    reused: bool = False


class DocumentGenerationFailedPayload(BaseModel):
    kind: Literal["document_generation_failed"] = "document_generation_failed"
    error: str
    attempts: int = 0
    terminal: bool = False
    job_id: Optional[str] = None


class JobReprocessedPayload(BaseModel):
    kind: Literal["job_reprocessed"] = "job_reprocessed"
    job_id: str
    previous_status: str
    previous_attempts: int


class EvidenceRecordedPayload(BaseModel):
    kind: Literal["evidence_recorded"] = "evidence_recorded"
    evidence_id: str
    evidence_kind: str
    content_hash: str


class AccessAttemptPayload(BaseModel):
    kind: Literal["access_attempt"] = "access_attempt"
    access_type: str
    success: bool
    details: Optional[str] = None


class ValidationPerformedPayload(BaseModel):
    kind: Literal["validation_performed"] = "validation_performed"
    legally_valid: bool
    flags: Dict[str, bool]
    evidence_count: int


AuditPayload = Annotated[
    Union[
        ContractCreatedPayload,
        ContractEditedPayload,
        StatusChangedPayload,
        SignatureAppliedPayload,
        TokenIssuedPayload,
        TokenValidatedPayload,
        TokenRejectedPayload,
        EmailSentPayload,
        EmailFailedPayload,
        RemindersScheduledPayload,
        RemindersCancelledPayload,
        ReminderSentPayload,
        ReminderFailedPayload,
        DocumentGeneratedPayload,
        DocumentGenerationFailedPayload,
        JobReprocessedPayload,
        EvidenceRecordedPayload,
        AccessAttemptPayload,
        ValidationPerformedPayload,
    ],
    Field(discriminator="kind"),
]

audit_payload_adapter = TypeAdapter(AuditPayload)


class AuditEntry(BaseModel):
    """Append-only ledger row"""
    id: str = ""
    contract_id: str
    kind: AuditEventKind
    description: str
    payload: AuditPayload
    evidence: TechnicalEvidence
    actor_id: Optional[str] = None
    timestamp: datetime
