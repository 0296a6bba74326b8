"""Legal evidence records and compliance reporting models"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from esign_workflow.models.audit import AuditEntry
from esign_workflow.models.contract import CertificateInfo


class EvidenceKind(str, Enum):
    SIGNATURE = "signature"
    TOKEN = "token"
    INTEGRITY = "integrity"


class SignatureEvidence(BaseModel):
    """Qualified internal signature: certificate metadata plus signing context"""
    kind: Literal["signature"] = "signature"
    signature_id: str
    signer_name: str
    signer_document: Optional[str] = None
    certificate: CertificateInfo
    signature_hash: Optional[str] = None
    algorithm: str = "SHA-256"
    signed_at: datetime
    ip_address: str = ""
    user_agent: str = ""


class TokenEvidence(BaseModel):
    """External simple signature authenticated by an emailed code"""
    kind: Literal["token"] = "token"
    signature_id: str
    token_id: str
    code_hint: str
    issued_at: datetime
    valid_until: datetime
    used_at: datetime
    verified_email: str
    signer_name: str
    ip_address: str = ""
    user_agent: str = ""
    method: str = "email_token"


class IntegrityEvidence(BaseModel):
    """Hash of the canonical rendered document"""
    kind: Literal["integrity"] = "integrity"
    document_hash: str
    algorithm: str = "SHA-256"
    size_bytes: int
    format: str = "PDF"
    document_url: str
    storage: str
    generated_at: datetime


EvidencePayload = Annotated[
    Union[SignatureEvidence, TokenEvidence, IntegrityEvidence],
    Field(discriminator="kind"),
]

evidence_payload_adapter = TypeAdapter(EvidencePayload)


class EvidenceRecord(BaseModel):
    """Hashed, immutable snapshot supporting one workflow milestone"""
    id: str = ""
    contract_id: str
    kind: EvidenceKind
    payload: EvidencePayload
    content_hash: str
    collected_at: datetime
    valid: bool = True


class CriticalEvidence(BaseModel):
    signatures: int = 0
    edits: int = 0
    access_attempts: int = 0


class ConformanceFlags(BaseModel):
    evidence_complete: bool = False
    timestamps_valid: bool = False
    qualified_certificate_present: bool = False
    integrity_evidence_present: bool = False

    def all_met(self) -> bool:
        return all(self.model_dump().values())


class ComplianceReport(BaseModel):
    """Aggregated view of a contract's audit trail and evidence"""
    contract_id: str
    contract_title: str
    status: str
    total_events: int
    events_by_kind: Dict[str, int] = {}
    timeline: List[AuditEntry] = []
    evidence_records: List[EvidenceRecord] = []
    critical_evidence: CriticalEvidence
    conformance: ConformanceFlags
    legally_valid: bool
    generated_at: datetime


class ValidationCertificate(BaseModel):
    """Certificate summarizing a validated contract"""
    certificate_number: str
    contract_id: str
    document_hash: str = ""
    signatures_validated: int
    evidence_count: int
    conformance_percent: int
    legally_valid: bool
    issued_at: datetime
    valid_until: datetime
    authority: str
