"""Data models"""

from esign_workflow.models.contract import (
    ContractStatus,
    SignerRole,
    ClientContext,
    CertificateInfo,
    SignerInfo,
    ContractCreate,
    ContractUpdate,
    Contract,
    Signature,
    ContractSnapshot,
    InternalSignatureOutcome,
    ExternalSignatureOutcome,
)
from esign_workflow.models.token import (
    TokenFailureReason,
    VerificationToken,
    TokenValidationResult,
    TimeRemaining,
)
from esign_workflow.models.audit import (
    AuditEventKind,
    Geolocation,
    TechnicalEvidence,
    AuditEntry,
)
from esign_workflow.models.evidence import (
    EvidenceKind,
    SignatureEvidence,
    TokenEvidence,
    IntegrityEvidence,
    EvidenceRecord,
    ConformanceFlags,
    ComplianceReport,
    ValidationCertificate,
)
from esign_workflow.models.job import (
    JobStatus,
    DocumentJob,
    DocumentResult,
    JobStats,
    WorkerJob,
    WorkerStatus,
    UploadResult,
)
from esign_workflow.models.reminder import (
    ReminderKind,
    ReminderSchedule,
    SweepResult,
    EmailType,
    EmailResult,
    NotificationStats,
)

__all__ = [
    "ContractStatus",
    "SignerRole",
    "ClientContext",
    "CertificateInfo",
    "SignerInfo",
    "ContractCreate",
    "ContractUpdate",
    "Contract",
    "Signature",
    "ContractSnapshot",
    "InternalSignatureOutcome",
    "ExternalSignatureOutcome",
    "TokenFailureReason",
    "VerificationToken",
    "TokenValidationResult",
    "TimeRemaining",
    "AuditEventKind",
    "Geolocation",
    "TechnicalEvidence",
    "AuditEntry",
    "EvidenceKind",
    "SignatureEvidence",
    "TokenEvidence",
    "IntegrityEvidence",
    "EvidenceRecord",
    "ConformanceFlags",
    "ComplianceReport",
    "ValidationCertificate",
    "JobStatus",
    "DocumentJob",
    "DocumentResult",
    "JobStats",
    "WorkerJob",
    "WorkerStatus",
    "UploadResult",
    "ReminderKind",
    "ReminderSchedule",
    "SweepResult",
    "EmailType",
    "EmailResult",
    "NotificationStats",
]
