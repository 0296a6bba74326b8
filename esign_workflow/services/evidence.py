"""Legal evidence records, compliance report and validation certificate"""

import logging
import uuid
from datetime import timedelta
from typing import List, Optional

from esign_workflow.db.base import DatabaseInterface, serialize_row
from esign_workflow.errors import NotFoundError
from esign_workflow.models.audit import (
    AuditEntry,
    AuditEventKind,
    EvidenceRecordedPayload,
    ValidationPerformedPayload,
)
from esign_workflow.models.contract import ContractStatus
from esign_workflow.models.evidence import (
    ComplianceReport,
    ConformanceFlags,
    CriticalEvidence,
    EvidenceKind,
    EvidenceRecord,
    IntegrityEvidence,
    SignatureEvidence,
    TokenEvidence,
    ValidationCertificate,
)
from esign_workflow.services.audit import AuditService
from esign_workflow.utils.clock import Clock, parse_iso, utcnow
from esign_workflow.utils.config import Settings, get_settings
from esign_workflow.utils.hashing import payload_hash

logger = logging.getLogger(__name__)

CERTIFICATE_VALIDITY = timedelta(days=3650)

EVENT_LABELS = {
    AuditEventKind.CONTRACT_CREATED: "Contract created",
    AuditEventKind.CONTRACT_EDITED: "Contract edited",
    AuditEventKind.STATUS_CHANGED: "Status changed",
    AuditEventKind.SIGNATURE_APPLIED: "Signature applied",
    AuditEventKind.TOKEN_ISSUED: "Verification code issued",
    AuditEventKind.TOKEN_VALIDATED: "Verification code accepted",
    AuditEventKind.TOKEN_REJECTED: "Verification code rejected",
    AuditEventKind.EMAIL_SENT: "Email sent",
    AuditEventKind.EMAIL_FAILED: "Email failed",
    AuditEventKind.REMINDERS_SCHEDULED: "Reminders scheduled",
    AuditEventKind.REMINDERS_CANCELLED: "Reminders cancelled",
    AuditEventKind.REMINDER_SENT: "Reminder sent",
    AuditEventKind.REMINDER_FAILED: "Reminder failed",
    AuditEventKind.DOCUMENT_GENERATED: "Document generated",
    AuditEventKind.DOCUMENT_GENERATION_FAILED: "Document generation failed",
    AuditEventKind.JOB_REPROCESSED: "Document job reprocessed",
    AuditEventKind.EVIDENCE_RECORDED: "Evidence recorded",
    AuditEventKind.ACCESS_ATTEMPT: "Access attempt",
    AuditEventKind.VALIDATION_PERFORMED: "Validation performed",
}


class EvidenceService:
    """Stores hashed evidence snapshots and evaluates legal conformance."""

    def __init__(
        self,
        db: DatabaseInterface,
        audit: AuditService,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.audit = audit
        self.settings = settings or get_settings()
        self.clock = clock

    async def record_evidence(
        self,
        contract_id: str,
        payload: SignatureEvidence | TokenEvidence | IntegrityEvidence,
    ) -> EvidenceRecord:
        """Persist an evidence snapshot with its canonical SHA-256 content hash."""
        record = EvidenceRecord(
            id=str(uuid.uuid4()),
            contract_id=contract_id,
            kind=EvidenceKind(payload.kind),
            payload=payload,
            content_hash=payload_hash(serialize_row(payload)),
            collected_at=self.clock(),
        )
        self.db.insert_evidence(serialize_row(record))
        logger.info(f"Recorded {record.kind.value} evidence for contract {contract_id}")

        self.audit.emit(
            contract_id,
            AuditEventKind.EVIDENCE_RECORDED,
            f"{record.kind.value.capitalize()} evidence recorded",
            EvidenceRecordedPayload(
                evidence_id=record.id,
                evidence_kind=record.kind.value,
                content_hash=record.content_hash,
            ),
        )
        return record

    def list_evidence(self, contract_id: str) -> List[EvidenceRecord]:
        return [EvidenceRecord.model_validate(row) for row in self.db.list_evidence(contract_id)]

    def verify_record(self, record: EvidenceRecord) -> bool:
        """True if the stored hash still matches the payload."""
        return payload_hash(serialize_row(record.payload)) == record.content_hash

    def _is_recognized_issuer(self, issuer: str) -> bool:
        issuer = (issuer or "").lower()
        return any(name.lower() in issuer for name in self.settings.recognized_certificate_issuers)

    def _timestamps_valid(self, entries: List[AuditEntry]) -> bool:
        now = self.clock()
        for entry in entries:
            try:
                evidence_time = parse_iso(entry.evidence.timestamp)
            except ValueError:
                return False
            if evidence_time is None or evidence_time > now or entry.timestamp > now:
                return False
        return True

    async def build_report(self, contract_id: str) -> ComplianceReport:
        """Aggregate the audit trail and evidence of a contract."""
        contract = self.db.get_contract(contract_id)
        if not contract:
            raise NotFoundError("Contract", contract_id)

        entries = await self.audit.list_entries(contract_id)
        records = self.list_evidence(contract_id)

        events_by_kind: dict[str, int] = {}
        for entry in entries:
            events_by_kind[entry.kind.value] = events_by_kind.get(entry.kind.value, 0) + 1

        critical = CriticalEvidence(
            signatures=events_by_kind.get(AuditEventKind.SIGNATURE_APPLIED.value, 0),
            edits=events_by_kind.get(AuditEventKind.CONTRACT_EDITED.value, 0),
            access_attempts=events_by_kind.get(AuditEventKind.ACCESS_ATTEMPT.value, 0),
        )

        conformance = ConformanceFlags(
            evidence_complete=bool(entries) and all(
                e.evidence.ip_address and e.evidence.user_agent for e in entries
            ),
            timestamps_valid=bool(entries) and self._timestamps_valid(entries),
            qualified_certificate_present=any(
                isinstance(r.payload, SignatureEvidence)
                and self._is_recognized_issuer(r.payload.certificate.issuer)
                for r in records
            ),
            integrity_evidence_present=any(isinstance(r.payload, IntegrityEvidence) for r in records),
        )

        return ComplianceReport(
            contract_id=contract_id,
            contract_title=contract["title"],
            status=contract["status"],
            total_events=len(entries),
            events_by_kind=events_by_kind,
            timeline=entries,
            evidence_records=records,
            critical_evidence=critical,
            conformance=conformance,
            legally_valid=contract["status"] == ContractStatus.FINALIZED.value and conformance.all_met(),
            generated_at=self.clock(),
        )

    def render_report_text(self, report: ComplianceReport) -> str:
        """Plain-text validation report for operators and archives."""
        def mark(flag: bool) -> str:
            return "OK" if flag else "MISSING"

        flags = report.conformance
        lines = [
            "CONTRACT VALIDATION REPORT",
            "=" * 60,
            f"Contract: {report.contract_title}",
            f"ID: {report.contract_id}",
            f"Status: {report.status}",
            f"Generated at: {report.generated_at.isoformat()}",
            "",
            "CONFORMANCE",
            "-" * 60,
            f"Technical evidence complete:     {mark(flags.evidence_complete)}",
            f"Timestamps valid:                {mark(flags.timestamps_valid)}",
            f"Qualified certificate present:   {mark(flags.qualified_certificate_present)}",
            f"Document integrity evidence:     {mark(flags.integrity_evidence_present)}",
            "",
            f"Legally valid: {'YES' if report.legally_valid else 'NO'}",
            "",
            "CRITICAL EVIDENCE",
            "-" * 60,
            f"Signatures: {report.critical_evidence.signatures}",
            f"Edits: {report.critical_evidence.edits}",
            f"Access attempts: {report.critical_evidence.access_attempts}",
            "",
            f"EVENTS ({report.total_events})",
            "-" * 60,
        ]
        for kind, count in sorted(report.events_by_kind.items()):
            lines.append(f"{kind}: {count}")

        lines += ["", "TIMELINE", "-" * 60]
        for entry in report.timeline:
            label = EVENT_LABELS.get(entry.kind, entry.kind.value)
            lines.append(
                f"{entry.timestamp.isoformat()}  {label}: {entry.description} "
                f"[ip={entry.evidence.ip_address}]"
            )

        lines += ["", f"EVIDENCE RECORDS ({len(report.evidence_records)})", "-" * 60]
        for record in report.evidence_records:
            lines.append(f"{record.collected_at.isoformat()}  {record.kind.value}  sha256={record.content_hash}")

        return "\n".join(lines)

    async def issue_certificate(self, contract_id: str) -> ValidationCertificate:
        """Summarize a contract's validation outcome as a certificate."""
        report = await self.build_report(contract_id)
        contract = self.db.get_contract(contract_id) or {}
        issued_at = self.clock()

        flag_values = list(report.conformance.model_dump().values())
        conformance_percent = round(100 * sum(flag_values) / len(flag_values))
        signatures_validated = sum(
            1 for r in report.evidence_records
            if r.kind in (EvidenceKind.SIGNATURE, EvidenceKind.TOKEN) and self.verify_record(r)
        )

        certificate = ValidationCertificate(
            certificate_number=f"CERT-{issued_at.strftime('%Y%m%d')}-{contract_id[:8].upper()}",
            contract_id=contract_id,
            document_hash=contract.get("document_hash") or "",
            signatures_validated=signatures_validated,
            evidence_count=len(report.evidence_records),
            conformance_percent=conformance_percent,
            legally_valid=report.legally_valid,
            issued_at=issued_at,
            valid_until=issued_at + CERTIFICATE_VALIDITY,
            authority=self.settings.company_name,
        )

        self.audit.emit(
            contract_id,
            AuditEventKind.VALIDATION_PERFORMED,
            f"Validation certificate {certificate.certificate_number} issued",
            ValidationPerformedPayload(
                legally_valid=report.legally_valid,
                flags=report.conformance.model_dump(),
                evidence_count=len(report.evidence_records),
            ),
        )
        return certificate
