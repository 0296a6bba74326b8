"""Contract lifecycle: draft, internal signature, external signature, finalized.

Status moves are compare-and-set updates, so a contract never goes back to
an earlier status. Audit writes and emails are best effort and never fail
a transition. The internal-signature transition runs its follow-up steps
(evidence, token, invitation, reminders) after the status change. If one of
them fails, ``reissue_token`` completes the transition. A stored external
signature that did not reach finalization is finalized on the next
redemption attempt.
"""

import logging
import uuid
from typing import List, Optional

from esign_workflow.db.base import DatabaseInterface, serialize_row
from esign_workflow.errors import (
    DuplicateRecordError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from esign_workflow.models.audit import (
    AccessAttemptPayload,
    AuditEventKind,
    ContractCreatedPayload,
    ContractEditedPayload,
    DocumentGenerationFailedPayload,
    SignatureAppliedPayload,
    StatusChangedPayload,
)
from esign_workflow.models.contract import (
    EDITABLE_STATUSES,
    CertificateInfo,
    ClientContext,
    Contract,
    ContractCreate,
    ContractStatus,
    ContractUpdate,
    ExternalSignatureOutcome,
    InternalSignatureOutcome,
    Signature,
    SignerInfo,
    SignerRole,
)
from esign_workflow.models.evidence import EvidenceKind, SignatureEvidence, TokenEvidence
from esign_workflow.models.token import VerificationToken
from esign_workflow.services.audit import AuditService
from esign_workflow.services.evidence import EvidenceService
from esign_workflow.services.jobs import DocumentJobProcessor
from esign_workflow.services.notifications import ContractMailer, NotificationScheduler
from esign_workflow.services.token import TokenService, mask_code
from esign_workflow.utils.clock import Clock, to_iso, utcnow
from esign_workflow.utils.config import Settings, get_settings
from esign_workflow.utils.hashing import payload_hash, sha256_hex

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("title", "body", "external_signer_name", "external_signer_email")


def _validate_required(values: dict) -> None:
    missing = [f for f in REQUIRED_FIELDS if not str(values.get(f) or "").strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)
    if "@" not in values["external_signer_email"]:
        raise ValidationError(
            f"Invalid email address: {values['external_signer_email']}",
            fields=["external_signer_email"],
        )


class ContractService:
    """Drives a contract through the dual-signature workflow."""

    def __init__(
        self,
        db: DatabaseInterface,
        audit: AuditService,
        evidence: EvidenceService,
        tokens: TokenService,
        notifications: NotificationScheduler,
        mailer: ContractMailer,
        jobs: DocumentJobProcessor,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.audit = audit
        self.evidence = evidence
        self.tokens = tokens
        self.notifications = notifications
        self.mailer = mailer
        self.jobs = jobs
        self.settings = settings or get_settings()
        self.clock = clock

    # ---- reads ----

    def get_contract(self, contract_id: str) -> Contract:
        row = self.db.get_contract(contract_id)
        if not row:
            raise NotFoundError("Contract", contract_id)
        return Contract.model_validate(row)

    def list_contracts(self, status: Optional[ContractStatus] = None, limit: int = 100) -> List[Contract]:
        rows = self.db.list_contracts(status.value if status else None, limit)
        return [Contract.model_validate(row) for row in rows]

    def get_signatures(self, contract_id: str) -> List[Signature]:
        return [Signature.model_validate(row) for row in self.db.get_signatures(contract_id)]

    def _signature_by_role(self, contract_id: str, role: SignerRole) -> Optional[Signature]:
        for signature in self.get_signatures(contract_id):
            if signature.role == role:
                return signature
        return None

    # ---- authoring ----

    async def create_contract(self, data: ContractCreate, actor_id: Optional[str] = None) -> Contract:
        """Persist a draft contract and queue its document job."""
        _validate_required(data.model_dump())

        now = self.clock()
        contract = Contract(
            id=str(uuid.uuid4()),
            title=data.title.strip(),
            body=data.body,
            variables=data.variables,
            template_name=data.template_name,
            external_signer_name=data.external_signer_name.strip(),
            external_signer_email=data.external_signer_email.strip(),
            external_signer_document=data.external_signer_document,
            status=ContractStatus.DRAFT,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        self.db.insert_contract(serialize_row(contract))
        logger.info(f"Created contract {contract.id}: {contract.title}")

        self.audit.emit(
            contract.id,
            AuditEventKind.CONTRACT_CREATED,
            f"Contract '{contract.title}' created",
            ContractCreatedPayload(
                title=contract.title,
                external_signer=contract.external_signer_email,
                initial_status=contract.status.value,
                template_name=contract.template_name,
            ),
            actor_id=actor_id,
        )
        self.jobs.enqueue(contract.id)
        return contract

    async def update_contract(
        self,
        contract_id: str,
        changes: ContractUpdate,
        actor_id: Optional[str] = None,
    ) -> Contract:
        """Edit a contract that nobody has signed yet."""
        contract = self.get_contract(contract_id)
        if contract.status not in EDITABLE_STATUSES:
            raise InvalidStateError(
                f"Contract cannot be edited in status {contract.status.value}",
                current=contract.status.value,
            )
        if self._signature_by_role(contract_id, SignerRole.INTERNAL_QUALIFIED):
            raise InvalidStateError("Contract already carries a signature", current=contract.status.value)

        requested = changes.model_dump(exclude_none=True)
        current = contract.model_dump()
        patch = {k: v for k, v in requested.items() if current.get(k) != v}
        if not patch:
            return contract
        _validate_required({**current, **patch})

        now = self.clock()
        patch_row = {**serialize_row(patch), "updated_at": to_iso(now)}
        # The body changed, so any document rendered from the old text is stale
        if "body" in patch or "variables" in patch or "title" in patch:
            patch_row.update({"document_url": None, "document_hash": None, "document_storage": None})
        self.db.update_contract(contract_id, patch_row)
        logger.info(f"Edited contract {contract_id}: {', '.join(patch)}")

        self.audit.emit(
            contract_id,
            AuditEventKind.CONTRACT_EDITED,
            f"Contract edited: {', '.join(sorted(patch))}",
            ContractEditedPayload(
                changed_fields=sorted(patch),
                changes={k: {"from": current.get(k), "to": v} for k, v in patch.items() if k != "body"},
            ),
            actor_id=actor_id,
        )
        self.jobs.enqueue(contract_id)
        return self.get_contract(contract_id)

    async def submit_for_signature(self, contract_id: str, actor_id: Optional[str] = None) -> Contract:
        """Move a draft to pending_internal_signature."""
        contract = self.get_contract(contract_id)
        moved = self.db.transition_contract(
            contract_id,
            [ContractStatus.DRAFT.value],
            ContractStatus.PENDING_INTERNAL_SIGNATURE.value,
            {"updated_at": to_iso(self.clock())},
        )
        if not moved:
            raise InvalidStateError(
                f"Only draft contracts can be submitted (status is {contract.status.value})",
                current=contract.status.value,
            )
        self._emit_status(contract_id, contract.status, ContractStatus.PENDING_INTERNAL_SIGNATURE, actor_id)
        return self.get_contract(contract_id)

    def _emit_status(
        self,
        contract_id: str,
        previous: ContractStatus,
        new: ContractStatus,
        actor_id: Optional[str] = None,
        automatic: bool = False,
    ) -> None:
        logger.info(f"Contract {contract_id}: {previous.value} -> {new.value}")
        self.audit.emit(
            contract_id,
            AuditEventKind.STATUS_CHANGED,
            f"Status changed from {previous.value} to {new.value}",
            StatusChangedPayload(previous_status=previous.value, new_status=new.value, automatic=automatic),
            actor_id=actor_id,
        )

    def _insert_signature(self, signature: Signature) -> None:
        try:
            self.db.insert_signature(serialize_row(signature))
        except DuplicateRecordError as e:
            raise InvalidStateError(f"Contract already has a {signature.role.value} signature") from e

    def _emit_signature(self, signature: Signature, client: ClientContext, actor_id: Optional[str]) -> None:
        certificate = signature.certificate
        self.audit.emit(
            signature.contract_id,
            AuditEventKind.SIGNATURE_APPLIED,
            f"{signature.role.value} signature applied by {signature.signer_name}",
            SignatureAppliedPayload(
                signature_id=signature.id,
                role=signature.role.value,
                signer_name=signature.signer_name,
                certificate_issuer=certificate.issuer if certificate else None,
                certificate_thumbprint=certificate.thumbprint if certificate else None,
                signature_hash=signature.signature_hash,
                token_id=signature.token_id,
            ),
            actor_id=actor_id,
            client=client,
        )

    # ---- internal signature ----

    def _has_evidence(self, contract_id: str, kind: EvidenceKind, signature_id: str) -> bool:
        return any(
            record.kind == kind and getattr(record.payload, "signature_id", None) == signature_id
            for record in self.evidence.list_evidence(contract_id)
        )

    async def _record_signature_evidence(self, signature: Signature) -> None:
        """Write the SignatureEvidence of the internal signature unless it is already on file."""
        if self._has_evidence(signature.contract_id, EvidenceKind.SIGNATURE, signature.id):
            return
        await self.evidence.record_evidence(signature.contract_id, SignatureEvidence(
            signature_id=signature.id,
            signer_name=signature.signer_name,
            signer_document=signature.signer_document,
            certificate=signature.certificate,
            signature_hash=signature.signature_hash,
            signed_at=signature.signed_at,
            ip_address=signature.ip_address,
            user_agent=signature.user_agent,
        ))

    async def apply_internal_signature(
        self,
        contract_id: str,
        signer: SignerInfo,
        certificate: CertificateInfo,
        client: Optional[ClientContext] = None,
        actor_id: Optional[str] = None,
    ) -> InternalSignatureOutcome:
        """Record the qualified signature and open the external signature window.

        Once the signature row exists the contract moves to
        pending_external_signature before anything else runs. Evidence, token,
        invitation and reminders follow; a failure there is reported on the
        outcome and ``reissue_token`` finishes the job. A signature left behind
        by an interrupted call is picked up again instead of rejected.
        """
        client = client or ClientContext()
        contract = self.get_contract(contract_id)
        if contract.status not in EDITABLE_STATUSES:
            raise InvalidStateError(
                f"Internal signature not allowed in status {contract.status.value}",
                current=contract.status.value,
            )

        signature = self._signature_by_role(contract_id, SignerRole.INTERNAL_QUALIFIED)
        if signature:
            logger.warning(f"Resuming interrupted internal signature {signature.id} of contract {contract_id}")
        else:
            if not signer.name.strip():
                raise ValidationError("Signer name is required", fields=["signer.name"])
            if not certificate.issuer.strip() or not certificate.thumbprint.strip():
                raise ValidationError(
                    "Certificate issuer and thumbprint are required",
                    fields=["certificate.issuer", "certificate.thumbprint"],
                )
            now = self.clock()
            signature = Signature(
                id=str(uuid.uuid4()),
                contract_id=contract_id,
                role=SignerRole.INTERNAL_QUALIFIED,
                signer_name=signer.name.strip(),
                signer_email=signer.email,
                signer_document=signer.document or certificate.holder_document,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                signed_at=now,
                certificate=certificate,
                signature_hash=payload_hash({
                    "contract_id": contract_id,
                    "body_sha256": sha256_hex(contract.body),
                    "signer": signer.name.strip(),
                    "certificate_thumbprint": certificate.thumbprint,
                    "signed_at": to_iso(now),
                }),
            )
            self._insert_signature(signature)
            self._emit_signature(signature, client, actor_id or signer.user_id)

        moved = self.db.transition_contract(
            contract_id,
            [s.value for s in EDITABLE_STATUSES],
            ContractStatus.PENDING_EXTERNAL_SIGNATURE.value,
            {"updated_at": to_iso(self.clock())},
        )
        if not moved:
            raise InvalidStateError("Contract status changed during internal signature")
        self._emit_status(
            contract_id, contract.status, ContractStatus.PENDING_EXTERNAL_SIGNATURE, actor_id, automatic=True,
        )

        contract = self.get_contract(contract_id)
        outcome = InternalSignatureOutcome(contract=contract, signature=signature)
        try:
            await self._record_signature_evidence(signature)
            token = await self.tokens.issue_token(contract_id, contract.external_signer_email, actor_id=actor_id)
            outcome.token_issued = True
            email = await self.mailer.send_invitation(contract, token.code, token.valid_until)
            outcome.invitation_sent = email.success
            await self.notifications.schedule_reminders(contract_id)
            outcome.reminders_scheduled = True
        except Exception as e:
            logger.error(f"Follow-up after internal signature of {contract_id} failed: {e}")
            outcome.error = str(e)
        return outcome

    async def reissue_token(self, contract_id: str, actor_id: Optional[str] = None) -> str:
        """Issue a fresh code and resend the invitation. Safe to repeat."""
        contract = self.get_contract(contract_id)
        if contract.status != ContractStatus.PENDING_EXTERNAL_SIGNATURE:
            raise InvalidStateError(
                f"Tokens can only be issued while awaiting the external signature "
                f"(status is {contract.status.value})",
                current=contract.status.value,
            )

        internal = self._signature_by_role(contract_id, SignerRole.INTERNAL_QUALIFIED)
        if internal:
            await self._record_signature_evidence(internal)
        token = await self.tokens.issue_token(contract_id, contract.external_signer_email, actor_id=actor_id)
        await self.mailer.send_invitation(contract, token.code, token.valid_until)
        if not any(r.is_open for r in self.notifications.list_reminders(contract_id)):
            await self.notifications.schedule_reminders(contract_id)
        return token.code

    # ---- external signature ----

    async def get_contract_for_external_signing(
        self,
        contract_id: str,
        client: Optional[ClientContext] = None,
    ) -> Contract:
        """Contract shown on the external signing page; every visit is audited."""
        contract = self.get_contract(contract_id)
        allowed = contract.status == ContractStatus.PENDING_EXTERNAL_SIGNATURE
        self.audit.emit(
            contract_id,
            AuditEventKind.ACCESS_ATTEMPT,
            "External signing page opened" if allowed else "External signing page opened in wrong status",
            AccessAttemptPayload(
                access_type="external_signing_page",
                success=allowed,
                details=None if allowed else f"status {contract.status.value}",
            ),
            client=client,
        )
        return contract

    async def _record_token_evidence(self, signature: Signature) -> None:
        """Write the TokenEvidence of the external signature unless it is already on file."""
        if self._has_evidence(signature.contract_id, EvidenceKind.TOKEN, signature.id):
            return
        token = next(
            (t for t in self.tokens.list_tokens(signature.contract_id) if t.id == signature.token_id),
            None,
        )
        if token is None:
            raise InvalidStateError(f"Token {signature.token_id} of signature {signature.id} is missing")
        await self.evidence.record_evidence(signature.contract_id, TokenEvidence(
            signature_id=signature.id,
            token_id=token.id,
            code_hint=mask_code(token.code),
            issued_at=token.issued_at,
            valid_until=token.valid_until,
            used_at=token.used_at or signature.signed_at,
            verified_email=token.destination_email,
            signer_name=signature.signer_name,
            ip_address=signature.ip_address,
            user_agent=signature.user_agent,
        ))

    async def validate_and_sign_external(
        self,
        contract_id: str,
        code: str,
        client: Optional[ClientContext] = None,
    ) -> ExternalSignatureOutcome:
        """Redeem the verification code, sign for the external party and finalize.

        If an earlier call already redeemed a code and stored the external
        signature but stopped before finalizing, the stored signature is
        finalized and no code is consumed.
        """
        client = client or ClientContext()
        contract = self.get_contract(contract_id)
        if contract.status != ContractStatus.PENDING_EXTERNAL_SIGNATURE:
            raise InvalidStateError(
                f"Contract is not awaiting the external signature (status is {contract.status.value})",
                current=contract.status.value,
            )

        signature = self._signature_by_role(contract_id, SignerRole.EXTERNAL_SIMPLE)
        if signature:
            logger.warning(f"Resuming finalization of contract {contract_id} from signature {signature.id}")
            return await self._finalize(contract, signature)

        result = await self.tokens.validate(contract_id, code, client.ip_address, client.user_agent)
        if not result.valid:
            return ExternalSignatureOutcome(success=False, contract=contract, reason=result.reason.value)

        token: VerificationToken = result.token
        now = self.clock()
        signature = Signature(
            id=str(uuid.uuid4()),
            contract_id=contract_id,
            role=SignerRole.EXTERNAL_SIMPLE,
            signer_name=contract.external_signer_name,
            signer_email=contract.external_signer_email,
            signer_document=contract.external_signer_document,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            signed_at=now,
            token_id=token.id,
            signature_hash=payload_hash({
                "contract_id": contract_id,
                "body_sha256": sha256_hex(contract.body),
                "signer": contract.external_signer_email,
                "token_id": token.id,
                "signed_at": to_iso(now),
            }),
        )
        self._insert_signature(signature)
        self._emit_signature(signature, client, None)
        return await self._finalize(contract, signature)

    async def _finalize(self, contract: Contract, signature: Signature) -> ExternalSignatureOutcome:
        """Evidence, status change and reminder cancellation after the external signature."""
        contract_id = contract.id
        internal = self._signature_by_role(contract_id, SignerRole.INTERNAL_QUALIFIED)
        if internal:
            await self._record_signature_evidence(internal)
        await self._record_token_evidence(signature)

        self._ensure_finalizable(contract_id)
        now = self.clock()
        moved = self.db.transition_contract(
            contract_id,
            [ContractStatus.PENDING_EXTERNAL_SIGNATURE.value],
            ContractStatus.FINALIZED.value,
            {"finalized_at": to_iso(now), "updated_at": to_iso(now)},
        )
        if not moved:
            raise InvalidStateError("Contract status changed during external signature")
        self._emit_status(
            contract_id, ContractStatus.PENDING_EXTERNAL_SIGNATURE, ContractStatus.FINALIZED, automatic=True,
        )

        await self.notifications.cancel_reminders(contract_id, "contract_finalized")

        outcome = ExternalSignatureOutcome(success=True, contract=contract, signature=signature)
        try:
            await self.jobs.regenerate(contract_id)
            outcome.document_regenerated = True
        except Exception as e:
            logger.error(f"Document regeneration for finalized contract {contract_id} failed: {e}")
            self.audit.emit(
                contract_id,
                AuditEventKind.DOCUMENT_GENERATION_FAILED,
                "Document regeneration after finalization failed",
                DocumentGenerationFailedPayload(error=str(e)),
            )

        outcome.contract = self.get_contract(contract_id)
        email = await self.mailer.send_finalization_notice(outcome.contract)
        outcome.notice_sent = email.success
        return outcome

    def _ensure_finalizable(self, contract_id: str) -> None:
        roles = {s.role for s in self.get_signatures(contract_id)}
        if roles != {SignerRole.INTERNAL_QUALIFIED, SignerRole.EXTERNAL_SIMPLE}:
            raise InvalidStateError("Finalization requires both the internal and the external signature")
        kinds = {r.kind for r in self.evidence.list_evidence(contract_id)}
        if not {EvidenceKind.SIGNATURE, EvidenceKind.TOKEN} <= kinds:
            raise InvalidStateError("Finalization requires evidence for both signatures")
