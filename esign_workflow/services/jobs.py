"""Document job processor: renders, hashes and stores the signed contract.

A job is claimed with a compare-and-set on (status, attempts) that moves it
to ``processing``, increments ``attempts`` and sets a lease. A processing job
whose lease has expired is claimable again, so a crashed worker does not
strand it.
"""

import logging
import uuid
from datetime import timedelta
from typing import List, Optional

from esign_workflow.db.base import DatabaseInterface, serialize_row
from esign_workflow.errors import InvalidStateError, NotFoundError, StorageError
from esign_workflow.models.audit import (
    AuditEventKind,
    DocumentGeneratedPayload,
    DocumentGenerationFailedPayload,
    JobReprocessedPayload,
)
from esign_workflow.models.contract import Contract, ContractSnapshot, Signature
from esign_workflow.models.evidence import IntegrityEvidence
from esign_workflow.models.job import DocumentJob, DocumentResult, JobStats, JobStatus
from esign_workflow.services.audit import AuditService
from esign_workflow.services.evidence import EvidenceService
from esign_workflow.services.pdf_generator import DocumentRenderer
from esign_workflow.services.storage import BlobStore
from esign_workflow.utils.clock import Clock, to_iso, utcnow
from esign_workflow.utils.config import Settings, get_settings
from esign_workflow.utils.hashing import sha256_hex

logger = logging.getLogger(__name__)


class DocumentJobProcessor:
    """Queue of document jobs backed by the ``document_jobs`` table."""

    def __init__(
        self,
        db: DatabaseInterface,
        audit: AuditService,
        evidence: EvidenceService,
        renderer: DocumentRenderer,
        blob_store: BlobStore,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.audit = audit
        self.evidence = evidence
        self.renderer = renderer
        self.blob_store = blob_store
        self.settings = settings or get_settings()
        self.clock = clock

    # ---- queue management ----

    def enqueue(self, contract_id: str) -> DocumentJob:
        """Insert a pending job unless one is already pending or processing."""
        active = self.db.find_active_job(contract_id)
        if active:
            logger.info(f"Document job already active for contract {contract_id}: {active['id']}")
            return DocumentJob.model_validate(active)

        now = self.clock()
        job = DocumentJob(
            id=str(uuid.uuid4()),
            contract_id=contract_id,
            max_attempts=self.settings.job_max_attempts,
            created_at=now,
            updated_at=now,
        )
        self.db.insert_job(serialize_row(job))
        logger.info(f"Enqueued document job {job.id} for contract {contract_id}")
        return job

    def get_job(self, job_id: str) -> DocumentJob:
        row = self.db.get_job(job_id)
        if not row:
            raise NotFoundError("Job", job_id)
        return DocumentJob.model_validate(row)

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[DocumentJob]:
        rows = self.db.list_jobs(status.value if status else None, limit)
        return [DocumentJob.model_validate(row) for row in rows]

    def get_stats(self) -> JobStats:
        by_status = {
            status.value: len(self.db.list_jobs(status.value, limit=100000))
            for status in JobStatus
        }
        return JobStats(total=sum(by_status.values()), by_status=by_status)

    def reprocess(self, job_id: str) -> DocumentJob:
        """Reset a job to pending with no attempts, clearing its error."""
        job = self.get_job(job_id)
        now = self.clock()
        if job.status == JobStatus.PROCESSING and job.lease_expires_at and job.lease_expires_at > now:
            raise InvalidStateError(f"Job {job_id} is being processed", current=job.status.value)

        fields = {
            "status": JobStatus.PENDING.value,
            "attempts": 0,
            "error_message": None,
            "lease_expires_at": None,
            "next_attempt_at": None,
            "updated_at": to_iso(now),
        }
        self.db.update_job(job_id, fields)
        logger.info(f"Job {job_id} reset for reprocessing (was {job.status.value}, {job.attempts} attempts)")

        self.audit.emit(
            job.contract_id,
            AuditEventKind.JOB_REPROCESSED,
            "Document job reset for reprocessing",
            JobReprocessedPayload(
                job_id=job_id,
                previous_status=job.status.value,
                previous_attempts=job.attempts,
            ),
        )
        return job.model_copy(update={
            "status": JobStatus.PENDING,
            "attempts": 0,
            "error_message": None,
            "lease_expires_at": None,
            "next_attempt_at": None,
            "updated_at": now,
        })

    # ---- processing ----

    async def poll_and_process(self, batch_size: Optional[int] = None) -> List[DocumentJob]:
        """Claim and process up to ``batch_size`` due jobs, oldest first."""
        batch_size = batch_size or self.settings.job_batch_size
        rows = self.db.list_claimable_jobs(to_iso(self.clock()), batch_size)
        if not rows:
            return []

        logger.info(f"Processing {len(rows)} document job(s)")
        processed = []
        for row in rows:
            try:
                job = await self._process(DocumentJob.model_validate(row))
            except Exception as e:
                logger.error(f"Document job {row.get('id')} aborted: {e}")
                continue
            if job is not None:
                processed.append(job)
        return processed

    def _claim(self, job: DocumentJob) -> Optional[DocumentJob]:
        now = self.clock()
        fields = {
            "status": JobStatus.PROCESSING.value,
            "attempts": job.attempts + 1,
            "lease_expires_at": to_iso(now + timedelta(seconds=self.settings.job_lease_seconds)),
            "updated_at": to_iso(now),
        }
        if not self.db.claim_job(job.id, job.status.value, job.attempts, fields):
            logger.debug(f"Job {job.id} was claimed by another worker")
            return None
        return job.model_copy(update={
            "status": JobStatus.PROCESSING,
            "attempts": job.attempts + 1,
            "lease_expires_at": now + timedelta(seconds=self.settings.job_lease_seconds),
            "updated_at": now,
        })

    async def _process(self, job: DocumentJob) -> Optional[DocumentJob]:
        if job.status == JobStatus.PROCESSING and job.attempts >= job.max_attempts:
            # Lease expired on the final attempt
            return self._fail(job, "Lease expired on final attempt")

        claimed = self._claim(job)
        if claimed is None:
            return None

        try:
            contract = self._load_contract(claimed.contract_id)
            if contract.document_url and contract.document_hash:
                result = DocumentResult(
                    document_url=contract.document_url,
                    document_hash=contract.document_hash,
                    size_bytes=0,
                    storage=contract.document_storage or "",
                    generated_at=self.clock(),
                    reused=True,
                )
                logger.info(f"Contract {contract.id} already has a document, skipping render")
            else:
                result = await self._produce(contract)
            await self._ensure_integrity(contract.id, result)
        except Exception as e:
            logger.error(f"Document job {claimed.id} failed (attempt {claimed.attempts}): {e}")
            return self._fail(claimed, str(e))

        return await self._complete(claimed, result)

    async def _complete(self, job: DocumentJob, result: DocumentResult) -> DocumentJob:
        now = self.clock()
        fields = {
            "status": JobStatus.COMPLETED.value,
            "document_url": result.document_url,
            "document_hash": result.document_hash,
            "size_bytes": result.size_bytes or None,
            "error_message": None,
            "lease_expires_at": None,
            "processed_at": to_iso(now),
            "updated_at": to_iso(now),
        }
        self.db.update_job(job.id, fields)

        self._emit_generated(job.contract_id, result, job.id)
        logger.info(f"Document job {job.id} completed for contract {job.contract_id}")

        return job.model_copy(update={
            "status": JobStatus.COMPLETED,
            "document_url": result.document_url,
            "document_hash": result.document_hash,
            "size_bytes": result.size_bytes or None,
            "error_message": None,
            "lease_expires_at": None,
            "processed_at": now,
            "updated_at": now,
        })

    def _fail(self, job: DocumentJob, error: str) -> DocumentJob:
        now = self.clock()
        terminal = job.attempts >= job.max_attempts
        status = JobStatus.ERROR if terminal else JobStatus.PENDING
        next_attempt_at = None if terminal else now + timedelta(seconds=self.settings.job_retry_delay_seconds)

        self.db.update_job(job.id, {
            "status": status.value,
            "error_message": error,
            "lease_expires_at": None,
            "next_attempt_at": to_iso(next_attempt_at),
            "updated_at": to_iso(now),
        })
        if terminal:
            logger.error(f"Document job {job.id} gave up after {job.attempts} attempts: {error}")

        self.audit.emit(
            job.contract_id,
            AuditEventKind.DOCUMENT_GENERATION_FAILED,
            f"Document generation failed (attempt {job.attempts} of {job.max_attempts})",
            DocumentGenerationFailedPayload(
                error=error,
                attempts=job.attempts,
                terminal=terminal,
                job_id=job.id,
            ),
        )
        return job.model_copy(update={
            "status": status,
            "error_message": error,
            "lease_expires_at": None,
            "next_attempt_at": next_attempt_at,
            "updated_at": now,
        })

    # ---- rendering ----

    def _load_contract(self, contract_id: str) -> Contract:
        row = self.db.get_contract(contract_id)
        if not row:
            raise NotFoundError("Contract", contract_id)
        return Contract.model_validate(row)

    def build_snapshot(self, contract: Contract) -> ContractSnapshot:
        signatures = [Signature.model_validate(row) for row in self.db.get_signatures(contract.id)]
        return ContractSnapshot(
            contract=contract,
            signatures=signatures,
            company_name=self.settings.company_name,
            rendered_at=self.clock(),
        )

    async def _produce(self, contract: Contract) -> DocumentResult:
        """Render, hash, store, and patch the document reference onto the contract."""
        content = self.renderer.render(self.build_snapshot(contract))
        document_hash = sha256_hex(content)
        name = f"contracts/{contract.id}/{document_hash[:16]}.{self.renderer.extension}"

        upload = await self.blob_store.upload(content, name, self.renderer.content_type)
        if not upload.success or not upload.url:
            raise StorageError(f"Document upload failed: {upload.error}")

        now = self.clock()
        self.db.update_contract(contract.id, {
            "document_url": upload.url,
            "document_hash": document_hash,
            "document_storage": upload.storage,
            "updated_at": to_iso(now),
        })
        return DocumentResult(
            document_url=upload.url,
            document_hash=document_hash,
            size_bytes=len(content),
            storage=upload.storage,
            generated_at=now,
        )

    async def _ensure_integrity(self, contract_id: str, result: DocumentResult) -> None:
        """Record IntegrityEvidence for the document unless its hash is already on file."""
        for record in self.evidence.list_evidence(contract_id):
            if isinstance(record.payload, IntegrityEvidence) and record.payload.document_hash == result.document_hash:
                return
        await self._record_integrity(contract_id, result)

    async def _record_integrity(self, contract_id: str, result: DocumentResult) -> None:
        await self.evidence.record_evidence(contract_id, IntegrityEvidence(
            document_hash=result.document_hash,
            size_bytes=result.size_bytes,
            document_url=result.document_url,
            storage=result.storage,
            generated_at=result.generated_at,
        ))

    def _emit_generated(self, contract_id: str, result: DocumentResult, job_id: Optional[str]) -> None:
        self.audit.emit(
            contract_id,
            AuditEventKind.DOCUMENT_GENERATED,
            "Existing document confirmed" if result.reused else "Document generated",
            DocumentGeneratedPayload(
                document_hash=result.document_hash,
                document_url=result.document_url,
                storage=result.storage,
                size_bytes=result.size_bytes,
                job_id=job_id,
                reused=result.reused,
            ),
        )

    async def regenerate(self, contract_id: str) -> DocumentResult:
        """Render the current state of the contract now, replacing any stored document."""
        contract = self._load_contract(contract_id)
        result = await self._produce(contract)
        await self._record_integrity(contract_id, result)
        self._emit_generated(contract_id, result, None)
        logger.info(f"Regenerated document for contract {contract_id}")
        return result
