"""Tests for the document job processor and rendering"""

from datetime import datetime, timedelta, timezone

import pytest

from esign_workflow.errors import InvalidStateError, NotFoundError
from esign_workflow.models.audit import AuditEventKind
from esign_workflow.models.contract import Contract, ContractSnapshot
from esign_workflow.models.evidence import EvidenceKind
from esign_workflow.models.job import JobStatus, UploadResult
from esign_workflow.services.pdf_generator import ContractPDFRenderer, substitute_variables
from esign_workflow.services.storage import BlobStore, FallbackBlobStore, FilesystemBlobStore, InProcessBlobStore
from esign_workflow.utils.clock import to_iso
from esign_workflow.utils.hashing import sha256_hex


class BrokenBlobStore(BlobStore):
    name = "broken"

    async def upload(self, content, name, content_type="application/pdf"):
        return UploadResult(success=False, error="connection refused", storage=self.name)


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_contract_creation_enqueues_job(self, engine, new_contract):
        contract = await new_contract()
        jobs = engine.jobs.list_jobs()
        assert len(jobs) == 1
        assert jobs[0].contract_id == contract.id
        assert jobs[0].status == JobStatus.PENDING
        assert jobs[0].attempts == 0

    @pytest.mark.asyncio
    async def test_enqueue_keeps_single_active_job(self, engine, new_contract):
        contract = await new_contract()
        first = engine.jobs.list_jobs()[0]

        again = engine.jobs.enqueue(contract.id)
        assert again.id == first.id
        assert len(engine.jobs.list_jobs()) == 1

    def test_unknown_job(self, engine):
        with pytest.raises(NotFoundError):
            engine.jobs.get_job("missing")


class TestProcessing:
    @pytest.mark.asyncio
    async def test_successful_job(self, engine, new_contract, blob_store):
        contract = await new_contract()
        processed = await engine.jobs.poll_and_process()
        await engine.outbox.drain()

        assert len(processed) == 1
        job = engine.jobs.get_job(processed[0].id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 1
        assert job.processed_at is not None
        assert job.lease_expires_at is None

        stored = engine.contracts.get_contract(contract.id)
        content = blob_store.get(stored.document_url)
        assert content is not None
        assert stored.document_hash == sha256_hex(content) == job.document_hash
        assert stored.document_storage == "in_process"

        integrity = [r for r in engine.evidence.list_evidence(contract.id) if r.kind == EvidenceKind.INTEGRITY]
        assert len(integrity) == 1
        assert integrity[0].payload.document_hash == stored.document_hash

        kinds = [e.kind for e in await engine.audit.list_entries(contract.id)]
        assert AuditEventKind.DOCUMENT_GENERATED in kinds

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(self, engine, new_contract, renderer, clock):
        renderer.failures = 2
        contract = await new_contract()

        await engine.jobs.poll_and_process()
        # Not eligible again until the retry delay has passed
        assert await engine.jobs.poll_and_process() == []

        for _ in range(2):
            clock.advance(seconds=31)
            await engine.jobs.poll_and_process()

        job = engine.jobs.list_jobs()[0]
        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 3
        assert job.document_hash
        assert job.error_message is None
        assert engine.contracts.get_contract(contract.id).document_hash == job.document_hash

    @pytest.mark.asyncio
    async def test_always_failing_job_stops_at_error(self, engine, new_contract, renderer, clock):
        renderer.failures = 100
        contract = await new_contract()

        for _ in range(3):
            await engine.jobs.poll_and_process()
            clock.advance(seconds=31)
        await engine.outbox.drain()

        job = engine.jobs.list_jobs()[0]
        assert job.status == JobStatus.ERROR
        assert job.attempts == 3
        assert "renderer unavailable" in job.error_message

        stored = engine.contracts.get_contract(contract.id)
        assert stored.document_url is None
        assert stored.document_hash is None

        assert await engine.jobs.poll_and_process() == []
        assert renderer.calls == 3

        failures = [
            e for e in await engine.audit.list_entries(contract.id)
            if e.kind == AuditEventKind.DOCUMENT_GENERATION_FAILED
        ]
        assert [f.payload.terminal for f in failures] == [False, False, True]

    @pytest.mark.asyncio
    async def test_reprocess_resets_failed_job(self, engine, new_contract, renderer, clock):
        renderer.failures = 3
        await new_contract()
        for _ in range(3):
            await engine.jobs.poll_and_process()
            clock.advance(seconds=31)
        job = engine.jobs.list_jobs()[0]
        assert job.status == JobStatus.ERROR

        reset = engine.jobs.reprocess(job.id)
        assert reset.status == JobStatus.PENDING
        assert reset.attempts == 0

        stored = engine.jobs.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 0
        assert stored.error_message is None

        await engine.jobs.poll_and_process()
        assert engine.jobs.get_job(job.id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_existing_document_is_not_rendered_again(self, engine, new_contract, renderer):
        contract = await new_contract()
        await engine.jobs.poll_and_process()
        assert renderer.calls == 1
        document_hash = engine.contracts.get_contract(contract.id).document_hash

        second = engine.jobs.enqueue(contract.id)
        await engine.jobs.poll_and_process()
        await engine.jobs.poll_and_process()

        assert renderer.calls == 1
        job = engine.jobs.get_job(second.id)
        assert job.status == JobStatus.COMPLETED
        assert job.document_hash == document_hash
        integrity = [r for r in engine.evidence.list_evidence(contract.id) if r.kind == EvidenceKind.INTEGRITY]
        assert len(integrity) == 1

    @pytest.mark.asyncio
    async def test_integrity_failure_retries_without_aborting_batch(self, engine, new_contract, clock, monkeypatch):
        first = await new_contract(title="First")
        clock.advance(seconds=1)
        second = await new_contract(title="Second")

        def broken_insert(record):
            raise RuntimeError("evidence down")

        original = engine.db.insert_evidence
        monkeypatch.setattr(engine.db, "insert_evidence", broken_insert)
        processed = await engine.jobs.poll_and_process()

        assert [job.contract_id for job in processed] == [first.id, second.id]
        assert all(job.status == JobStatus.PENDING for job in processed)
        assert all("evidence down" in job.error_message for job in processed)

        monkeypatch.setattr(engine.db, "insert_evidence", original)
        clock.advance(seconds=31)
        processed = await engine.jobs.poll_and_process()

        assert [job.status for job in processed] == [JobStatus.COMPLETED, JobStatus.COMPLETED]
        for contract in (first, second):
            stored = engine.contracts.get_contract(contract.id)
            integrity = [r for r in engine.evidence.list_evidence(contract.id) if r.kind == EvidenceKind.INTEGRITY]
            assert len(integrity) == 1
            assert integrity[0].payload.document_hash == stored.document_hash

    @pytest.mark.asyncio
    async def test_fifo_batches(self, engine, new_contract, clock):
        ids = []
        for i in range(3):
            ids.append((await new_contract(title=f"Contract {i}")).id)
            clock.advance(seconds=1)

        processed = await engine.jobs.poll_and_process(batch_size=2)
        assert [job.contract_id for job in processed] == ids[:2]

        processed = await engine.jobs.poll_and_process(batch_size=2)
        assert [job.contract_id for job in processed] == ids[2:]

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(self, engine, new_contract, clock):
        await new_contract()
        job = engine.jobs.list_jobs()[0]
        # A worker claimed the job and died
        engine.db.update_job(job.id, {
            "status": JobStatus.PROCESSING.value,
            "attempts": 1,
            "lease_expires_at": to_iso(clock() + timedelta(seconds=300)),
        })

        assert await engine.jobs.poll_and_process() == []

        clock.advance(seconds=301)
        processed = await engine.jobs.poll_and_process()
        assert len(processed) == 1
        assert processed[0].status == JobStatus.COMPLETED
        assert processed[0].attempts == 2

    @pytest.mark.asyncio
    async def test_reprocess_refuses_live_lease(self, engine, new_contract, clock):
        await new_contract()
        job = engine.jobs.list_jobs()[0]
        engine.db.update_job(job.id, {
            "status": JobStatus.PROCESSING.value,
            "lease_expires_at": to_iso(clock() + timedelta(seconds=60)),
        })

        with pytest.raises(InvalidStateError):
            engine.jobs.reprocess(job.id)

    @pytest.mark.asyncio
    async def test_stats(self, engine, new_contract, renderer):
        renderer.failures = 1
        await new_contract(title="First")
        await new_contract(title="Second")
        await engine.jobs.poll_and_process()

        stats = engine.jobs.get_stats()
        assert stats.total == 2
        assert stats.by_status["completed"] == 1
        assert stats.by_status["pending"] == 1


class TestBlobFallback:
    @pytest.mark.asyncio
    async def test_falls_back_to_in_process(self):
        store = FallbackBlobStore(BrokenBlobStore())
        result = await store.upload(b"%PDF", "contracts/x.pdf")

        assert result.success
        assert result.storage == "in_process"
        assert result.url.startswith("blob:esign/")
        assert store.fallback.get(result.url) == b"%PDF"

    @pytest.mark.asyncio
    async def test_filesystem_store(self, tmp_path):
        store = FilesystemBlobStore(tmp_path / "docs")
        result = await store.upload(b"%PDF-1.4", "contracts/abc/doc.pdf")

        assert result.success
        assert result.storage == "filesystem"
        assert (tmp_path / "docs" / "contracts" / "abc" / "doc.pdf").read_bytes() == b"%PDF-1.4"

    @pytest.mark.asyncio
    async def test_job_records_fallback_storage(self, engine, new_contract):
        engine.jobs.blob_store = FallbackBlobStore(BrokenBlobStore(), InProcessBlobStore())
        contract = await new_contract()
        await engine.jobs.poll_and_process()

        stored = engine.contracts.get_contract(contract.id)
        assert stored.document_storage == "in_process"
        assert stored.document_url.startswith("blob:esign/")

    @pytest.mark.asyncio
    async def test_upload_failure_fails_job(self, engine, new_contract):
        engine.jobs.blob_store = BrokenBlobStore()
        await new_contract()
        await engine.jobs.poll_and_process()

        job = engine.jobs.list_jobs()[0]
        assert job.status == JobStatus.PENDING
        assert "connection refused" in job.error_message


class TestRendering:
    def test_substitute_variables(self):
        text = "[COMPANY_NAME] hires {{ signer }} for [scope]; [UNKNOWN] stays."
        result = substitute_variables(text, {"company_name": "Acme", "SIGNER": "Alex", "Scope": "audit"})
        assert result == "Acme hires Alex for audit; [UNKNOWN] stays."

    def test_pdf_renderer_produces_pdf(self):
        now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        snapshot = ContractSnapshot(
            contract=Contract(
                id="c-1",
                title="Service Agreement",
                body="First clause for {{EXTERNAL_SIGNER_NAME}}.\n\nSecond clause.",
                external_signer_name="Alex Client",
                external_signer_email="alex@client.example",
                created_at=now,
            ),
            company_name="Acme",
            rendered_at=now,
        )
        content = ContractPDFRenderer().render(snapshot)
        assert content.startswith(b"%PDF")
        assert len(content) > 1000
