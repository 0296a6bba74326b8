"""Tests for the audit trail, evidence records and compliance reporting"""

import sqlite3

import pytest

from esign_workflow.db.sqlite import get_connection
from esign_workflow.errors import NotFoundError
from esign_workflow.models.audit import AuditEventKind, ContractCreatedPayload
from esign_workflow.models.contract import CertificateInfo
from esign_workflow.models.evidence import EvidenceKind
from esign_workflow.services import environment
from esign_workflow.services.audit import Outbox
from esign_workflow.services.environment import FALLBACK_IP, EnvironmentProbe
from esign_workflow.utils.config import Settings


class TestOutbox:
    @pytest.mark.asyncio
    async def test_fifo_with_consumer(self):
        outbox = Outbox()
        seen = []

        def item(n):
            async def write():
                seen.append(n)
            return write

        outbox.start()
        for n in range(5):
            outbox.put(item(n))
        await outbox.drain()
        await outbox.stop()

        assert seen == [0, 1, 2, 3, 4]
        assert not outbox.running

    @pytest.mark.asyncio
    async def test_drain_without_consumer(self):
        outbox = Outbox()
        seen = []

        async def write():
            seen.append("x")

        outbox.put(write)
        assert outbox.pending == 1
        await outbox.drain()
        assert seen == ["x"]
        assert outbox.pending == 0

    def test_full_outbox_drops(self):
        outbox = Outbox(maxsize=1)

        async def write():
            return None

        assert outbox.put(write)
        assert not outbox.put(write)
        assert outbox.dropped == 1

    @pytest.mark.asyncio
    async def test_failing_item_does_not_stop_consumer(self):
        outbox = Outbox()
        seen = []

        async def broken():
            raise RuntimeError("boom")

        async def write():
            seen.append("ok")

        outbox.start()
        outbox.put(broken)
        outbox.put(write)
        await outbox.drain()
        await outbox.stop()
        assert seen == ["ok"]


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_server_side_evidence_fallbacks(self, engine, new_contract, settings):
        contract = await new_contract()
        await engine.outbox.drain()

        entry = (await engine.audit.list_entries(contract.id))[0]
        assert entry.evidence.ip_address == FALLBACK_IP
        assert entry.evidence.user_agent == settings.service_user_agent
        assert entry.evidence.timezone == "UTC"
        assert entry.evidence.geolocation is None
        assert entry.actor_id == "user-1"

    @pytest.mark.asyncio
    async def test_entries_in_timestamp_order(self, engine, awaiting_external, code_for, clock):
        contract = await awaiting_external()
        clock.advance(minutes=5)
        await engine.contracts.validate_and_sign_external(contract.id, code_for(contract.id))
        await engine.outbox.drain()

        entries = await engine.audit.list_entries(contract.id)
        timestamps = [e.timestamp for e in entries]
        assert timestamps == sorted(timestamps)
        assert entries[0].kind == AuditEventKind.CONTRACT_CREATED

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, engine, new_contract, monkeypatch):
        def broken_insert(row):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(engine.db, "insert_audit_entry", broken_insert)
        contract = await new_contract()
        await engine.outbox.drain()

        assert engine.contracts.get_contract(contract.id).title == "Service Agreement"
        assert len(engine.audit.failures) == 1
        assert engine.audit.failures[0].kind == "contract_created"

        entry = await engine.audit.record_event(
            contract.id,
            AuditEventKind.CONTRACT_CREATED,
            "direct write",
            ContractCreatedPayload(title="x", external_signer="a@x.com", initial_status="draft"),
        )
        assert entry is None

    @pytest.mark.asyncio
    async def test_ledger_tables_are_append_only(self, engine, awaiting_external):
        contract = await awaiting_external()
        await engine.outbox.drain()

        statements = [
            "UPDATE audit_entries SET description = 'tampered' WHERE contract_id = ?",
            "DELETE FROM audit_entries WHERE contract_id = ?",
            "UPDATE evidence_records SET content_hash = 'x' WHERE contract_id = ?",
            "DELETE FROM evidence_records WHERE contract_id = ?",
            "DELETE FROM signatures WHERE contract_id = ?",
        ]
        for sql in statements:
            with pytest.raises(sqlite3.DatabaseError):
                with get_connection() as conn:
                    conn.execute(sql, (contract.id,))

        entries = await engine.audit.list_entries(contract.id)
        assert all(e.description != "tampered" for e in entries)
        assert len(engine.evidence.list_evidence(contract.id)) == 1


class TestEvidence:
    @pytest.mark.asyncio
    async def test_content_hash_verifies(self, engine, awaiting_external):
        contract = await awaiting_external()
        record = engine.evidence.list_evidence(contract.id)[0]

        assert record.kind == EvidenceKind.SIGNATURE
        assert len(record.content_hash) == 64
        assert engine.evidence.verify_record(record)

        tampered = record.model_copy(update={
            "payload": record.payload.model_copy(update={"signer_name": "Someone Else"}),
        })
        assert not engine.evidence.verify_record(tampered)

    @pytest.mark.asyncio
    async def test_evidence_recorded_event(self, engine, awaiting_external):
        contract = await awaiting_external()
        await engine.outbox.drain()

        record = engine.evidence.list_evidence(contract.id)[0]
        events = [
            e for e in await engine.audit.list_entries(contract.id)
            if e.kind == AuditEventKind.EVIDENCE_RECORDED
        ]
        assert len(events) == 1
        assert events[0].payload.content_hash == record.content_hash


class TestComplianceReport:
    @pytest.mark.asyncio
    async def test_finalized_contract_is_legally_valid(self, engine, awaiting_external, code_for, browser):
        contract = await awaiting_external()
        await engine.contracts.get_contract_for_external_signing(contract.id, browser)
        await engine.contracts.validate_and_sign_external(contract.id, code_for(contract.id), browser)
        await engine.outbox.drain()

        report = await engine.evidence.build_report(contract.id)
        assert report.status == "finalized"
        assert report.conformance.evidence_complete
        assert report.conformance.timestamps_valid
        assert report.conformance.qualified_certificate_present
        assert report.conformance.integrity_evidence_present
        assert report.legally_valid

        assert report.critical_evidence.signatures == 2
        assert report.critical_evidence.access_attempts == 1
        assert report.events_by_kind["status_changed"] == 2
        assert report.total_events == len(report.timeline)

        text = engine.evidence.render_report_text(report)
        assert "Legally valid: YES" in text
        assert contract.id in text

    @pytest.mark.asyncio
    async def test_report_includes_queued_entries(self, engine, awaiting_external, code_for):
        contract = await awaiting_external()
        await engine.contracts.validate_and_sign_external(contract.id, code_for(contract.id))
        assert engine.outbox.pending > 0

        report = await engine.evidence.build_report(contract.id)

        assert engine.outbox.pending == 0
        assert report.total_events > 0
        assert report.conformance.evidence_complete
        assert report.conformance.timestamps_valid
        assert report.legally_valid

    @pytest.mark.asyncio
    async def test_pending_contract_is_not_valid(self, engine, awaiting_external):
        contract = await awaiting_external()
        await engine.outbox.drain()

        report = await engine.evidence.build_report(contract.id)
        assert not report.legally_valid
        assert not report.conformance.integrity_evidence_present
        assert "Legally valid: NO" in engine.evidence.render_report_text(report)

    @pytest.mark.asyncio
    async def test_unrecognized_issuer(self, engine, new_contract, signer):
        contract = await new_contract()
        self_signed = CertificateInfo(issuer="Self Signed CA", subject="CN=x", thumbprint="AA:BB")
        await engine.contracts.apply_internal_signature(contract.id, signer, self_signed)
        await engine.outbox.drain()

        report = await engine.evidence.build_report(contract.id)
        assert not report.conformance.qualified_certificate_present

    @pytest.mark.asyncio
    async def test_certificate(self, engine, awaiting_external, code_for, clock):
        contract = await awaiting_external()
        await engine.contracts.validate_and_sign_external(contract.id, code_for(contract.id))
        await engine.outbox.drain()

        certificate = await engine.evidence.issue_certificate(contract.id)
        await engine.outbox.drain()

        assert certificate.certificate_number == f"CERT-20260302-{contract.id[:8].upper()}"
        assert certificate.conformance_percent == 100
        assert certificate.legally_valid
        assert certificate.signatures_validated == 2
        assert certificate.document_hash == engine.contracts.get_contract(contract.id).document_hash
        assert (certificate.valid_until - certificate.issued_at).days == 3650

        kinds = [e.kind for e in await engine.audit.list_entries(contract.id)]
        assert kinds[-1] == AuditEventKind.VALIDATION_PERFORMED

    @pytest.mark.asyncio
    async def test_report_for_unknown_contract(self, engine):
        with pytest.raises(NotFoundError):
            await engine.evidence.build_report("missing")


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    async def json(self, content_type=None):
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, payload):
        self.payload = payload

    def get(self, url, timeout=None):
        return FakeResponse(self.payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class TestEnvironmentLookups:
    @pytest.fixture
    def lookup_settings(self):
        return Settings(ip_lookup_url="https://ip.example/json", geolocation_enabled=True)

    @pytest.mark.asyncio
    async def test_public_ip_from_lookup(self, lookup_settings, monkeypatch):
        monkeypatch.setattr(environment.aiohttp, "ClientSession", lambda: FakeSession({"ip": "198.51.100.20"}))
        assert await EnvironmentProbe(lookup_settings).public_ip() == "198.51.100.20"

    @pytest.mark.asyncio
    async def test_non_object_reply_falls_back(self, lookup_settings, monkeypatch):
        monkeypatch.setattr(environment.aiohttp, "ClientSession", lambda: FakeSession(["198.51.100.20"]))
        probe = EnvironmentProbe(lookup_settings)

        assert await probe.public_ip() == FALLBACK_IP
        assert await probe.geolocation("198.51.100.20") is None

    @pytest.mark.asyncio
    async def test_audit_entry_kept_when_lookup_reply_is_malformed(
        self, engine, new_contract, lookup_settings, monkeypatch,
    ):
        monkeypatch.setattr(environment.aiohttp, "ClientSession", lambda: FakeSession("unexpected"))
        engine.audit.probe = EnvironmentProbe(lookup_settings)

        contract = await new_contract()
        entries = await engine.audit.list_entries(contract.id)

        assert len(entries) == 1
        assert entries[0].evidence.ip_address == FALLBACK_IP
        assert not engine.audit.failures
