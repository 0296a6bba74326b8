"""Tests for the contract lifecycle: authoring, internal and external signatures"""

from datetime import timedelta

import pytest

from esign_workflow.errors import InvalidStateError, NotFoundError, ValidationError
from esign_workflow.models.audit import AuditEventKind
from esign_workflow.models.contract import (
    CertificateInfo,
    ContractCreate,
    ContractStatus,
    ContractUpdate,
    SignerRole,
)
from esign_workflow.models.evidence import EvidenceKind
from esign_workflow.models.token import TokenFailureReason


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_draft(self, engine, new_contract):
        contract = await new_contract()
        await engine.outbox.drain()

        stored = engine.contracts.get_contract(contract.id)
        assert stored.status == ContractStatus.DRAFT
        assert stored.variables == {"scope": "consulting"}
        assert stored.created_by == "user-1"

        kinds = [e.kind for e in await engine.audit.list_entries(contract.id)]
        assert kinds == [AuditEventKind.CONTRACT_CREATED]
        assert len(engine.jobs.list_jobs()) == 1

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, engine):
        with pytest.raises(ValidationError) as exc:
            await engine.contracts.create_contract(ContractCreate(title="Only a title"))

        assert set(exc.value.fields) == {"body", "external_signer_name", "external_signer_email"}
        assert engine.contracts.list_contracts() == []

    @pytest.mark.asyncio
    async def test_invalid_email_rejected(self, new_contract):
        with pytest.raises(ValidationError) as exc:
            await new_contract(external_signer_email="not-an-email")
        assert exc.value.fields == ["external_signer_email"]

    def test_unknown_contract(self, engine):
        with pytest.raises(NotFoundError):
            engine.contracts.get_contract("missing")


class TestEditAndSubmit:
    @pytest.mark.asyncio
    async def test_update_draft(self, engine, new_contract):
        contract = await new_contract()
        updated = await engine.contracts.update_contract(
            contract.id, ContractUpdate(title="Service Agreement v2", body="New body"), actor_id="user-2",
        )
        await engine.outbox.drain()

        assert updated.title == "Service Agreement v2"
        assert updated.body == "New body"
        edits = [e for e in await engine.audit.list_entries(contract.id) if e.kind == AuditEventKind.CONTRACT_EDITED]
        assert len(edits) == 1
        assert edits[0].payload.changed_fields == ["body", "title"]
        assert edits[0].actor_id == "user-2"

    @pytest.mark.asyncio
    async def test_update_clears_stale_document(self, engine, new_contract):
        contract = await new_contract()
        await engine.jobs.poll_and_process()
        assert engine.contracts.get_contract(contract.id).document_hash

        updated = await engine.contracts.update_contract(contract.id, ContractUpdate(body="Changed"))
        assert updated.document_url is None
        assert updated.document_hash is None

    @pytest.mark.asyncio
    async def test_update_without_changes_is_noop(self, engine, new_contract):
        contract = await new_contract()
        same = await engine.contracts.update_contract(contract.id, ContractUpdate(title=contract.title))
        await engine.outbox.drain()

        assert same.updated_at == contract.updated_at
        kinds = [e.kind for e in await engine.audit.list_entries(contract.id)]
        assert AuditEventKind.CONTRACT_EDITED not in kinds

    @pytest.mark.asyncio
    async def test_submit_only_from_draft(self, engine, new_contract):
        contract = await new_contract()
        submitted = await engine.contracts.submit_for_signature(contract.id)
        assert submitted.status == ContractStatus.PENDING_INTERNAL_SIGNATURE

        with pytest.raises(InvalidStateError):
            await engine.contracts.submit_for_signature(contract.id)


class TestInternalSignature:
    @pytest.mark.asyncio
    async def test_opens_external_window(self, engine, new_contract, signer, certificate, browser, email_sender, clock):
        contract = await new_contract()
        outcome = await engine.contracts.apply_internal_signature(contract.id, signer, certificate, browser)
        await engine.outbox.drain()

        assert outcome.contract.status == ContractStatus.PENDING_EXTERNAL_SIGNATURE
        assert outcome.token_issued and outcome.invitation_sent and outcome.reminders_scheduled
        assert outcome.error is None

        assert outcome.signature.role == SignerRole.INTERNAL_QUALIFIED
        assert outcome.signature.ip_address == "203.0.113.7"
        assert outcome.signature.signature_hash

        token = engine.tokens.get_active_token(contract.id)
        assert token.destination_email == "alex@client.example"

        assert len(email_sender.sent) == 1
        invitation = email_sender.sent[0]
        assert invitation["to"] == "alex@client.example"
        assert token.code in invitation["text"]
        assert f"/api/sign/{contract.id}" in invitation["text"]

        reminders = engine.notifications.list_reminders(contract.id)
        assert sorted(r.due_at - clock() for r in reminders) == [
            timedelta(hours=24), timedelta(hours=72), timedelta(days=7),
        ]

        evidence = engine.evidence.list_evidence(contract.id)
        assert [r.kind for r in evidence] == [EvidenceKind.SIGNATURE]
        assert evidence[0].payload.certificate.thumbprint == certificate.thumbprint

    @pytest.mark.asyncio
    async def test_only_once(self, engine, awaiting_external, signer, certificate):
        contract = await awaiting_external()
        with pytest.raises(InvalidStateError):
            await engine.contracts.apply_internal_signature(contract.id, signer, certificate)
        assert len(engine.contracts.get_signatures(contract.id)) == 1

    @pytest.mark.asyncio
    async def test_certificate_required(self, engine, new_contract, signer):
        contract = await new_contract()
        incomplete = CertificateInfo(issuer="ICP-Brasil", subject="CN=x", thumbprint=" ")

        with pytest.raises(ValidationError):
            await engine.contracts.apply_internal_signature(contract.id, signer, incomplete)

        assert engine.contracts.get_signatures(contract.id) == []
        assert engine.contracts.get_contract(contract.id).status == ContractStatus.DRAFT

    @pytest.mark.asyncio
    async def test_edit_blocked_after_signature(self, engine, awaiting_external):
        contract = await awaiting_external()
        with pytest.raises(InvalidStateError):
            await engine.contracts.update_contract(contract.id, ContractUpdate(title="Changed"))

    @pytest.mark.asyncio
    async def test_follow_up_failure_leaves_no_token(self, engine, new_contract, signer, certificate, monkeypatch):
        contract = await new_contract()

        async def broken_issue(*args, **kwargs):
            raise RuntimeError("token store unavailable")

        original = engine.tokens.issue_token
        monkeypatch.setattr(engine.tokens, "issue_token", broken_issue)
        outcome = await engine.contracts.apply_internal_signature(contract.id, signer, certificate)

        assert outcome.contract.status == ContractStatus.PENDING_EXTERNAL_SIGNATURE
        assert not outcome.token_issued
        assert "token store unavailable" in outcome.error
        assert engine.tokens.list_tokens(contract.id) == []

        monkeypatch.setattr(engine.tokens, "issue_token", original)
        code = await engine.contracts.reissue_token(contract.id)
        assert engine.tokens.get_active_token(contract.id).code == code
        assert len([r for r in engine.notifications.list_reminders(contract.id) if r.is_open]) == 3

    @pytest.mark.asyncio
    async def test_email_failure_does_not_block(self, engine, new_contract, signer, certificate, email_sender):
        email_sender.fail = True
        contract = await new_contract()
        outcome = await engine.contracts.apply_internal_signature(contract.id, signer, certificate)
        await engine.outbox.drain()

        assert outcome.token_issued
        assert not outcome.invitation_sent
        assert outcome.reminders_scheduled
        kinds = [e.kind for e in await engine.audit.list_entries(contract.id)]
        assert AuditEventKind.EMAIL_FAILED in kinds

    @pytest.mark.asyncio
    async def test_reissue_replaces_token(self, engine, awaiting_external, code_for, email_sender):
        contract = await awaiting_external()
        first = code_for(contract.id)
        second = await engine.contracts.reissue_token(contract.id)

        assert code_for(contract.id) == second
        assert len(email_sender.sent) == 2
        if first != second:
            result = await engine.tokens.validate(contract.id, first)
            assert result.reason == TokenFailureReason.ALREADY_USED

    @pytest.mark.asyncio
    async def test_reissue_requires_external_window(self, engine, new_contract):
        contract = await new_contract()
        with pytest.raises(InvalidStateError):
            await engine.contracts.reissue_token(contract.id)

    @pytest.mark.asyncio
    async def test_evidence_failure_still_opens_external_window(
        self, engine, new_contract, signer, certificate, code_for, monkeypatch,
    ):
        contract = await new_contract()

        def broken_insert(record):
            raise RuntimeError("evidence store down")

        original = engine.db.insert_evidence
        monkeypatch.setattr(engine.db, "insert_evidence", broken_insert)
        outcome = await engine.contracts.apply_internal_signature(contract.id, signer, certificate)

        assert outcome.contract.status == ContractStatus.PENDING_EXTERNAL_SIGNATURE
        assert not outcome.token_issued
        assert "evidence store down" in outcome.error
        assert engine.tokens.list_tokens(contract.id) == []

        monkeypatch.setattr(engine.db, "insert_evidence", original)
        await engine.contracts.reissue_token(contract.id)
        assert [r.kind for r in engine.evidence.list_evidence(contract.id)] == [EvidenceKind.SIGNATURE]

        result = await engine.contracts.validate_and_sign_external(contract.id, code_for(contract.id))
        assert result.success
        assert engine.contracts.get_contract(contract.id).status == ContractStatus.FINALIZED

    @pytest.mark.asyncio
    async def test_interrupted_signature_is_resumed(self, engine, new_contract, signer, certificate, monkeypatch):
        contract = await new_contract()

        def crashed_transition(*args, **kwargs):
            raise RuntimeError("connection reset")

        original = engine.db.transition_contract
        monkeypatch.setattr(engine.db, "transition_contract", crashed_transition)
        with pytest.raises(RuntimeError):
            await engine.contracts.apply_internal_signature(contract.id, signer, certificate)
        assert engine.contracts.get_contract(contract.id).status == ContractStatus.DRAFT

        monkeypatch.setattr(engine.db, "transition_contract", original)
        outcome = await engine.contracts.apply_internal_signature(contract.id, signer, certificate)

        assert outcome.contract.status == ContractStatus.PENDING_EXTERNAL_SIGNATURE
        assert outcome.token_issued
        assert len(engine.contracts.get_signatures(contract.id)) == 1
        assert outcome.signature.id == engine.contracts.get_signatures(contract.id)[0].id


class TestExternalSignature:
    @pytest.mark.asyncio
    async def test_full_workflow_finalizes(self, engine, awaiting_external, code_for, browser, email_sender, clock):
        contract = await awaiting_external()
        clock.advance(hours=2)

        outcome = await engine.contracts.validate_and_sign_external(contract.id, code_for(contract.id), browser)
        await engine.outbox.drain()

        assert outcome.success
        final = engine.contracts.get_contract(contract.id)
        assert final.status == ContractStatus.FINALIZED
        assert final.finalized_at == clock()
        assert final.document_url and final.document_hash

        signatures = engine.contracts.get_signatures(contract.id)
        assert {s.role for s in signatures} == {SignerRole.INTERNAL_QUALIFIED, SignerRole.EXTERNAL_SIMPLE}
        external = next(s for s in signatures if s.role == SignerRole.EXTERNAL_SIMPLE)
        assert external.token_id

        reminders = engine.notifications.list_reminders(contract.id)
        assert len(reminders) == 3
        assert all(r.cancelled_at is not None and r.cancel_reason == "contract_finalized" for r in reminders)

        kinds = {r.kind for r in engine.evidence.list_evidence(contract.id)}
        assert kinds == {EvidenceKind.SIGNATURE, EvidenceKind.TOKEN, EvidenceKind.INTEGRITY}

        notice = email_sender.sent[-1]
        assert notice["to"] == "alex@client.example"
        assert final.document_hash in notice["text"]
        assert outcome.notice_sent and outcome.document_regenerated

    @pytest.mark.asyncio
    async def test_wrong_code_changes_nothing(self, engine, awaiting_external, browser):
        contract = await awaiting_external()
        outcome = await engine.contracts.validate_and_sign_external(contract.id, "000000", browser)

        assert not outcome.success
        assert outcome.reason == TokenFailureReason.NOT_FOUND.value
        assert engine.contracts.get_contract(contract.id).status == ContractStatus.PENDING_EXTERNAL_SIGNATURE
        assert len(engine.contracts.get_signatures(contract.id)) == 1

    @pytest.mark.asyncio
    async def test_expired_code(self, engine, awaiting_external, code_for, clock):
        contract = await awaiting_external()
        code = code_for(contract.id)
        clock.advance(hours=25)

        outcome = await engine.contracts.validate_and_sign_external(contract.id, code)
        assert outcome.reason == TokenFailureReason.EXPIRED.value
        assert engine.contracts.get_contract(contract.id).status == ContractStatus.PENDING_EXTERNAL_SIGNATURE

    @pytest.mark.asyncio
    async def test_requires_external_window(self, engine, new_contract):
        contract = await new_contract()
        with pytest.raises(InvalidStateError):
            await engine.contracts.validate_and_sign_external(contract.id, "123456")

    @pytest.mark.asyncio
    async def test_regeneration_failure_still_finalizes(self, engine, awaiting_external, code_for, renderer):
        contract = await awaiting_external()
        renderer.failures = 1

        outcome = await engine.contracts.validate_and_sign_external(contract.id, code_for(contract.id))
        await engine.outbox.drain()

        assert outcome.success
        assert not outcome.document_regenerated
        assert engine.contracts.get_contract(contract.id).status == ContractStatus.FINALIZED
        kinds = [e.kind for e in await engine.audit.list_entries(contract.id)]
        assert AuditEventKind.DOCUMENT_GENERATION_FAILED in kinds

    @pytest.mark.asyncio
    async def test_evidence_failure_after_redemption_resumes(
        self, engine, awaiting_external, code_for, browser, monkeypatch,
    ):
        contract = await awaiting_external()
        first_token = engine.tokens.get_active_token(contract.id)

        def broken_insert(record):
            raise RuntimeError("evidence store down")

        original = engine.db.insert_evidence
        monkeypatch.setattr(engine.db, "insert_evidence", broken_insert)
        with pytest.raises(RuntimeError):
            await engine.contracts.validate_and_sign_external(contract.id, first_token.code, browser)
        assert engine.contracts.get_contract(contract.id).status == ContractStatus.PENDING_EXTERNAL_SIGNATURE

        monkeypatch.setattr(engine.db, "insert_evidence", original)
        new_code = await engine.contracts.reissue_token(contract.id)
        outcome = await engine.contracts.validate_and_sign_external(contract.id, new_code)

        assert outcome.success
        assert engine.contracts.get_contract(contract.id).status == ContractStatus.FINALIZED
        signatures = engine.contracts.get_signatures(contract.id)
        assert len(signatures) == 2
        external = next(s for s in signatures if s.role == SignerRole.EXTERNAL_SIMPLE)
        assert external.token_id == first_token.id
        assert external.ip_address == browser.ip_address

        token_evidence = [r for r in engine.evidence.list_evidence(contract.id) if r.kind == EvidenceKind.TOKEN]
        assert len(token_evidence) == 1
        assert token_evidence[0].payload.token_id == first_token.id
        assert all(r.cancelled_at is not None for r in engine.notifications.list_reminders(contract.id))
        # The reissued code was not spent on the resumed finalization
        assert engine.tokens.get_active_token(contract.id).code == new_code

    @pytest.mark.asyncio
    async def test_signing_page_visit_is_audited(self, engine, awaiting_external, browser):
        contract = await awaiting_external()
        await engine.contracts.get_contract_for_external_signing(contract.id, browser)
        await engine.outbox.drain()

        visits = [e for e in await engine.audit.list_entries(contract.id) if e.kind == AuditEventKind.ACCESS_ATTEMPT]
        assert len(visits) == 1
        assert visits[0].payload.success
        assert visits[0].evidence.user_agent == browser.user_agent


class TestForwardOnly:
    @pytest.mark.asyncio
    async def test_finalized_contract_cannot_move_back(
        self, engine, awaiting_external, code_for, signer, certificate,
    ):
        contract = await awaiting_external()
        code = code_for(contract.id)
        await engine.contracts.validate_and_sign_external(contract.id, code)

        attempts = [
            engine.contracts.apply_internal_signature(contract.id, signer, certificate),
            engine.contracts.validate_and_sign_external(contract.id, code),
            engine.contracts.update_contract(contract.id, ContractUpdate(title="Reopened")),
            engine.contracts.submit_for_signature(contract.id),
            engine.contracts.reissue_token(contract.id),
        ]
        for attempt in attempts:
            with pytest.raises(InvalidStateError):
                await attempt

        assert engine.contracts.get_contract(contract.id).status == ContractStatus.FINALIZED
