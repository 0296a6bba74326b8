"""Contract API routes: authoring, internal signature, external signing, reports."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse

from esign_workflow.api.schemas import (
    ContractDetailResponse,
    ContractListResponse,
    ExternalSignRequest,
    ExternalSignResponse,
    ExternalSigningView,
    InternalSignatureRequest,
    ReminderListResponse,
    ReminderResponse,
    TokenIssuedResponse,
)
from esign_workflow.engine import WorkflowEngine
from esign_workflow.models.contract import (
    ClientContext,
    Contract,
    ContractCreate,
    ContractStatus,
    ContractUpdate,
    InternalSignatureOutcome,
)
from esign_workflow.models.evidence import ComplianceReport, ValidationCertificate
from esign_workflow.models.token import FAILURE_MESSAGES, TokenFailureReason

logger = logging.getLogger(__name__)

router = APIRouter()


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.engine


def client_context(request: Request) -> ClientContext:
    """Caller IP and user agent. X-Forwarded-For counts only from a trusted proxy."""
    peer = request.client.host if request.client else ""
    ip_address = peer
    if peer and peer in get_engine(request).settings.trusted_proxies:
        forwarded = request.headers.get("x-forwarded-for", "")
        ip_address = forwarded.split(",")[0].strip() or peer
    return ClientContext(ip_address=ip_address, user_agent=request.headers.get("user-agent", ""))


# ---- authoring ----

@router.post("/api/contracts", response_model=Contract, status_code=201)
async def create_contract(
    data: ContractCreate,
    engine: WorkflowEngine = Depends(get_engine),
    x_actor_id: Optional[str] = Header(None),
):
    """Create a draft contract."""
    return await engine.contracts.create_contract(data, actor_id=x_actor_id)


@router.get("/api/contracts", response_model=ContractListResponse)
async def list_contracts(
    status: Optional[ContractStatus] = None,
    limit: int = 100,
    engine: WorkflowEngine = Depends(get_engine),
):
    return ContractListResponse(contracts=engine.contracts.list_contracts(status, limit))


@router.get("/api/contracts/{contract_id}", response_model=ContractDetailResponse)
async def get_contract(contract_id: str, engine: WorkflowEngine = Depends(get_engine)):
    contract = engine.contracts.get_contract(contract_id)
    return ContractDetailResponse(contract=contract, signatures=engine.contracts.get_signatures(contract_id))


@router.patch("/api/contracts/{contract_id}", response_model=Contract)
async def update_contract(
    contract_id: str,
    changes: ContractUpdate,
    engine: WorkflowEngine = Depends(get_engine),
    x_actor_id: Optional[str] = Header(None),
):
    """Edit a contract before the internal signature."""
    return await engine.contracts.update_contract(contract_id, changes, actor_id=x_actor_id)


@router.post("/api/contracts/{contract_id}/submit", response_model=Contract)
async def submit_contract(
    contract_id: str,
    engine: WorkflowEngine = Depends(get_engine),
    x_actor_id: Optional[str] = Header(None),
):
    return await engine.contracts.submit_for_signature(contract_id, actor_id=x_actor_id)


# ---- internal signature ----

@router.post("/api/contracts/{contract_id}/internal-signature", response_model=InternalSignatureOutcome)
async def apply_internal_signature(
    contract_id: str,
    body: InternalSignatureRequest,
    request: Request,
    engine: WorkflowEngine = Depends(get_engine),
    x_actor_id: Optional[str] = Header(None),
):
    """Apply the qualified signature and send the code to the external signer."""
    return await engine.contracts.apply_internal_signature(
        contract_id,
        body.signer,
        body.certificate,
        client_context(request),
        actor_id=x_actor_id,
    )


@router.post("/api/contracts/{contract_id}/token", response_model=TokenIssuedResponse)
async def reissue_token(
    contract_id: str,
    engine: WorkflowEngine = Depends(get_engine),
    x_actor_id: Optional[str] = Header(None),
):
    """Issue a new verification code (the previous one stops working)."""
    await engine.contracts.reissue_token(contract_id, actor_id=x_actor_id)
    token = engine.tokens.get_active_token(contract_id)
    contract = engine.contracts.get_contract(contract_id)
    return TokenIssuedResponse(
        contract_id=contract_id,
        destination_email=contract.external_signer_email,
        valid_until=token.valid_until if token else None,
    )


# ---- external signing ----

@router.get("/api/sign/{contract_id}", response_model=ExternalSigningView)
async def view_for_signing(
    contract_id: str,
    request: Request,
    engine: WorkflowEngine = Depends(get_engine),
):
    contract = await engine.contracts.get_contract_for_external_signing(contract_id, client_context(request))
    token = engine.tokens.get_active_token(contract_id)
    return ExternalSigningView(
        contract_id=contract.id,
        title=contract.title,
        body=contract.body,
        status=contract.status.value,
        external_signer_name=contract.external_signer_name,
        company_name=engine.settings.company_name,
        awaiting_signature=contract.status == ContractStatus.PENDING_EXTERNAL_SIGNATURE,
        code_expires_in=engine.tokens.time_remaining(token).text if token else None,
    )


@router.post("/api/sign/{contract_id}", response_model=ExternalSignResponse)
async def sign_external(
    contract_id: str,
    body: ExternalSignRequest,
    request: Request,
    engine: WorkflowEngine = Depends(get_engine),
):
    """Redeem the verification code and finalize the contract."""
    outcome = await engine.contracts.validate_and_sign_external(
        contract_id, body.code, client_context(request),
    )
    if not outcome.success:
        reason = TokenFailureReason(outcome.reason)
        raise HTTPException(
            status_code=400,
            detail={"reason": reason.value, "message": FAILURE_MESSAGES[reason]},
        )
    return ExternalSignResponse(
        success=True,
        status=outcome.contract.status.value,
        message="Contract signed and finalized",
        document_url=outcome.contract.document_url,
        document_hash=outcome.contract.document_hash,
    )


# ---- reminders ----

@router.get("/api/contracts/{contract_id}/reminders", response_model=ReminderListResponse)
async def list_reminders(contract_id: str, engine: WorkflowEngine = Depends(get_engine)):
    engine.contracts.get_contract(contract_id)
    return ReminderListResponse(
        reminders=engine.notifications.list_reminders(contract_id),
        stats=await engine.notifications.get_notification_stats(contract_id),
    )


@router.post("/api/contracts/{contract_id}/reminders", response_model=ReminderResponse)
async def send_reminder(contract_id: str, engine: WorkflowEngine = Depends(get_engine)):
    """Send a reminder now, outside the schedule."""
    result = await engine.notifications.send_manual_reminder(contract_id)
    return ReminderResponse(success=result.success, message_id=result.message_id, error=result.error)


# ---- audit ----

@router.get("/api/contracts/{contract_id}/audit-report", response_model=ComplianceReport)
async def audit_report(contract_id: str, engine: WorkflowEngine = Depends(get_engine)):
    return await engine.evidence.build_report(contract_id)


@router.get("/api/contracts/{contract_id}/audit-report.txt", response_class=PlainTextResponse)
async def audit_report_text(contract_id: str, engine: WorkflowEngine = Depends(get_engine)):
    report = await engine.evidence.build_report(contract_id)
    return PlainTextResponse(engine.evidence.render_report_text(report))


@router.post("/api/contracts/{contract_id}/certificate", response_model=ValidationCertificate)
async def issue_certificate(contract_id: str, engine: WorkflowEngine = Depends(get_engine)):
    certificate = await engine.evidence.issue_certificate(contract_id)
    await engine.outbox.drain()
    return certificate
