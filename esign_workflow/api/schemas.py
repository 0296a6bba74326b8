"""Request/response schemas for the signature workflow API"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from esign_workflow.models.contract import (
    CertificateInfo,
    Contract,
    Signature,
    SignerInfo,
)
from esign_workflow.models.reminder import NotificationStats, ReminderSchedule


class ContractDetailResponse(BaseModel):
    """Contract with its signatures"""
    contract: Contract
    signatures: List[Signature] = []


class ContractListResponse(BaseModel):
    contracts: List[Contract] = []


class InternalSignatureRequest(BaseModel):
    """Qualified signature applied by the company"""
    signer: SignerInfo
    certificate: CertificateInfo


class TokenIssuedResponse(BaseModel):
    """A new code went out by email; the code itself is never returned"""
    contract_id: str
    destination_email: str
    valid_until: Optional[datetime] = None


class ExternalSigningView(BaseModel):
    """What the external signer sees before entering the code"""
    contract_id: str
    title: str
    body: str
    status: str
    external_signer_name: str
    company_name: str
    awaiting_signature: bool
    code_expires_in: Optional[str] = None


class ExternalSignRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=12, description="6-digit verification code")


class ExternalSignResponse(BaseModel):
    success: bool
    status: str
    reason: Optional[str] = None
    message: str
    document_url: Optional[str] = None
    document_hash: Optional[str] = None


class ReminderResponse(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class ReminderListResponse(BaseModel):
    reminders: List[ReminderSchedule] = []
    stats: NotificationStats


class ErrorResponse(BaseModel):
    detail: str
    fields: List[str] = []
