"""Contract and signature models"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel


class ContractStatus(str, Enum):
    DRAFT = "draft"
    PENDING_INTERNAL_SIGNATURE = "pending_internal_signature"
    PENDING_EXTERNAL_SIGNATURE = "pending_external_signature"
    FINALIZED = "finalized"


# Forward-only ordering of the lifecycle
STATUS_ORDER = {
    ContractStatus.DRAFT: 0,
    ContractStatus.PENDING_INTERNAL_SIGNATURE: 1,
    ContractStatus.PENDING_EXTERNAL_SIGNATURE: 2,
    ContractStatus.FINALIZED: 3,
}

EDITABLE_STATUSES = (ContractStatus.DRAFT, ContractStatus.PENDING_INTERNAL_SIGNATURE)


class SignerRole(str, Enum):
    INTERNAL_QUALIFIED = "internal_qualified"
    EXTERNAL_SIMPLE = "external_simple"


class ClientContext(BaseModel):
    """Where a request came from"""
    ip_address: str = ""
    user_agent: str = ""


class CertificateInfo(BaseModel):
    """Metadata of the certificate backing a qualified signature.

    Recorded as evidence only; the chain of trust is not verified here.
    """
    issuer: str
    subject: str
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    thumbprint: str
    serial_number: Optional[str] = None
    holder_document: Optional[str] = None   # CPF/CNPJ of the holder


class SignerInfo(BaseModel):
    """Identity of the person applying the internal signature"""
    name: str
    email: Optional[str] = None
    document: Optional[str] = None
    user_id: Optional[str] = None


class ContractCreate(BaseModel):
    """Input for a new contract"""
    title: str = ""
    body: str = ""
    variables: Dict[str, str] = {}
    external_signer_name: str = ""
    external_signer_email: str = ""
    external_signer_document: Optional[str] = None
    template_name: Optional[str] = None


class ContractUpdate(BaseModel):
    """Editable fields while no signature exists"""
    title: Optional[str] = None
    body: Optional[str] = None
    variables: Optional[Dict[str, str]] = None
    external_signer_name: Optional[str] = None
    external_signer_email: Optional[str] = None
    external_signer_document: Optional[str] = None


class Contract(BaseModel):
    """A commercial contract moving through the signature workflow"""
    id: str = ""
    title: str
    body: str
    variables: Dict[str, str] = {}
    template_name: Optional[str] = None
    external_signer_name: str
    external_signer_email: str
    external_signer_document: Optional[str] = None
    status: ContractStatus = ContractStatus.DRAFT
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    document_url: Optional[str] = None
    document_hash: Optional[str] = None
    document_storage: Optional[str] = None  # 'supabase', 'filesystem', 'in_process'


class Signature(BaseModel):
    """One signature per signer role; never changed once written"""
    id: str = ""
    contract_id: str
    role: SignerRole
    signer_name: str
    signer_email: Optional[str] = None
    signer_document: Optional[str] = None
    ip_address: str = ""
    user_agent: str = ""
    signed_at: datetime
    certificate: Optional[CertificateInfo] = None
    signature_hash: Optional[str] = None
    token_id: Optional[str] = None


class ContractSnapshot(BaseModel):
    """Everything the document renderer needs, frozen at render time"""
    contract: Contract
    signatures: List[Signature] = []
    company_name: str = ""
    rendered_at: datetime


class InternalSignatureOutcome(BaseModel):
    """Result of the internal signature transition.

    ``token_issued`` False means the signature stands but the follow-up steps
    did not complete; ``reissue_token`` finishes them.
    """
    contract: Contract
    signature: Signature
    token_issued: bool = False
    invitation_sent: bool = False
    reminders_scheduled: bool = False
    error: Optional[str] = None


class ExternalSignatureOutcome(BaseModel):
    """Result of redeeming a verification token"""
    success: bool
    contract: Contract
    signature: Optional[Signature] = None
    reason: Optional[str] = None      # TokenFailureReason value on failure
    document_regenerated: bool = False
    notice_sent: bool = False
