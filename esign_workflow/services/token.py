"""Verification token service for the external signature"""

import logging
import secrets
import uuid
from datetime import timedelta
from typing import List, Optional

from esign_workflow.db.base import DatabaseInterface, serialize_row
from esign_workflow.models.audit import (
    AuditEventKind,
    TokenIssuedPayload,
    TokenRejectedPayload,
    TokenValidatedPayload,
)
from esign_workflow.models.contract import ClientContext
from esign_workflow.models.token import (
    TimeRemaining,
    TokenFailureReason,
    TokenValidationResult,
    VerificationToken,
)
from esign_workflow.services.audit import AuditService
from esign_workflow.utils.clock import Clock, to_iso, utcnow
from esign_workflow.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)


def generate_code() -> str:
    """Uniformly random 6-digit code (100000-999999)."""
    return str(100000 + secrets.randbelow(900000))


def mask_code(code: str) -> str:
    # Codes never reach the ledger in clear
    return f"{code[:3]}***" if code else "***"


class TokenService:
    """Issues and redeems single-use, time-boxed verification codes."""

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

    async def issue_token(
        self,
        contract_id: str,
        destination_email: str,
        actor_id: Optional[str] = None,
    ) -> VerificationToken:
        """Supersede unused tokens of the contract and persist a new one."""
        now = self.clock()
        superseded = self.db.supersede_tokens(contract_id, to_iso(now))

        token = VerificationToken(
            id=str(uuid.uuid4()),
            contract_id=contract_id,
            code=generate_code(),
            destination_email=destination_email,
            issued_at=now,
            valid_until=now + timedelta(hours=self.settings.token_ttl_hours),
        )
        self.db.insert_token(serialize_row(token))
        logger.info(f"Issued verification token for contract {contract_id} ({superseded} superseded)")

        self.audit.emit(
            contract_id,
            AuditEventKind.TOKEN_ISSUED,
            f"Verification code sent to {destination_email}",
            TokenIssuedPayload(
                token_id=token.id,
                destination_email=destination_email,
                code_hint=mask_code(token.code),
                valid_until=to_iso(token.valid_until),
                superseded_count=superseded,
            ),
            actor_id=actor_id,
        )
        return token

    async def issue(self, contract_id: str, destination_email: str, actor_id: Optional[str] = None) -> str:
        """Issue a token and return its code."""
        token = await self.issue_token(contract_id, destination_email, actor_id=actor_id)
        return token.code

    def _reject(
        self,
        contract_id: str,
        code: str,
        reason: TokenFailureReason,
        client: Optional[ClientContext],
        token: Optional[VerificationToken] = None,
    ) -> TokenValidationResult:
        logger.info(f"Verification code rejected for contract {contract_id}: {reason.value}")
        self.audit.emit(
            contract_id,
            AuditEventKind.TOKEN_REJECTED,
            f"Verification code rejected: {reason.value}",
            TokenRejectedPayload(
                code_hint=mask_code(code),
                reason=reason.value,
                token_id=token.id if token else None,
            ),
            client=client,
        )
        return TokenValidationResult(valid=False, token=token, reason=reason)

    async def validate(
        self,
        contract_id: str,
        code: str,
        ip_address: str = "",
        user_agent: str = "",
    ) -> TokenValidationResult:
        """Redeem a code. The token is marked used by exactly one caller."""
        client = ClientContext(ip_address=ip_address, user_agent=user_agent)
        code = (code or "").strip()

        row = self.db.find_token(contract_id, code) if code else None
        if not row:
            return self._reject(contract_id, code, TokenFailureReason.NOT_FOUND, client)
        token = VerificationToken.model_validate(row)

        now = self.clock()
        if now > token.valid_until:
            return self._reject(contract_id, code, TokenFailureReason.EXPIRED, client, token)
        if token.is_used:
            return self._reject(contract_id, code, TokenFailureReason.ALREADY_USED, client, token)

        if not self.db.mark_token_used(token.id, to_iso(now), ip_address, user_agent):
            # Another request redeemed it first
            return self._reject(contract_id, code, TokenFailureReason.ALREADY_USED, client, token)

        token = token.model_copy(update={
            "used_at": now,
            "used_ip": ip_address,
            "used_user_agent": user_agent,
        })
        self.audit.emit(
            contract_id,
            AuditEventKind.TOKEN_VALIDATED,
            "Verification code accepted",
            TokenValidatedPayload(token_id=token.id, code_hint=mask_code(code)),
            client=client,
        )
        return TokenValidationResult(valid=True, token=token)

    def list_tokens(self, contract_id: str) -> List[VerificationToken]:
        return [VerificationToken.model_validate(row) for row in self.db.list_tokens(contract_id)]

    def get_active_token(self, contract_id: str) -> Optional[VerificationToken]:
        now = self.clock()
        for token in self.list_tokens(contract_id):
            if not token.is_used and token.valid_until >= now:
                return token
        return None

    def time_remaining(self, token: VerificationToken) -> TimeRemaining:
        remaining = token.valid_until - self.clock()
        if remaining.total_seconds() <= 0:
            return TimeRemaining(expired=True, text="Expired")
        hours, rest = divmod(int(remaining.total_seconds()), 3600)
        minutes = rest // 60
        text = f"{hours}h {minutes}min" if hours else f"{minutes}min"
        return TimeRemaining(expired=False, hours=hours, minutes=minutes, text=text)
