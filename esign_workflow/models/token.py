"""Verification token models"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class TokenFailureReason(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"


FAILURE_MESSAGES = {
    TokenFailureReason.NOT_FOUND: "Verification code not found",
    TokenFailureReason.ALREADY_USED: "Verification code has already been used",
    TokenFailureReason.EXPIRED: "Verification code has expired",
}


class VerificationToken(BaseModel):
    """Single-use, time-boxed code gating the external signature"""
    id: str = ""
    contract_id: str
    code: str
    destination_email: str
    issued_at: datetime
    valid_until: datetime
    used_at: Optional[datetime] = None
    used_ip: Optional[str] = None
    used_user_agent: Optional[str] = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    @property
    def superseded(self) -> bool:
        """Marked used by a newer issuance rather than redeemed."""
        return self.used_at is not None and not self.used_ip and not self.used_user_agent


class TokenValidationResult(BaseModel):
    """Outcome of ``TokenService.validate``"""
    valid: bool
    token: Optional[VerificationToken] = None
    reason: Optional[TokenFailureReason] = None

    @property
    def message(self) -> str:
        if self.valid:
            return "Verification code accepted"
        return FAILURE_MESSAGES.get(self.reason, "Verification code rejected")


class TimeRemaining(BaseModel):
    expired: bool
    hours: int = 0
    minutes: int = 0
    text: str = ""
