"""Reminder schedule and notification models"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class ReminderKind(str, Enum):
    REMINDER_24H = "reminder_24h"
    REMINDER_72H = "reminder_72h"
    REMINDER_7D = "reminder_7d"


REMINDER_KINDS = (ReminderKind.REMINDER_24H, ReminderKind.REMINDER_72H, ReminderKind.REMINDER_7D)


class ReminderSchedule(BaseModel):
    """A cancelable reminder tied to the pending external signature window"""
    id: str = ""
    contract_id: str
    kind: ReminderKind
    due_at: datetime
    sent: bool = False
    sent_at: Optional[datetime] = None
    attempts: int = 0
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: datetime

    @property
    def is_open(self) -> bool:
        return not self.sent and self.cancelled_at is None


class SweepResult(BaseModel):
    """What one reminder sweep did"""
    due: int = 0
    sent: int = 0
    cancelled: int = 0
    failed: int = 0


class EmailType(str, Enum):
    INVITATION = "signature_invitation"
    REMINDER = "signature_reminder"
    FINALIZATION = "contract_finalized"


class EmailResult(BaseModel):
    """Outcome reported by an email sender"""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class NotificationStats(BaseModel):
    emails_sent: int = 0
    reminders_sent: int = 0
    last_email_at: Optional[datetime] = None
    upcoming_reminders: List[ReminderSchedule] = []
