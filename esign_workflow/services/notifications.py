"""Signing notifications: email compositions and the reminder schedule"""

import logging
import uuid
from datetime import datetime, timedelta
from html import escape
from typing import List, Optional

from esign_workflow.db.base import DatabaseInterface, serialize_row
from esign_workflow.errors import InvalidStateError, NotFoundError
from esign_workflow.models.audit import (
    AuditEventKind,
    EmailFailedPayload,
    EmailSentPayload,
    ReminderFailedPayload,
    ReminderSentPayload,
    RemindersCancelledPayload,
    RemindersScheduledPayload,
    ScheduledReminder,
)
from esign_workflow.models.contract import Contract, ContractStatus
from esign_workflow.models.reminder import (
    REMINDER_KINDS,
    EmailResult,
    EmailType,
    NotificationStats,
    ReminderSchedule,
    SweepResult,
)
from esign_workflow.services.audit import AuditService
from esign_workflow.services.email import EmailSender
from esign_workflow.utils.clock import Clock, to_iso, utcnow
from esign_workflow.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)


def _html_page(title: str, body: str, company: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{escape(title)}</title></head>
<body style="font-family: Arial, sans-serif; color: #222; max-width: 600px; margin: 0 auto;">
  <div style="background: #1f3a5f; color: #fff; padding: 16px 24px;">
    <h2 style="margin: 0;">{escape(title)}</h2>
  </div>
  <div style="padding: 24px; border: 1px solid #ddd; border-top: none;">
    {body}
  </div>
  <p style="font-size: 12px; color: #888; padding: 0 24px;">
    {escape(company)} &middot; This is an automated message, please do not reply.
  </p>
</body>
</html>"""


def _button(url: str, label: str) -> str:
    return (
        f'<p style="text-align: center; margin: 24px 0;">'
        f'<a href="{escape(url)}" style="background: #2e7d32; color: #fff; padding: 12px 24px; '
        f'text-decoration: none; border-radius: 4px;">{escape(label)}</a></p>'
    )


class ContractMailer:
    """Composes and sends the emails of the signing workflow.

    Every send is recorded in the audit trail as ``email_sent`` or
    ``email_failed``. Send failures are returned, never raised.
    """

    def __init__(
        self,
        sender: EmailSender,
        audit: AuditService,
        settings: Optional[Settings] = None,
    ):
        self.sender = sender
        self.audit = audit
        self.settings = settings or get_settings()

    def signing_link(self, contract_id: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/api/sign/{contract_id}"

    async def _dispatch(
        self,
        contract_id: str,
        email_type: EmailType,
        to: str,
        subject: str,
        html: str,
        text: str,
    ) -> EmailResult:
        try:
            result = await self.sender.send(to, subject, html, text)
        except Exception as e:
            logger.error(f"Email sender raised for {email_type.value}: {e}")
            result = EmailResult(success=False, error=str(e))

        if result.success:
            self.audit.emit(
                contract_id,
                AuditEventKind.EMAIL_SENT,
                f"Email {email_type.value} sent to {to}",
                EmailSentPayload(email_type=email_type.value, recipient=to, message_id=result.message_id),
            )
        else:
            logger.warning(f"Email {email_type.value} to {to} failed: {result.error}")
            self.audit.emit(
                contract_id,
                AuditEventKind.EMAIL_FAILED,
                f"Email {email_type.value} to {to} failed",
                EmailFailedPayload(email_type=email_type.value, recipient=to, error=result.error or "unknown"),
            )
        return result

    async def send_invitation(self, contract: Contract, code: str, valid_until: datetime) -> EmailResult:
        """Signing invitation carrying the verification code."""
        company = self.settings.company_name
        link = self.signing_link(contract.id)
        expires = valid_until.strftime("%Y-%m-%d %H:%M UTC")
        subject = f"Signature requested: {contract.title}"

        html = _html_page(
            "Your signature is requested",
            f"""<p>Hello {escape(contract.external_signer_name)},</p>
    <p>{escape(company)} has signed the contract <strong>{escape(contract.title)}</strong>
    and it is now waiting for your signature.</p>
    <p>Your verification code:</p>
    <p style="font-size: 28px; letter-spacing: 6px; text-align: center; font-weight: bold;">{escape(code)}</p>
    <p>The code is valid until <strong>{expires}</strong> and can be used once.</p>
    {_button(link, "Review and sign")}
    <p>If you did not expect this email you can ignore it.</p>""",
            company,
        )
        text = (
            f"Hello {contract.external_signer_name},\n\n"
            f"{company} has signed the contract \"{contract.title}\" and it is now waiting for your signature.\n\n"
            f"Verification code: {code}\n"
            f"Valid until: {expires} (single use)\n\n"
            f"Review and sign: {link}\n"
        )
        return await self._dispatch(
            contract.id, EmailType.INVITATION, contract.external_signer_email, subject, html, text,
        )

    async def send_reminder(self, contract: Contract, reminder_label: str) -> EmailResult:
        company = self.settings.company_name
        link = self.signing_link(contract.id)
        subject = f"Reminder: contract awaiting your signature - {contract.title}"

        html = _html_page(
            "Contract awaiting your signature",
            f"""<p>Hello {escape(contract.external_signer_name)},</p>
    <p>The contract <strong>{escape(contract.title)}</strong> sent by {escape(company)}
    is still waiting for your signature ({escape(reminder_label)}).</p>
    {_button(link, "Review and sign")}
    <p>If your verification code has expired, ask {escape(company)} for a new one.</p>""",
            company,
        )
        text = (
            f"Hello {contract.external_signer_name},\n\n"
            f"The contract \"{contract.title}\" sent by {company} is still waiting for your signature.\n\n"
            f"Review and sign: {link}\n"
            f"If your verification code has expired, ask {company} for a new one.\n"
        )
        return await self._dispatch(
            contract.id, EmailType.REMINDER, contract.external_signer_email, subject, html, text,
        )

    async def send_finalization_notice(self, contract: Contract) -> EmailResult:
        company = self.settings.company_name
        subject = f"Contract finalized: {contract.title}"
        finalized = (contract.finalized_at or utcnow()).strftime("%Y-%m-%d %H:%M UTC")

        document_html = ""
        document_text = ""
        if contract.document_url:
            document_html = _button(contract.document_url, "Download signed contract")
            document_text = f"Signed contract: {contract.document_url}\n"
        if contract.document_hash:
            document_html += f'<p style="font-size: 12px;">SHA-256: <code>{escape(contract.document_hash)}</code></p>'
            document_text += f"SHA-256: {contract.document_hash}\n"

        html = _html_page(
            "Contract finalized",
            f"""<p>Hello {escape(contract.external_signer_name)},</p>
    <p>The contract <strong>{escape(contract.title)}</strong> has been signed by both parties
    and was finalized on {finalized}.</p>
    {document_html}
    <p>Thank you.</p>""",
            company,
        )
        text = (
            f"Hello {contract.external_signer_name},\n\n"
            f"The contract \"{contract.title}\" has been signed by both parties and was finalized on {finalized}.\n\n"
            f"{document_text}"
        )
        return await self._dispatch(
            contract.id, EmailType.FINALIZATION, contract.external_signer_email, subject, html, text,
        )


class NotificationScheduler:
    """Reminder schedule for contracts awaiting the external signature."""

    def __init__(
        self,
        db: DatabaseInterface,
        audit: AuditService,
        mailer: ContractMailer,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.audit = audit
        self.mailer = mailer
        self.settings = settings or get_settings()
        self.clock = clock

    def _load_contract(self, contract_id: str) -> Optional[Contract]:
        row = self.db.get_contract(contract_id)
        return Contract.model_validate(row) if row else None

    async def schedule_reminders(self, contract_id: str) -> List[ReminderSchedule]:
        """Create the 24h, 72h and 7-day reminders from now."""
        now = self.clock()
        # A retried transition replaces the earlier schedule
        self.db.cancel_reminders(contract_id, "rescheduled", to_iso(now))

        reminders = [
            ReminderSchedule(
                id=str(uuid.uuid4()),
                contract_id=contract_id,
                kind=kind,
                due_at=now + timedelta(hours=offset),
                created_at=now,
            )
            for kind, offset in zip(REMINDER_KINDS, self.settings.reminder_offsets_hours)
        ]
        self.db.insert_reminders([serialize_row(r) for r in reminders])
        logger.info(f"Scheduled {len(reminders)} reminders for contract {contract_id}")

        self.audit.emit(
            contract_id,
            AuditEventKind.REMINDERS_SCHEDULED,
            f"{len(reminders)} reminders scheduled",
            RemindersScheduledPayload(reminders=[
                ScheduledReminder(reminder_kind=r.kind.value, due_at=to_iso(r.due_at)) for r in reminders
            ]),
        )
        return reminders

    async def cancel_reminders(self, contract_id: str, reason: str) -> int:
        """Cancel every open reminder of the contract."""
        count = self.db.cancel_reminders(contract_id, reason, to_iso(self.clock()))
        logger.info(f"Cancelled {count} reminders for contract {contract_id}: {reason}")
        self.audit.emit(
            contract_id,
            AuditEventKind.REMINDERS_CANCELLED,
            f"Reminders cancelled: {reason}",
            RemindersCancelledPayload(reason=reason, cancelled_count=count),
        )
        return count

    def list_reminders(self, contract_id: str) -> List[ReminderSchedule]:
        return [ReminderSchedule.model_validate(row) for row in self.db.list_reminders(contract_id)]

    async def sweep(self) -> SweepResult:
        """Send every due reminder whose contract still awaits the external signature."""
        now = self.clock()
        due = [
            ReminderSchedule.model_validate(row)
            for row in self.db.list_due_reminders(to_iso(now), self.settings.reminder_max_attempts)
        ]
        result = SweepResult(due=len(due))

        for reminder in due:
            contract = self._load_contract(reminder.contract_id)
            if contract is None or contract.status != ContractStatus.PENDING_EXTERNAL_SIGNATURE:
                status = contract.status.value if contract else "missing"
                reason = f"contract_{status}"
                self.db.update_reminder(reminder.id, {"cancelled_at": to_iso(now), "cancel_reason": reason})
                self.audit.emit(
                    reminder.contract_id,
                    AuditEventKind.REMINDERS_CANCELLED,
                    f"Stale reminder {reminder.kind.value} cancelled: {reason}",
                    RemindersCancelledPayload(reason=reason, cancelled_count=1),
                )
                result.cancelled += 1
                continue

            attempts = reminder.attempts + 1
            email = await self.mailer.send_reminder(contract, reminder.kind.value)
            if email.success:
                self.db.update_reminder(reminder.id, {
                    "sent": True,
                    "sent_at": to_iso(self.clock()),
                    "attempts": attempts,
                })
                self.audit.emit(
                    contract.id,
                    AuditEventKind.REMINDER_SENT,
                    f"Reminder {reminder.kind.value} sent",
                    ReminderSentPayload(reminder_kind=reminder.kind.value, reminder_id=reminder.id, attempt=attempts),
                )
                result.sent += 1
            else:
                self.db.update_reminder(reminder.id, {"attempts": attempts})
                self.audit.emit(
                    contract.id,
                    AuditEventKind.REMINDER_FAILED,
                    f"Reminder {reminder.kind.value} failed",
                    ReminderFailedPayload(
                        reminder_id=reminder.id,
                        reminder_kind=reminder.kind.value,
                        attempts=attempts,
                        error=email.error or "unknown",
                    ),
                )
                result.failed += 1

        if result.due:
            logger.info(
                f"Reminder sweep: {result.sent} sent, {result.cancelled} cancelled, {result.failed} failed"
            )
        return result

    async def send_manual_reminder(self, contract_id: str) -> EmailResult:
        """Operator-triggered reminder outside the schedule."""
        contract = self._load_contract(contract_id)
        if contract is None:
            raise NotFoundError("Contract", contract_id)
        if contract.status != ContractStatus.PENDING_EXTERNAL_SIGNATURE:
            raise InvalidStateError(
                f"Reminders can only be sent while awaiting the external signature "
                f"(status is {contract.status.value})",
                current=contract.status.value,
            )

        email = await self.mailer.send_reminder(contract, "manual")
        if email.success:
            self.audit.emit(
                contract_id,
                AuditEventKind.REMINDER_SENT,
                "Manual reminder sent",
                ReminderSentPayload(reminder_kind="manual"),
            )
        return email

    async def get_notification_stats(self, contract_id: str) -> NotificationStats:
        entries = await self.audit.list_entries(contract_id)
        emails = [e for e in entries if e.kind == AuditEventKind.EMAIL_SENT]
        reminders_sent = sum(1 for e in entries if e.kind == AuditEventKind.REMINDER_SENT)
        upcoming = [r for r in self.list_reminders(contract_id) if r.is_open]
        return NotificationStats(
            emails_sent=len(emails),
            reminders_sent=reminders_sent,
            last_email_at=emails[-1].timestamp if emails else None,
            upcoming_reminders=upcoming,
        )
