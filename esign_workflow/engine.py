"""Wiring of the workflow services around one database and one outbox"""

import logging
from typing import Optional

from esign_workflow.db.base import DatabaseInterface
from esign_workflow.db.supabase import get_database
from esign_workflow.services.audit import AuditService, Outbox
from esign_workflow.services.contract import ContractService
from esign_workflow.services.email import EmailSender, get_email_sender
from esign_workflow.services.environment import EnvironmentProbe
from esign_workflow.services.evidence import EvidenceService
from esign_workflow.services.jobs import DocumentJobProcessor
from esign_workflow.services.notifications import ContractMailer, NotificationScheduler
from esign_workflow.services.pdf_generator import ContractPDFRenderer, DocumentRenderer
from esign_workflow.services.storage import BlobStore, get_blob_store
from esign_workflow.services.token import TokenService
from esign_workflow.utils.clock import Clock, utcnow
from esign_workflow.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """All services of the signature workflow, sharing collaborators."""

    def __init__(
        self,
        db: Optional[DatabaseInterface] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        renderer: Optional[DocumentRenderer] = None,
        email_sender: Optional[EmailSender] = None,
        blob_store: Optional[BlobStore] = None,
        probe: Optional[EnvironmentProbe] = None,
        outbox: Optional[Outbox] = None,
    ):
        self.settings = settings or get_settings()
        self.db = db or get_database(self.settings.db_mode)
        self.clock = clock

        self.audit = AuditService(
            self.db,
            probe=probe or EnvironmentProbe(self.settings),
            outbox=outbox or Outbox(),
            settings=self.settings,
            clock=clock,
        )
        self.evidence = EvidenceService(self.db, self.audit, self.settings, clock)
        self.tokens = TokenService(self.db, self.audit, self.settings, clock)
        self.mailer = ContractMailer(email_sender or get_email_sender(self.settings), self.audit, self.settings)
        self.notifications = NotificationScheduler(self.db, self.audit, self.mailer, self.settings, clock)
        self.jobs = DocumentJobProcessor(
            self.db,
            self.audit,
            self.evidence,
            renderer or ContractPDFRenderer(),
            blob_store or get_blob_store(self.settings),
            self.settings,
            clock,
        )
        self.contracts = ContractService(
            self.db,
            self.audit,
            self.evidence,
            self.tokens,
            self.notifications,
            self.mailer,
            self.jobs,
            self.settings,
            clock,
        )

    @property
    def outbox(self) -> Outbox:
        return self.audit.outbox

    def init_db(self) -> None:
        self.db.init_db()
        logger.info(f"Database ready ({self.settings.db_mode})")
