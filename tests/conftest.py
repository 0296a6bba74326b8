"""Pytest configuration and fixtures"""

from datetime import datetime, timedelta, timezone

import pytest

from esign_workflow.db.supabase import get_database
from esign_workflow.engine import WorkflowEngine
from esign_workflow.models.contract import (
    CertificateInfo,
    ClientContext,
    ContractCreate,
    ContractSnapshot,
    SignerInfo,
)
from esign_workflow.models.reminder import EmailResult
from esign_workflow.services.email import EmailSender
from esign_workflow.services.pdf_generator import DocumentRenderer
from esign_workflow.services.storage import InProcessBlobStore
from esign_workflow.utils.config import Settings


@pytest.fixture(autouse=True)
def test_env(tmp_path, monkeypatch):
    """Set up test environment with temporary database"""
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("DOCUMENTS_DIR", str(tmp_path / "documents"))
    monkeypatch.setenv("DB_MODE", "sqlite")
    monkeypatch.setenv("IP_LOOKUP_URL", "")
    monkeypatch.setenv("GEOLOCATION_ENABLED", "false")
    monkeypatch.setenv("WORKER_ENABLED", "false")
    monkeypatch.delenv("SMTP_HOST", raising=False)

    yield

    # Cleanup handled by tmp_path fixture


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRenderer(DocumentRenderer):
    """Renderer that can be told to fail the next N calls."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0

    def render(self, snapshot: ContractSnapshot) -> bytes:
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise RuntimeError("renderer unavailable")
        roles = ",".join(s.role.value for s in snapshot.signatures)
        return f"%PDF-1.4 {snapshot.contract.id} {snapshot.contract.title} [{roles}]".encode()


class FakeEmailSender(EmailSender):
    """Records every message; fails while ``fail`` is set."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, to: str, subject: str, html: str, text: str) -> EmailResult:
        if self.fail:
            return EmailResult(success=False, error="smtp down")
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return EmailResult(success=True, message_id=f"msg-{len(self.sent)}")


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def blob_store():
    return InProcessBlobStore()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def engine(settings, clock, renderer, email_sender, blob_store):
    engine = WorkflowEngine(
        db=get_database("sqlite"),
        settings=settings,
        clock=clock,
        renderer=renderer,
        email_sender=email_sender,
        blob_store=blob_store,
    )
    engine.init_db()
    return engine


@pytest.fixture
def signer():
    return SignerInfo(name="Maria Souza", email="maria@company.example", document="123.456.789-00", user_id="user-1")


@pytest.fixture
def certificate():
    return CertificateInfo(
        issuer="AC SOLUTI v5 - ICP-Brasil",
        subject="CN=Maria Souza",
        thumbprint="3F:A1:9C:00:7B",
        serial_number="0042",
    )


@pytest.fixture
def browser():
    return ClientContext(ip_address="203.0.113.7", user_agent="Mozilla/5.0 (pytest)")


@pytest.fixture
def new_contract(engine):
    """Factory creating a draft contract."""
    async def create(**overrides):
        data = {
            "title": "Service Agreement",
            "body": "{{company_name}} hires {{external_signer_name}} for {{scope}}.",
            "variables": {"scope": "consulting"},
            "external_signer_name": "Alex Client",
            "external_signer_email": "alex@client.example",
        }
        data.update(overrides)
        return await engine.contracts.create_contract(ContractCreate(**data), actor_id="user-1")

    return create


@pytest.fixture
def awaiting_external(engine, new_contract, signer, certificate, browser):
    """Factory for a contract with the internal signature applied."""
    async def create(**overrides):
        contract = await new_contract(**overrides)
        outcome = await engine.contracts.apply_internal_signature(contract.id, signer, certificate, browser)
        return outcome.contract

    return create


@pytest.fixture
def code_for(engine):
    """Code of the live verification token of a contract."""
    def lookup(contract_id: str) -> str:
        token = engine.tokens.get_active_token(contract_id)
        assert token is not None
        return token.code

    return lookup
