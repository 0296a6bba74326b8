"""Audit trail service: append-only ledger of workflow events.

Writers call ``emit()``, which stamps the event and queues it on the
``Outbox``; a single consumer task appends entries in FIFO order. Recording
never raises into the caller. Failed writes are kept in ``failures`` and
logged.
"""

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime
from functools import partial
from typing import Awaitable, Callable, Deque, List, Optional

from pydantic import BaseModel

from esign_workflow.db.base import DatabaseInterface, serialize_row
from esign_workflow.models.audit import AuditEntry, AuditEventKind, TechnicalEvidence
from esign_workflow.models.contract import ClientContext
from esign_workflow.services.environment import EnvironmentProbe
from esign_workflow.utils.clock import Clock, to_iso, utcnow
from esign_workflow.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

OutboxItem = Callable[[], Awaitable[object]]


class AuditFailure(BaseModel):
    """An audit write that could not be persisted"""
    contract_id: str
    kind: str
    error: str
    occurred_at: datetime


class Outbox:
    """Bounded FIFO of pending audit writes with one consumer task."""

    def __init__(self, maxsize: int = 1000):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._consumer: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def put(self, item: OutboxItem) -> bool:
        try:
            self._queue.put_nowait(item)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(f"Audit outbox full, dropping event ({self.dropped} dropped so far)")
            return False

    async def _run_item(self, item: OutboxItem) -> None:
        try:
            await item()
        except Exception as e:
            logger.warning(f"Audit outbox item failed: {e}")
        finally:
            self._queue.task_done()

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            await self._run_item(item)

    def start(self) -> None:
        if self.running:
            return
        self._consumer = asyncio.get_running_loop().create_task(self._consume())
        logger.info("Audit outbox consumer started")

    async def drain(self) -> None:
        """Wait until every queued write has been processed."""
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            await self._run_item(self._queue.get_nowait())

    async def stop(self) -> None:
        await self.drain()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
            logger.info("Audit outbox consumer stopped")


class AuditService:
    """Records and retrieves the audit trail of contracts."""

    def __init__(
        self,
        db: DatabaseInterface,
        probe: Optional[EnvironmentProbe] = None,
        outbox: Optional[Outbox] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.probe = probe or EnvironmentProbe(self.settings)
        self.outbox = outbox or Outbox()
        self.clock = clock
        self.failures: Deque[AuditFailure] = deque(maxlen=200)

    async def collect_evidence(
        self,
        client: Optional[ClientContext] = None,
        timestamp: Optional[datetime] = None,
    ) -> TechnicalEvidence:
        """Build the technical evidence attached to an entry."""
        ip_address = client.ip_address if client and client.ip_address else await self.probe.public_ip()
        user_agent = client.user_agent if client and client.user_agent else self.settings.service_user_agent

        geolocation = None
        try:
            geolocation = await asyncio.wait_for(
                self.probe.geolocation(ip_address),
                timeout=self.settings.geolocation_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Geolocation lookup timed out")

        return TechnicalEvidence(
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=to_iso(timestamp or self.clock()),
            timezone=self.settings.timezone,
            geolocation=geolocation,
        )

    async def record_event(
        self,
        contract_id: str,
        kind: AuditEventKind,
        description: str,
        payload: BaseModel,
        actor_id: Optional[str] = None,
        client: Optional[ClientContext] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[AuditEntry]:
        """Append one entry. Returns None if the write failed."""
        timestamp = timestamp or self.clock()
        try:
            evidence = await self.collect_evidence(client, timestamp)
            entry = AuditEntry(
                id=str(uuid.uuid4()),
                contract_id=contract_id,
                kind=kind,
                description=description,
                payload=payload,
                evidence=evidence,
                actor_id=actor_id,
                timestamp=timestamp,
            )
            self.db.insert_audit_entry(serialize_row(entry))
            logger.debug(f"Audit {kind.value} recorded for contract {contract_id}")
            return entry
        except Exception as e:
            logger.warning(f"Failed to record audit event {kind.value} for {contract_id}: {e}")
            self.failures.append(AuditFailure(
                contract_id=contract_id,
                kind=kind.value,
                error=str(e),
                occurred_at=self.clock(),
            ))
            return None

    def emit(
        self,
        contract_id: str,
        kind: AuditEventKind,
        description: str,
        payload: BaseModel,
        actor_id: Optional[str] = None,
        client: Optional[ClientContext] = None,
    ) -> None:
        """Queue an event without waiting for it to be written."""
        self.outbox.put(partial(
            self.record_event,
            contract_id,
            kind,
            description,
            payload,
            actor_id=actor_id,
            client=client,
            timestamp=self.clock(),
        ))

    async def list_entries(self, contract_id: str) -> List[AuditEntry]:
        """Entries of a contract in ascending timestamp order, including queued ones."""
        await self.outbox.drain()
        rows = self.db.list_audit_entries(contract_id)
        return [AuditEntry.model_validate(row) for row in rows]
