"""Document job and background worker models"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class DocumentJob(BaseModel):
    """Unit of work: produce the canonical signed document for a contract"""
    id: str = ""
    contract_id: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    error_message: Optional[str] = None
    document_url: Optional[str] = None
    document_hash: Optional[str] = None
    size_bytes: Optional[int] = None
    lease_expires_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None


class DocumentResult(BaseModel):
    """A rendered and stored document"""
    document_url: str
    document_hash: str
    size_bytes: int
    storage: str                    # which blob path produced the url
    generated_at: datetime
    reused: bool = False


class JobStats(BaseModel):
    total: int = 0
    by_status: Dict[str, int] = {}


class WorkerJob(BaseModel):
    """Individual scheduled job info."""
    id: str
    name: str
    next_run: Optional[datetime] = None
    trigger: str
    status: str = "active"


class WorkerStatus(BaseModel):
    """Status of the background worker."""
    is_running: bool
    jobs: List[WorkerJob] = []
    outbox_pending: int = 0
    last_check: Optional[datetime] = None


class UploadResult(BaseModel):
    """Outcome reported by a blob store"""
    success: bool
    url: Optional[str] = None
    error: Optional[str] = None
    storage: str = ""
