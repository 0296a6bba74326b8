"""Blob storage for rendered contract documents"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from esign_workflow.models.job import UploadResult
from esign_workflow.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Stores document bytes and hands back a retrievable reference."""

    name: str = "blob"

    @abstractmethod
    async def upload(self, content: bytes, name: str, content_type: str = "application/pdf") -> UploadResult:
        """Store bytes under ``name``. Returns a failed result instead of raising."""


class InProcessBlobStore(BlobStore):
    """Keeps documents in memory under a ``blob:`` reference.

    Last-resort target when the configured store is unreachable; references
    only resolve inside the process that created them.
    """

    name = "in_process"

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    async def upload(self, content: bytes, name: str, content_type: str = "application/pdf") -> UploadResult:
        url = f"blob:esign/{uuid.uuid4()}/{name}"
        self._blobs[url] = content
        return UploadResult(success=True, url=url, storage=self.name)

    def get(self, url: str) -> Optional[bytes]:
        return self._blobs.get(url)


class FilesystemBlobStore(BlobStore):
    """Writes documents below a local directory (sqlite mode)."""

    name = "filesystem"

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _write(self, content: bytes, name: str) -> Path:
        path = self.directory / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path.resolve()

    async def upload(self, content: bytes, name: str, content_type: str = "application/pdf") -> UploadResult:
        try:
            path = await asyncio.to_thread(self._write, content, name)
            return UploadResult(success=True, url=path.as_uri(), storage=self.name)
        except OSError as e:
            logger.warning(f"Filesystem upload failed for {name}: {e}")
            return UploadResult(success=False, error=str(e), storage=self.name)


class SupabaseBlobStore(BlobStore):
    """Uploads documents to the Supabase Storage bucket."""

    name = "supabase"

    def __init__(self, db=None):
        if db is None:
            from esign_workflow.db.supabase import SupabaseClient
            db = SupabaseClient()
        self.db = db

    async def upload(self, content: bytes, name: str, content_type: str = "application/pdf") -> UploadResult:
        try:
            url = await asyncio.to_thread(self.db.upload_document, name, content, content_type)
            return UploadResult(success=True, url=url, storage=self.name)
        except Exception as e:
            logger.warning(f"Supabase upload failed for {name}: {e}")
            return UploadResult(success=False, error=str(e), storage=self.name)


class FallbackBlobStore(BlobStore):
    """Tries the primary store, then the in-process store.

    ``UploadResult.storage`` names the store that actually holds the bytes.
    """

    def __init__(self, primary: BlobStore, fallback: Optional[BlobStore] = None):
        self.primary = primary
        self.fallback = fallback or InProcessBlobStore()

    @property
    def name(self) -> str:
        return self.primary.name

    async def upload(self, content: bytes, name: str, content_type: str = "application/pdf") -> UploadResult:
        try:
            result = await self.primary.upload(content, name, content_type)
        except Exception as e:
            result = UploadResult(success=False, error=str(e), storage=self.primary.name)
        if result.success:
            return result

        logger.warning(
            f"Primary blob store '{self.primary.name}' failed ({result.error}), "
            f"falling back to '{self.fallback.name}'"
        )
        return await self.fallback.upload(content, name, content_type)


def get_blob_store(settings: Optional[Settings] = None) -> BlobStore:
    """Storage matching the database mode, wrapped with the in-process fallback."""
    settings = settings or get_settings()
    if settings.db_mode == "supabase":
        primary: BlobStore = SupabaseBlobStore()
    else:
        primary = FilesystemBlobStore(settings.documents_dir)
    return FallbackBlobStore(primary)
