"""Domain errors raised to callers of the workflow engine.

Token failures are not exceptions: they come back as a
``TokenFailureReason`` on the validation result so the caller can show an
actionable message.
"""


class WorkflowError(Exception):
    """Base class for errors surfaced by the engine."""


class ValidationError(WorkflowError):
    """Required input missing or malformed; nothing was changed."""

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = fields or []


class NotFoundError(WorkflowError):
    """Unknown contract, token or job id."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidStateError(WorkflowError):
    """Operation not allowed in the contract's (or job's) current state."""

    def __init__(self, message: str, current: str | None = None):
        super().__init__(message)
        self.current = current


class DuplicateRecordError(WorkflowError):
    """Store rejected an insert that violates a uniqueness rule."""


class StorageError(WorkflowError):
    """Blob upload or download failed."""
