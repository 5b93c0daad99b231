"""
Error taxonomy shared by the queue, registry, publisher and live channel.

HTTP mapping (see main.py):
    ValidationError      -> 400 with the reason
    NotFoundError        -> 404
    PersistenceError     -> 500 with a generic message
    DeliveryChannelError -> never leaves the broadcast channel
"""
from typing import Optional


class MissionControlError(Exception):
    """Base class for every classified failure."""


class ValidationError(MissionControlError):
    """Missing or malformed required input."""

    def __init__(self, reason: str, fields: Optional[list[str]] = None) -> None:
        self.reason = reason
        self.fields = fields or []
        super().__init__(reason)


class NotFoundError(MissionControlError):
    """A referenced identity, task or notification does not exist."""

    def __init__(self, entity: str, key: str) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class PersistenceError(MissionControlError):
    """The backing store is unreachable or rejected an operation."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {type(cause).__name__}: {cause}" if cause else ""
        super().__init__(f"Persistence failure during {operation}{detail}")


class DeliveryChannelError(MissionControlError):
    """A write to one live connection failed."""

    def __init__(self, connection_id: str, reason: str) -> None:
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"Live connection {connection_id[:8]} write failed: {reason}")
