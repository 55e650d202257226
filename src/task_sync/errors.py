"""Error types raised by the sync engine and its collaborators."""

from __future__ import annotations


class SyncError(Exception):
    """
    Base exception for a failed sync pass.

    Carries the failing operation and, when one was being written,
    the entity id so callers can log or retry with context.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        entity_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.entity_id = entity_id

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.operation:
            context.append(self.operation)
        if self.entity_id:
            context.append(f"id={self.entity_id}")
        if context:
            return f"{message} [{', '.join(context)}]"
        return message


class TransportError(SyncError):
    """Raised when the remote call fails or times out."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message, operation=operation)
        self.status = status


class InvalidCursorError(TransportError):
    """Raised when the remote rejects the stored sync cursor."""

    pass


class StorageError(SyncError):
    """Raised when a transaction cannot begin, execute or commit."""

    pass


class DeadlineExceeded(SyncError):
    """Raised when a pass runs past its bounded deadline."""

    def __init__(self, timeout: float, operation: str | None = None) -> None:
        super().__init__(f"Sync pass exceeded {timeout:g}s deadline", operation=operation)
        self.timeout = timeout
