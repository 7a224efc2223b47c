"""Datastore exceptions."""
from __future__ import annotations


class DatastoreError(Exception):
    """Base exception for storage failures.

    ``operation`` names the logical datastore operation that failed so
    callers can report it without parsing the message.
    """
    def __init__(self, message: str, operation: str | None = None, retriable: bool = False):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.retriable = retriable


class NotFoundError(DatastoreError):
    """A referenced host or label does not exist."""
    def __init__(self, entity: str, identifier: object, operation: str | None = None):
        super().__init__(f"{entity} {identifier!r} not found", operation)
        self.entity = entity
        self.identifier = identifier
