"""
Exception hierarchy for change stream processing.

Cursor failures themselves are pymongo exceptions and are never wrapped here;
these classes cover malformed payloads, bad input and checkpoint persistence.
"""

from typing import Any


class CDCError(Exception):
    """Base exception for CDC errors."""
    pass


class InvalidDocumentError(CDCError, TypeError):
    """Value is not document-shaped (not a mapping or a serializable wrapper)."""

    def __init__(self, name: str, value: Any, expected: str = "mapping or DocumentSerializable"):
        self.name = name
        self.value_type = type(value).__name__
        super().__init__(f"Expected {name} to have type {expected} but found {self.value_type}")


class ResumeTokenError(CDCError):
    """Resume token is missing or invalid."""
    pass


class ResumeTokenMissingError(ResumeTokenError):
    """Change document carries no _id field."""

    def __init__(self):
        super().__init__("Resume token not found in change document")


class ResumeTokenInvalidTypeError(ResumeTokenError):
    """The _id field of a change document is a scalar, not a document."""

    def __init__(self, value: Any):
        self.value_type = type(value).__name__
        super().__init__(f"Expected resume token to have type mapping but found {self.value_type}")


class CheckpointError(CDCError):
    """Error saving/loading checkpoint."""
    pass
