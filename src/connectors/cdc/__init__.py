"""
CDC (Change Data Capture) module for MongoDB changestream processing.
"""

from .errors import (
    CDCError,
    InvalidDocumentError,
    ResumeTokenError,
    ResumeTokenMissingError,
    ResumeTokenInvalidTypeError,
    CheckpointError,
)
from .resume_token import DocumentSerializable, as_document, extract_resume_token
from .error_classifier import Classification, classify_error, is_resumable_error, NON_RESUMABLE_CODES
from .cursor import CursorHandle, CommandCursorHandle, ChangeStreamOpener, ResumeFactory
from .change_stream import ResumableChangeStream, IterationState, StreamState
from .mongo_changestream import ChangeStreamWatcher, CDCConfig
from .checkpoint_store import CheckpointStore, ChangeStreamCheckpoint

__all__ = [
    # Errors
    "CDCError",
    "InvalidDocumentError",
    "ResumeTokenError",
    "ResumeTokenMissingError",
    "ResumeTokenInvalidTypeError",
    "CheckpointError",

    # Resume tokens and error classification
    "DocumentSerializable",
    "as_document",
    "extract_resume_token",
    "Classification",
    "classify_error",
    "is_resumable_error",
    "NON_RESUMABLE_CODES",

    # Cursors
    "CursorHandle",
    "CommandCursorHandle",
    "ChangeStreamOpener",
    "ResumeFactory",
    "ResumableChangeStream",
    "IterationState",
    "StreamState",

    # Consumers
    "ChangeStreamWatcher",
    "CDCConfig",
    "CheckpointStore",
    "ChangeStreamCheckpoint",
]
