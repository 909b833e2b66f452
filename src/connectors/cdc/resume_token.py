"""
Resume token extraction.

A change document is any ``Mapping`` (``dict``, ``SON``, ``RawBSONDocument``).
Wrapper types that are not mappings themselves can take part by implementing
``to_document()``; they are adapted once at the boundary and then handled as
plain mappings.
"""

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from .errors import InvalidDocumentError, ResumeTokenInvalidTypeError, ResumeTokenMissingError

RESUME_TOKEN_FIELD = "_id"


@runtime_checkable
class DocumentSerializable(Protocol):
    """Object that can render itself as a document."""

    def to_document(self) -> Mapping[str, Any]:
        ...


def as_document(value: Any, name: str = "document") -> Mapping[str, Any]:
    """Adapt a value to a mapping.

    Args:
        value: Mapping or DocumentSerializable
        name: Argument name used in the error message

    Returns:
        The value itself, or the mapping produced by ``to_document()``

    Raises:
        InvalidDocumentError: If the value is not document-shaped
    """
    if isinstance(value, Mapping):
        return value

    if isinstance(value, DocumentSerializable):
        document = value.to_document()
        if not isinstance(document, Mapping):
            raise InvalidDocumentError(f"{name}.to_document()", document, "mapping")
        return document

    raise InvalidDocumentError(name, value)


def extract_resume_token(document: Any) -> Mapping[str, Any]:
    """
    Extract the resume token (the ``_id`` field) from a change document.

    Args:
        document: Change document, a mapping or DocumentSerializable

    Returns:
        The resume token, exactly as found in the document

    Raises:
        InvalidDocumentError: If document is not document-shaped
        ResumeTokenMissingError: If _id is absent or None
        ResumeTokenInvalidTypeError: If _id is not a mapping
    """
    document = as_document(document)

    resume_token = document.get(RESUME_TOKEN_FIELD)
    if resume_token is None:
        raise ResumeTokenMissingError()

    if not isinstance(resume_token, Mapping):
        raise ResumeTokenInvalidTypeError(resume_token)

    return resume_token


def is_valid_resume_token(token: Any) -> bool:
    """Check a stored token: a non-empty mapping."""
    return isinstance(token, Mapping) and len(token) > 0
