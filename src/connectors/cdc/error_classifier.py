"""
Classification of cursor failures into resumable and fatal.

Order matters, first match wins:

1. ``ConnectionFailure`` (network error, timeout, server selection) -> resumable
2. ``OperationFailure`` with a code from ``NON_RESUMABLE_CODES`` -> fatal
3. any other ``OperationFailure`` -> resumable
4. anything else -> fatal

See https://github.com/mongodb/specifications/blob/master/source/change-streams/change-streams.rst#resumable-error
"""

from enum import Enum

from pymongo.errors import ConnectionFailure, OperationFailure

CAPPED_POSITION_LOST = 136
CURSOR_KILLED = 237
INTERRUPTED = 11601

NON_RESUMABLE_CODES = frozenset({CAPPED_POSITION_LOST, CURSOR_KILLED, INTERRUPTED})


class Classification(str, Enum):
    """Outcome of classifying a cursor failure."""
    RESUMABLE = "resumable"
    FATAL = "fatal"


def classify_error(error: BaseException) -> Classification:
    """Classify an exception raised while fetching from a change stream cursor."""
    if isinstance(error, ConnectionFailure):
        return Classification.RESUMABLE

    if not isinstance(error, OperationFailure):
        return Classification.FATAL

    if error.code in NON_RESUMABLE_CODES:
        return Classification.FATAL

    return Classification.RESUMABLE


def is_resumable_error(error: BaseException) -> bool:
    """Return True if the change stream may transparently resume after error."""
    return classify_error(error) is Classification.RESUMABLE
