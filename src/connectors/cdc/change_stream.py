"""
Resumable change stream iteration.

``ResumableChangeStream`` wraps a cursor handle and transparently reopens it
from the last delivered resume token when fetching fails with a resumable
error. Resume happens at most once per failure: if the reopened cursor fails
too, that error reaches the caller.

Example:
    >>> opener = ChangeStreamOpener(db["orders"], full_document="updateLookup")
    >>> with ResumableChangeStream(opener(None), opener, name="orders") as stream:
    ...     for change in stream:
    ...         handle(change)
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Optional, Tuple

from prometheus_client import Counter
from pymongo.errors import PyMongoError

from .cursor import CursorHandle, ResumeFactory
from .error_classifier import Classification, classify_error
from .resume_token import extract_resume_token

logger = logging.getLogger(__name__)

changestream_documents_total = Counter(
    'changestream_documents_total',
    'Total change documents positioned on',
    ['stream']
)

changestream_resumes_total = Counter(
    'changestream_resumes_total',
    'Total change stream resumes after resumable errors',
    ['stream']
)

changestream_exhausted_total = Counter(
    'changestream_exhausted_total',
    'Total change streams whose server cursor was closed',
    ['stream']
)


class StreamState(str, Enum):
    """Externally observed lifecycle of a change stream."""
    NOT_STARTED = "not_started"
    POSITIONED = "positioned"
    EXHAUSTED = "exhausted"


@dataclass
class IterationState:
    """Mutable iteration record of a ResumableChangeStream."""
    state: StreamState = StreamState.NOT_STARTED
    key: int = 0
    last_resume_token: Optional[Mapping[str, Any]] = None
    has_advanced: bool = False


class ResumableChangeStream:
    """
    Change stream iterator that survives transient cursor failures.

    Thread Safety: NOT thread-safe. One consumer per instance.

    The stream holds exactly one cursor handle. On a resumable failure the
    resume factory is called with the last stored resume token and the
    returned handle replaces the held one. Once the server reports cursor id 0
    the factory is released and the stream can no longer resume.
    """

    def __init__(
        self,
        cursor: CursorHandle,
        resume_factory: Optional[ResumeFactory],
        name: str = "changestream",
        initial_resume_token: Optional[Mapping[str, Any]] = None
    ):
        """
        Initialize the stream.

        Args:
            cursor: Initial cursor handle
            resume_factory: Callable opening a new cursor after a given resume token
            name: Stream name used in logs and metrics
            initial_resume_token: Token the initial cursor was opened after. Used
                for a resume that happens before any document was positioned on.

        Raises:
            TypeError: If cursor is not a CursorHandle or factory is not callable
        """
        if not isinstance(cursor, CursorHandle):
            raise TypeError("cursor must implement CursorHandle")

        if resume_factory is not None and not callable(resume_factory):
            raise TypeError("resume_factory must be callable")

        self.name = name
        self._cursor = cursor
        self._resume_factory = resume_factory
        self._initial_resume_token = initial_resume_token
        self._current: Optional[Mapping[str, Any]] = None
        self._state = IterationState()

    @property
    def state(self) -> StreamState:
        return self._state.state

    @property
    def resume_token(self) -> Optional[Mapping[str, Any]]:
        """Resume token of the last document positioned on."""
        return self._state.last_resume_token

    @property
    def can_resume(self) -> bool:
        return self._resume_factory is not None

    @property
    def cursor_id(self) -> int:
        return self._cursor.cursor_id

    def current(self) -> Optional[Mapping[str, Any]]:
        """Return the current change document, or None if not positioned."""
        if not self.is_valid():
            return None
        return self._current

    def key(self) -> Optional[int]:
        """Return the position counter, or None if not positioned."""
        if not self.is_valid():
            return None
        return self._state.key

    def is_valid(self) -> bool:
        return self._current is not None

    def position_first(self) -> None:
        """
        Position on the first change document of the held cursor.

        Raises:
            PyMongoError: Fatal cursor error, or an error raised after resuming
            ResumeTokenError: If the document carries no usable resume token
        """
        self._current = None
        try:
            self._current = self._cursor.rewind()
        except PyMongoError as e:
            if not self._should_resume(e):
                raise
            self._resume(e, is_advance=False)
            return

        self._on_iteration(is_advance=False)

    def position_next(self) -> None:
        """
        Advance to the next change document.

        Leaves the stream not valid when no document is available yet.

        Raises:
            PyMongoError: Fatal cursor error, or an error raised after resuming
            ResumeTokenError: If the document carries no usable resume token
        """
        self._current = None
        try:
            self._current = self._cursor.fetch_next()
        except PyMongoError as e:
            if not self._should_resume(e):
                raise
            self._resume(e, is_advance=True)
            return

        self._on_iteration(is_advance=True)

    def __iter__(self) -> Iterator[Mapping[str, Any]]:
        """Yield change documents until none is available."""
        for _, document in self.items():
            yield document

    def items(self) -> Iterator[Tuple[int, Mapping[str, Any]]]:
        """Yield (key, change document) pairs until none is available."""
        self.position_first()
        while self.is_valid():
            yield self._state.key, self._current
            self.position_next()

    def close(self) -> None:
        """Close the held cursor and give up the ability to resume."""
        self._release_resume_capability()
        close = getattr(self._cursor, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> "ResumableChangeStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _should_resume(self, error: PyMongoError) -> bool:
        if classify_error(error) is Classification.FATAL:
            return False
        return self._resume_factory is not None

    def _resume(self, error: PyMongoError, is_advance: bool) -> None:
        """Open a new cursor after the last resume token and position once on it."""
        logger.warning(
            f"Resuming change stream {self.name} after {type(error).__name__}: {error}",
            extra={
                "stream": self.name,
                "cursor_id": self.cursor_id,
                "has_resume_token": self._resume_after() is not None,
                "error_type": type(error).__name__
            }
        )

        cursor = self._resume_factory(self._resume_after())
        self._replace_cursor(cursor)
        changestream_resumes_total.labels(stream=self.name).inc()

        self._current = self._cursor.rewind()
        self._on_iteration(is_advance=is_advance)

    def _resume_after(self) -> Optional[Mapping[str, Any]]:
        if self._state.last_resume_token is not None:
            return self._state.last_resume_token
        return self._initial_resume_token

    def _replace_cursor(self, cursor: CursorHandle) -> None:
        # The abandoned handle is left to its own finalizer.
        self._cursor = cursor
        self._current = None

    def _release_resume_capability(self) -> None:
        if self._resume_factory is None:
            return
        # Dropping the factory also drops any session it holds.
        self._resume_factory = None
        logger.info(
            f"Change stream {self.name} can no longer resume",
            extra={"stream": self.name, "key": self._state.key}
        )

    def _on_iteration(self, is_advance: bool) -> None:
        """Housekeeping after every successful rewind, advance or resume."""
        if self.cursor_id == 0 and self._state.state is not StreamState.EXHAUSTED:
            self._release_resume_capability()
            if not self.is_valid():
                self._state.state = StreamState.EXHAUSTED
                changestream_exhausted_total.labels(stream=self.name).inc()

        if not self.is_valid():
            return

        if is_advance and self._state.has_advanced:
            self._state.key += 1

        self._state.has_advanced = True
        self._state.state = StreamState.POSITIONED
        self._state.last_resume_token = extract_resume_token(self._current)
        changestream_documents_total.labels(stream=self.name).inc()

        logger.debug(
            f"Positioned change stream {self.name} at key {self._state.key}",
            extra={"stream": self.name, "key": self._state.key, "cursor_id": self.cursor_id}
        )
