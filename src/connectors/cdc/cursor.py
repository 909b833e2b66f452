"""
Cursor handles consumed by the resumable change stream.

``CursorHandle`` is the contract the state machine relies on. ``CommandCursorHandle``
implements it on top of a pymongo ``CommandCursor`` and ``ChangeStreamOpener``
is the resume factory that opens such cursors with an ``aggregate`` whose first
stage is ``$changeStream``.
"""

import copy
import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from pymongo.client_session import ClientSession
from pymongo.command_cursor import CommandCursor
from pymongo.errors import InvalidOperation

logger = logging.getLogger(__name__)


@runtime_checkable
class CursorHandle(Protocol):
    """A live server-side cursor.

    ``rewind`` positions on the first element and ``fetch_next`` on the following
    one; both return the document or None when nothing is available and may
    raise pymongo errors. ``cursor_id`` is 0 once the server closed the cursor.
    """

    @property
    def cursor_id(self) -> int:
        ...

    def rewind(self) -> Optional[Mapping[str, Any]]:
        ...

    def fetch_next(self) -> Optional[Mapping[str, Any]]:
        ...


ResumeFactory = Callable[[Optional[Mapping[str, Any]]], CursorHandle]


class CommandCursorHandle:
    """CursorHandle over a pymongo CommandCursor.

    Uses ``try_next()`` so that an empty getMore on a tailable cursor returns
    None instead of blocking forever.
    """

    def __init__(self, cursor: CommandCursor):
        self._cursor = cursor
        self._started = False

    @property
    def cursor_id(self) -> int:
        return int(self._cursor.cursor_id or 0)

    def rewind(self) -> Optional[Mapping[str, Any]]:
        if self._started:
            raise InvalidOperation("Cursors cannot rewind after starting iteration")
        return self.fetch_next()

    def fetch_next(self) -> Optional[Mapping[str, Any]]:
        self._started = True
        return self._cursor.try_next()

    def close(self) -> None:
        self._cursor.close()


class ChangeStreamOpener:
    """
    Resume factory that opens a change stream cursor with ``aggregate``.

    The target is anything exposing ``aggregate`` (collection or database). With
    ``all_changes_for_cluster`` the target must be the admin database.

    Example:
        >>> opener = ChangeStreamOpener(db["users"], full_document="updateLookup")
        >>> cursor = opener(None)
        >>> stream = ResumableChangeStream(cursor, opener)
    """

    def __init__(
        self,
        target: Any,
        pipeline: Optional[List[Dict[str, Any]]] = None,
        full_document: Optional[str] = None,
        batch_size: Optional[int] = None,
        max_await_time_ms: Optional[int] = None,
        all_changes_for_cluster: bool = False,
        session: Optional[ClientSession] = None,
    ):
        if not callable(getattr(target, "aggregate", None)):
            raise TypeError("target must be a PyMongo Collection or Database instance")

        self.target = target
        self.pipeline = copy.deepcopy(pipeline) if pipeline else []
        self.full_document = full_document
        self.batch_size = batch_size
        self.max_await_time_ms = max_await_time_ms
        self.all_changes_for_cluster = all_changes_for_cluster
        self.session = session

    @property
    def namespace(self) -> str:
        full_name = getattr(self.target, "full_name", None)
        if full_name:
            return full_name
        return getattr(self.target, "name", "")

    def full_pipeline(self, resume_token: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return the aggregation pipeline starting with the $changeStream stage."""
        options: Dict[str, Any] = {}
        if self.full_document is not None:
            options["fullDocument"] = self.full_document
        if resume_token is not None:
            options["resumeAfter"] = copy.deepcopy(resume_token)
        if self.all_changes_for_cluster:
            options["allChangesForCluster"] = True

        full_pipeline: List[Dict[str, Any]] = [{"$changeStream": options}]
        full_pipeline.extend(copy.deepcopy(self.pipeline))
        return full_pipeline

    def __call__(self, resume_token: Optional[Mapping[str, Any]] = None) -> CommandCursorHandle:
        kwargs: Dict[str, Any] = {}
        if self.batch_size is not None:
            kwargs["batchSize"] = self.batch_size
        if self.max_await_time_ms is not None:
            kwargs["maxAwaitTimeMS"] = self.max_await_time_ms
        if self.session is not None:
            kwargs["session"] = self.session

        logger.debug(
            f"Opening change stream cursor on {self.namespace}",
            extra={"namespace": self.namespace, "has_resume_token": resume_token is not None}
        )

        cursor = self.target.aggregate(self.full_pipeline(resume_token), **kwargs)
        return CommandCursorHandle(cursor)
