"""Shared fixtures for CDC unit tests."""

import pytest


class ScriptedCursor:
    """Cursor handle replaying a fixed script.

    Each step is a change document, None (nothing available) or an exception
    to raise. With ``closed_when_drained`` the cursor id turns 0 as soon as the
    last step has been consumed, like a server answering with its final batch.
    """

    def __init__(self, steps, cursor_id=42, closed_when_drained=False):
        self.steps = list(steps)
        self._cursor_id = cursor_id
        self.closed_when_drained = closed_when_drained
        self.rewind_calls = 0
        self.fetch_calls = 0
        self.closed = False

    @property
    def cursor_id(self):
        if self.closed_when_drained and not self.steps:
            return 0
        return self._cursor_id

    def rewind(self):
        self.rewind_calls += 1
        return self._step()

    def fetch_next(self):
        self.fetch_calls += 1
        return self._step()

    def close(self):
        self.closed = True

    def _step(self):
        if not self.steps:
            return None
        step = self.steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step


def change(n, operation="insert"):
    """Build a change document with resume token {"_data": "<n>"}."""
    return {
        "_id": {"_data": f"{n:04d}"},
        "operationType": operation,
        "fullDocument": {"_id": n},
        "ns": {"db": "shop", "coll": "orders"},
    }


@pytest.fixture
def scripted_cursor():
    """Factory for ScriptedCursor instances."""
    return ScriptedCursor


@pytest.fixture
def make_change():
    """Factory for change documents."""
    return change
