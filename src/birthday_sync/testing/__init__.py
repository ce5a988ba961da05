"""In-memory collaborators shared by the test suite.

Nothing here depends on pytest, so the doubles can be used from any test
tree or from an interactive session.
"""

from __future__ import annotations

from birthday_sync.testing.calendar import FakeCalendarClient, RecordedCall
from birthday_sync.testing.store import InMemoryDocumentStore

__all__ = ["FakeCalendarClient", "InMemoryDocumentStore", "RecordedCall"]
