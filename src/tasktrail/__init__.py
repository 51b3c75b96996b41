"""tasktrail -- a local work tracker with hybrid keyword and semantic search.

Direct Python API::

    from tasktrail import Tracker
    with Tracker.init(".") as tracker:
        epic = tracker.store.create_epic("Auth overhaul")
        task = tracker.store.create_task("Fix login timeout", epic_id=epic.id, priority=1)
        page = tracker.search("login")

Command line: ``tasktrail --help``.
"""

__version__ = "0.3.0"

from tasktrail.errors import (
    AllocationError,
    CycleError,
    EmbeddingUnavailableError,
    NotFoundError,
    SearchDegradedError,
    TrailError,
    ValidationError,
)
from tasktrail.db import Database
from tasktrail.store import EntityStore
from tasktrail.query import QueryEngine
from tasktrail.search import SearchCoordinator
from tasktrail.sync import EmbeddingSync
from tasktrail.tracker import Tracker, get_tracker, reset_tracker

__all__ = [
    "Tracker",
    "get_tracker",
    "reset_tracker",
    # Components
    "Database",
    "EntityStore",
    "QueryEngine",
    "SearchCoordinator",
    "EmbeddingSync",
    # Errors
    "TrailError",
    "NotFoundError",
    "ValidationError",
    "CycleError",
    "AllocationError",
    "SearchDegradedError",
    "EmbeddingUnavailableError",
]
