"""
tasktrail Tracker -- wires database, store, query, search and sync together.

Direct Python API::

    from tasktrail import Tracker
    tracker = Tracker.init("/path/to/repo")
    task = tracker.store.create_task(title="Fix login timeout", priority=1)
    page = tracker.search("login")

``get_tracker()`` returns a process-wide instance for the current working
directory (closed at exit), the way a long-running caller would use it.
"""

import atexit
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from tasktrail import config
from tasktrail.audit import AuditLog
from tasktrail.db import MEMORY, Database
from tasktrail.embeddings import Embedder
from tasktrail.errors import NotFoundError, ValidationError
from tasktrail.lexical import LexicalIndex
from tasktrail.models import HistoryPage, HistoryQuery, ListPage, ReadyTask, SearchHit, SearchPage, parse_input
from tasktrail.query import QueryEngine
from tasktrail.search import SearchCoordinator
from tasktrail.store import EntityStore
from tasktrail.sync import EmbeddingSync
from tasktrail.vectors import VectorIndex

logger = logging.getLogger("tasktrail.tracker")


class Tracker:
    """One open store.

    The embedding sync worker gets its own connection for file databases so
    it can write vectors while the foreground holds the store; in-memory
    databases share the single connection.
    """

    def __init__(
        self,
        db_path: Union[str, Path, None] = None,
        embedder: Optional[Embedder] = None,
        start_sync: bool = False,
        sync_poll_interval: float = 5.0,
        sync_backoff_base: float = 0.5,
    ):
        path = str(db_path) if db_path is not None else str(config.db_path())
        self.db = Database(path)
        self.store = EntityStore(self.db)
        self.audit: AuditLog = self.store.audit
        self.query = QueryEngine(self.db)
        self.lexical = LexicalIndex(self.db)
        self.vectors = VectorIndex(self.db)
        self.embedder = embedder or Embedder()
        self.searcher = SearchCoordinator(
            self.db,
            lexical=self.lexical,
            vectors=self.vectors,
            embedder=self.embedder,
            semantic_enabled=True if embedder is not None else None,
        )
        self._sync_db = self.db if self.db.is_memory else Database(path)
        self.sync = EmbeddingSync(
            self._sync_db,
            embedder=self.embedder,
            vectors=self.vectors if self._sync_db is self.db else VectorIndex(self._sync_db),
            backoff_base=sync_backoff_base,
            poll_interval=sync_poll_interval,
        )
        self._wrote = False
        self.store.add_commit_listener(self.sync.notify)
        self.store.add_commit_listener(self._on_commit)
        if start_sync and self.semantic_enabled:
            self.sync.start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def init(cls, cwd: Union[str, Path, None] = None, name: Optional[str] = None, **kwargs) -> "Tracker":
        """Create the store for cwd and its project. Fails if already initialized."""
        base = Path(cwd) if cwd else Path.cwd()
        tracker = cls(kwargs.pop("db_path", None) or config.db_path(base), **kwargs)
        try:
            tracker.store.init_project(name or base.resolve().name or "tasktrail")
        except ValidationError:
            tracker.close(drain=False)
            raise
        return tracker

    @classmethod
    def open(cls, cwd: Union[str, Path, None] = None, **kwargs) -> "Tracker":
        """Open an initialized store. Raises NotFoundError if there is none."""
        base = Path(cwd) if cwd else Path.cwd()
        path = kwargs.pop("db_path", None) or config.db_path(base)
        if str(path) != MEMORY and not Path(path).exists():
            raise NotFoundError(f"No tasktrail store at {path}; run 'tasktrail init' first", entity_type="project")
        tracker = cls(path, **kwargs)
        if tracker.store.get_project() is None:
            tracker.close(drain=False)
            raise NotFoundError(f"Store at {path} is not initialized; run 'tasktrail init'", entity_type="project")
        logger.debug("Opened tasktrail store at %s (semantic=%s)", path, tracker.semantic_enabled)
        return tracker

    @property
    def semantic_enabled(self) -> bool:
        return self.searcher.semantic_enabled

    def wipe(self) -> None:
        """Delete everything, project included. init() must run again before writes."""
        self.db.wipe()

    def _on_commit(self, facts) -> None:
        self._wrote = True

    def close(self, drain: bool = True) -> None:
        """Stop the sync worker and close connections.

        With drain set, what is due gets embedded first: everything when a
        worker was running, otherwise this Tracker's own writes within
        TASKTRAIL_SYNC_FLUSH_TIMEOUT.
        """
        if self.sync.running:
            self.sync.stop()
            if drain:
                self.sync.drain()
        elif drain and self._wrote and self.semantic_enabled:
            self.sync.drain(timeout=config.sync_flush_timeout())
        self._wrote = False
        self.searcher.close()
        if self._sync_db is not self.db:
            self._sync_db.close()
        self.db.close()

    def __enter__(self) -> "Tracker":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(self, **kwargs) -> ListPage:
        return self.query.list(**kwargs)

    def ready(self) -> List[ReadyTask]:
        return self.query.ready()

    def search(self, query_text: str, **kwargs) -> SearchPage:
        return self.searcher.search(query_text, **kwargs)

    def similar(self, entity_id: Optional[str] = None, text: Optional[str] = None, **kwargs) -> List[SearchHit]:
        return self.searcher.similar(entity_id=entity_id, text=text, **kwargs)

    def history(self, **kwargs) -> HistoryPage:
        return self.audit.query(parse_input(HistoryQuery, kwargs))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reindex(self, embeddings: bool = True) -> Dict[str, int]:
        """Rebuild the lexical index and (optionally) queue everything for re-embedding."""
        result = {"lexical": self.lexical.rebuild(), "queued": 0}
        if embeddings:
            result["queued"] = self.sync.reindex()
        return result

    def status(self) -> Dict[str, Any]:
        project = self.store.get_project()
        return {
            "db_path": self.db.path,
            "project": project.name if project else None,
            "counts": self.query.counts(),
            "fts_available": self.db.fts_available,
            "vec_available": self.db.vec_available,
            "semantic_enabled": self.semantic_enabled,
            "embeddings": self.sync.stats(),
        }


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_tracker_instance: Optional[Tracker] = None
_tracker_lock = threading.Lock()
_atexit_registered = False


def get_tracker() -> Tracker:
    """Get or open the Tracker for the current directory (thread-safe)."""
    global _tracker_instance, _atexit_registered
    if _tracker_instance is not None:
        return _tracker_instance
    with _tracker_lock:
        if _tracker_instance is None:
            _tracker_instance = Tracker.open(start_sync=True)
            if not _atexit_registered:
                atexit.register(reset_tracker)
                _atexit_registered = True
    return _tracker_instance


def reset_tracker() -> None:
    """Close and forget the process-wide Tracker."""
    global _tracker_instance
    with _tracker_lock:
        if _tracker_instance is not None:
            try:
                _tracker_instance.close()
            finally:
                _tracker_instance = None
