"""
tasktrail database substrate -- one SQLite connection per Database object.

WAL journal so the embedding sync worker can read and write through its own
connection while the foreground writer holds the store. Every mutation runs
inside ``Database.transaction()`` (``BEGIN IMMEDIATE``), which serialises
writers on a re-entrant lock and retries lock contention with exponential
backoff.

sqlite-vec and FTS5 are both optional at runtime: ``vec_available`` and
``fts_available`` tell the vector and lexical layers which path to take.
"""

import logging
import sqlite3
import threading
import time as _time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence, Union

logger = logging.getLogger("tasktrail.db")

SCHEMA_VERSION = 1
EMBEDDING_DIM = 384
MEMORY = ":memory:"

# kind -> id prefix. Subtasks share the task counter.
ID_PREFIXES = {
    "task": "TASK",
    "epic": "EPIC",
    "comment": "CMT",
    "dependency": "DEP",
}

# ---------------------------------------------------------------------------
# SQLite retry -- the sync worker and the foreground writer share one file.
# busy_timeout absorbs most contention; this retries what is left before
# surfacing the error.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.25  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.2fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def utcnow() -> str:
    """ISO-8601 UTC timestamp with microseconds (sorts chronologically as text)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def to_utc_iso(value: datetime) -> str:
    """Normalise a datetime (naive means UTC) to the stored timestamp format."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


# Outbox upsert: a newer write supersedes whatever is queued for the entity.
ENQUEUE_SQL = """
    INSERT INTO embedding_queue (entity_id, entity_type, op, version, attempts, status, enqueued_at, next_attempt_at)
    VALUES (?, ?, ?, 1, 0, 'pending', ?, 0)
    ON CONFLICT(entity_id) DO UPDATE SET
        entity_type = excluded.entity_type,
        op = excluded.op,
        version = embedding_queue.version + 1,
        attempts = 0,
        status = 'pending',
        last_error = NULL,
        enqueued_at = excluded.enqueued_at,
        next_attempt_at = 0
"""

_SEARCH_ROW_EPIC = "NEW.id, 'epic', NEW.title, COALESCE(NEW.description, ''), '', NEW.status, NULL"
_SEARCH_ROW_TASK = (
    "NEW.id, IIF(NEW.parent_task_id IS NULL, 'task', 'subtask'), NEW.title, "
    "COALESCE(NEW.description, ''), '', NEW.status, COALESCE(NEW.parent_task_id, NEW.epic_id)"
)
_SEARCH_ROW_COMMENT = "NEW.id, 'comment', '', NEW.content, NEW.author, '', NEW.task_id"
_SEARCH_COLUMNS = "entity_id, entity_type, title, content, author, status, parent_id"


class Database:
    """SQLite connection wrapper owning schema creation and transactions.

    Usage:
        db = Database(path)
        with db.transaction() as conn:
            conn.execute("INSERT ...")
        rows = db.fetchall("SELECT ...")
    """

    def __init__(self, path: Union[str, Path] = MEMORY):
        self.path = str(path)
        if self.path != MEMORY:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._depth = 0
        self.vec_available = False
        self.fts_available = False
        self._conn = self._connect()
        self._init_schema()

    @property
    def is_memory(self) -> bool:
        return self.path == MEMORY

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        if not self.is_memory:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")

        try:
            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            self.vec_available = True
        except (ImportError, AttributeError, sqlite3.Error) as e:
            logger.warning("sqlite-vec not available, falling back to brute-force: %s", e)
            self.vec_available = False

        return conn

    def _init_schema(self) -> None:
        c = self._conn
        with self.transaction():
            c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
                logger.info("Creating tasktrail schema v%d at %s", SCHEMA_VERSION, self.path)

            c.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS epics (
                    id TEXT PRIMARY KEY,
                    seq INTEGER NOT NULL,
                    project_id TEXT NOT NULL REFERENCES projects(id),
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'todo',
                    priority INTEGER NOT NULL DEFAULT 2,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    seq INTEGER NOT NULL,
                    project_id TEXT NOT NULL REFERENCES projects(id),
                    epic_id TEXT REFERENCES epics(id),
                    parent_task_id TEXT REFERENCES tasks(id),
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'todo',
                    priority INTEGER NOT NULL DEFAULT 2,
                    tags TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS comments (
                    id TEXT PRIMARY KEY,
                    seq INTEGER NOT NULL,
                    task_id TEXT NOT NULL REFERENCES tasks(id),
                    author TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS dependencies (
                    id TEXT PRIMARY KEY,
                    seq INTEGER NOT NULL,
                    task_id TEXT NOT NULL REFERENCES tasks(id),
                    depends_on_id TEXT NOT NULL REFERENCES tasks(id),
                    created_at TEXT NOT NULL,
                    UNIQUE(task_id, depends_on_id),
                    CHECK(task_id <> depends_on_id)
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS id_counters (
                    kind TEXT PRIMARY KEY,
                    counter INTEGER NOT NULL DEFAULT 0
                )
            """)
            for kind in ID_PREFIXES:
                c.execute("INSERT OR IGNORE INTO id_counters (kind, counter) VALUES (?, 0)", (kind,))

            c.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """)

            for table, col in (
                ("tasks", "epic_id"),
                ("tasks", "parent_task_id"),
                ("tasks", "status"),
                ("tasks", "created_at"),
                ("epics", "created_at"),
                ("comments", "task_id"),
                ("dependencies", "task_id"),
                ("dependencies", "depends_on_id"),
                ("events", "entity_id"),
                ("events", "timestamp"),
            ):
                c.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_{col} ON {table}({col})")

            c.execute("""
                CREATE TABLE IF NOT EXISTS embeddings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity_id TEXT UNIQUE NOT NULL,
                    entity_type TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    vector BLOB NOT NULL,
                    model TEXT,
                    updated_at TEXT NOT NULL
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS embedding_queue (
                    entity_id TEXT PRIMARY KEY,
                    entity_type TEXT NOT NULL,
                    op TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending',
                    last_error TEXT,
                    enqueued_at TEXT NOT NULL,
                    next_attempt_at REAL NOT NULL DEFAULT 0
                )
            """)
            c.execute("CREATE INDEX IF NOT EXISTS idx_embedding_queue_status ON embedding_queue(status, next_attempt_at)")

            if self.vec_available:
                try:
                    c.execute(f"""
                        CREATE VIRTUAL TABLE IF NOT EXISTS embeddings_vec
                        USING vec0(embedding float[{EMBEDDING_DIM}] distance_metric=cosine)
                    """)
                except sqlite3.Error as e:
                    logger.warning("Failed to create vec table: %s", e)
                    self.vec_available = False

            self._init_search_index(c)

    def _init_search_index(self, c: sqlite3.Connection) -> None:
        try:
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS search_index USING fts5(
                    entity_id,
                    entity_type,
                    title,
                    content,
                    author,
                    status UNINDEXED,
                    parent_id UNINDEXED,
                    tokenize='porter unicode61'
                )
            """)
        except sqlite3.OperationalError as e:
            logger.warning("FTS5 not available, lexical search falls back to LIKE: %s", e)
            self.fts_available = False
            return
        self.fts_available = True

        triggers = (
            ("epics", "epic", "entity_type = 'epic'", _SEARCH_ROW_EPIC),
            ("tasks", "task", "entity_type IN ('task', 'subtask')", _SEARCH_ROW_TASK),
            ("comments", "comment", "entity_type = 'comment'", _SEARCH_ROW_COMMENT),
        )
        for table, name, match, values in triggers:
            c.execute(f"""
                CREATE TRIGGER IF NOT EXISTS {table}_search_insert AFTER INSERT ON {table} BEGIN
                    INSERT INTO search_index({_SEARCH_COLUMNS}) VALUES ({values});
                END
            """)
            c.execute(f"""
                CREATE TRIGGER IF NOT EXISTS {table}_search_delete AFTER DELETE ON {table} BEGIN
                    DELETE FROM search_index WHERE entity_id = OLD.id AND {match};
                END
            """)
            c.execute(f"""
                CREATE TRIGGER IF NOT EXISTS {table}_search_update AFTER UPDATE ON {table} BEGIN
                    DELETE FROM search_index WHERE entity_id = OLD.id AND {match};
                    INSERT INTO search_index({_SEARCH_COLUMNS}) VALUES ({values});
                END
            """)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the body inside BEGIN IMMEDIATE ... COMMIT.

        Nested calls join the outer transaction. Any exception rolls the
        whole transaction back and propagates unchanged.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return

            _retry_on_locked(self._conn.execute, "BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self._conn
                _retry_on_locked(self._conn.execute, "COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise
            finally:
                self._depth = 0

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """Hold the connection for a multi-statement read."""
        with self._lock:
            yield self._conn

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0 and self._conn.in_transaction

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return _retry_on_locked(self._conn.execute, sql, tuple(params))

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return _retry_on_locked(self._conn.execute, sql, tuple(params)).fetchall()

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return _retry_on_locked(self._conn.execute, sql, tuple(params)).fetchone()

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.fetchone(sql, params)
        return row[0] if row is not None else None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def wipe(self) -> None:
        """Delete every row and reset the id counters. Schema stays."""
        tables = ["dependencies", "comments", "tasks", "epics", "projects", "events",
                  "embedding_queue", "embeddings"]
        if self.vec_available:
            tables.append("embeddings_vec")
        with self.transaction() as c:
            # Children before parents so foreign keys hold at every step.
            c.execute("UPDATE tasks SET parent_task_id = NULL")
            for table in tables:
                c.execute(f"DELETE FROM {table}")
            if self.fts_available:
                c.execute("DELETE FROM search_index")
            c.execute("UPDATE id_counters SET counter = 0")
            c.execute("DELETE FROM sqlite_sequence WHERE name IN ('events', 'embeddings')")
        logger.info("Wiped tasktrail store at %s", self.path)

    def close(self) -> None:
        with self._lock:
            try:
                if not self.is_memory:
                    self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            except sqlite3.Error as e:
                logger.debug("WAL checkpoint on close failed: %s", e)
            self._conn.close()
