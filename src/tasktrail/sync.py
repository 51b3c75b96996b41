"""
Embedding sync -- drains the embedding_queue outbox into the vector index.

The store enqueues one row per committed searchable entity inside the write
transaction. This worker picks rows up in the background, embeds the current
text of the entity and upserts (or deletes) its vector. Failures are retried
with exponential backoff; after max_attempts the row is dead-lettered
(status 'dead') until retry_dead() or reindex() revives it.

A queue row is acknowledged only if its version is unchanged, so a write that
lands while we are embedding is never lost.
"""

import hashlib
import logging
import threading
import time
from typing import Dict, List, Optional

from tasktrail import config
from tasktrail.db import ENQUEUE_SQL, Database, utcnow
from tasktrail.embeddings import Embedder
from tasktrail.store import searchable_text
from tasktrail.vectors import VectorIndex

logger = logging.getLogger("tasktrail.sync")


def content_hash(model: str, text: str) -> str:
    return hashlib.sha256(f"{model}\n{text}".encode("utf-8")).hexdigest()


class EmbeddingSync:
    """Background consumer of the embedding outbox.

    Usage:
        sync = EmbeddingSync(db, Embedder())
        store.add_commit_listener(sync.notify)
        sync.start()
        ...
        sync.stop()
    """

    def __init__(
        self,
        db: Database,
        embedder: Optional[Embedder] = None,
        vectors: Optional[VectorIndex] = None,
        max_attempts: Optional[int] = None,
        backoff_base: float = 0.5,
        backoff_max: float = 60.0,
        batch_size: int = 16,
        poll_interval: float = 5.0,
    ):
        self._db = db
        self.embedder = embedder or Embedder()
        self.vectors = vectors or VectorIndex(db)
        self.max_attempts = max_attempts if max_attempts is not None else config.sync_max_attempts()
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._process_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="tasktrail-embedding-sync", daemon=True)
        self._thread.start()
        logger.info("Embedding sync started")

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._wake.set()
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Embedding sync did not stop within %.1fs", timeout)
        else:
            logger.info("Embedding sync stopped")
        self._thread = None

    def notify(self, facts=None) -> None:
        """Commit listener: wake the worker. The facts themselves are already in the queue."""
        self._wake.set()

    def _run(self) -> None:
        while not self._stop.is_set():
            self._wake.clear()
            try:
                processed = self.process_pending()
            except Exception as e:
                logger.warning("Embedding sync pass failed: %s", e, exc_info=True)
                processed = {}
            if sum(processed.values()):
                continue
            self._wake.wait(self.poll_interval)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _due(self, limit: int) -> List[Dict]:
        rows = self._db.fetchall(
            "SELECT entity_id, entity_type, op, version, attempts FROM embedding_queue "
            "WHERE status = 'pending' AND next_attempt_at <= ? ORDER BY enqueued_at, entity_id LIMIT ?",
            (time.time(), limit),
        )
        return [dict(r) for r in rows]

    def process_pending(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Handle up to limit due queue rows. Returns per-outcome counts."""
        counts = {"upserted": 0, "deleted": 0, "unchanged": 0, "retried": 0, "dead": 0}
        with self._process_lock:
            for row in self._due(limit or self.batch_size):
                try:
                    outcome = self._apply(row)
                except Exception as e:
                    outcome = self._fail(row, e)
                else:
                    self._ack(row)
                counts[outcome] += 1
        return counts

    def drain(self, max_rounds: int = 1000, timeout: Optional[float] = None) -> Dict[str, int]:
        """Process until nothing is due. Rows waiting out a backoff are left alone.

        With a timeout, stops between batches once it has elapsed; what is left
        stays queued for the next drain or worker.
        """
        totals = {"upserted": 0, "deleted": 0, "unchanged": 0, "retried": 0, "dead": 0}
        deadline = time.monotonic() + timeout if timeout is not None else None
        for _ in range(max_rounds):
            if deadline is not None and time.monotonic() >= deadline:
                logger.info("Embedding drain stopped after %.1fs; %s", timeout, self.stats())
                break
            counts = self.process_pending()
            for key, value in counts.items():
                totals[key] += value
            if not sum(counts.values()):
                break
        return totals

    def _apply(self, row: Dict) -> str:
        entity_id = row["entity_id"]
        if row["op"] == "delete":
            self.vectors.delete(entity_id)
            return "deleted"

        found = searchable_text(self._db, entity_id)
        if found is None:
            # Deleted after it was queued; the delete row replaced this one
            # or is about to.
            self.vectors.delete(entity_id)
            return "deleted"
        entity_type, text = found
        digest = content_hash(self.embedder.model_name, text)
        if self.vectors.content_hash(entity_id) == digest:
            self.vectors.retype(entity_id, entity_type)
            return "unchanged"
        vector = self.embedder.embed(text)
        self.vectors.upsert(entity_id, entity_type, vector, digest, self.embedder.model_name)
        return "upserted"

    def _ack(self, row: Dict) -> None:
        with self._db.transaction() as c:
            c.execute(
                "DELETE FROM embedding_queue WHERE entity_id = ? AND version = ?",
                (row["entity_id"], row["version"]),
            )

    def _fail(self, row: Dict, error: Exception) -> str:
        attempts = row["attempts"] + 1
        message = f"{type(error).__name__}: {error}"
        if attempts >= self.max_attempts:
            with self._db.transaction() as c:
                c.execute(
                    "UPDATE embedding_queue SET status = 'dead', attempts = ?, last_error = ? "
                    "WHERE entity_id = ? AND version = ?",
                    (attempts, message, row["entity_id"], row["version"]),
                )
            logger.info("Dead-lettered embedding for %s after %d attempts: %s", row["entity_id"], attempts, message)
            return "dead"
        delay = min(self.backoff_max, self.backoff_base * (2 ** (attempts - 1)))
        with self._db.transaction() as c:
            c.execute(
                "UPDATE embedding_queue SET attempts = ?, last_error = ?, next_attempt_at = ? "
                "WHERE entity_id = ? AND version = ?",
                (attempts, message, time.time() + delay, row["entity_id"], row["version"]),
            )
        logger.debug("Embedding %s failed (attempt %d/%d), retrying in %.1fs: %s",
                     row["entity_id"], attempts, self.max_attempts, delay, message)
        return "retried"

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def retry_dead(self) -> int:
        with self._db.transaction() as c:
            cur = c.execute(
                "UPDATE embedding_queue SET status = 'pending', attempts = 0, next_attempt_at = 0 "
                "WHERE status = 'dead'"
            )
        if cur.rowcount:
            self._wake.set()
        return cur.rowcount

    def reindex(self) -> int:
        """Queue every searchable entity for re-embedding and drop vectors of vanished ones."""
        now = utcnow()
        with self._db.transaction() as c:
            rows = c.execute(
                "SELECT id, 'epic' FROM epics "
                "UNION ALL SELECT id, IIF(parent_task_id IS NULL, 'task', 'subtask') FROM tasks "
                "UNION ALL SELECT id, 'comment' FROM comments"
            ).fetchall()
            for entity_id, entity_type in rows:
                c.execute(ENQUEUE_SQL, (entity_id, entity_type, "upsert", now))
            stale = c.execute(
                "SELECT entity_id, entity_type FROM embeddings WHERE entity_id NOT IN "
                "(SELECT id FROM epics UNION SELECT id FROM tasks UNION SELECT id FROM comments)"
            ).fetchall()
            for entity_id, entity_type in stale:
                c.execute(ENQUEUE_SQL, (entity_id, entity_type, "delete", now))
            # Force a re-embed even where the text is unchanged.
            c.execute("UPDATE embeddings SET content_hash = ''")
        logger.info("Queued %d entities for re-embedding (%d stale vectors)", len(rows), len(stale))
        self._wake.set()
        return len(rows)

    def stats(self) -> Dict[str, int]:
        rows = self._db.fetchall("SELECT status, COUNT(*) AS n FROM embedding_queue GROUP BY status")
        counts = {r["status"]: r["n"] for r in rows}
        return {
            "pending": counts.get("pending", 0),
            "dead": counts.get("dead", 0),
            "vectors": self.vectors.count(),
        }
