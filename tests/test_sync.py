"""Tests for EmbeddingSync: outbox draining, versioned acks, retry, dead-letter, reindex."""
import time

from tasktrail.embeddings import HashEmbedder
from tasktrail.sync import EmbeddingSync, content_hash
from tasktrail.vectors import VectorIndex


class FlakyEmbedder(HashEmbedder):
    """Fails the first `failures` calls."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def embed(self, text):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("model hiccup")
        return super().embed(text)


class CountingEmbedder(HashEmbedder):
    def __init__(self):
        self.calls = 0

    def embed(self, text):
        self.calls += 1
        return super().embed(text)


def _sync(store, embedder=None, **kwargs):
    kwargs.setdefault("backoff_base", 0.0)
    return EmbeddingSync(store.db, embedder=embedder or HashEmbedder(), **kwargs)


def _queue(store):
    return store.db.fetchall("SELECT * FROM embedding_queue ORDER BY entity_id")


class TestDrain:
    def test_upserts_and_acks(self, store):
        sync = _sync(store)
        epic = store.create_epic("E")
        task = store.create_task("T", description="body")
        comment = store.add_comment(task.id, "ann", "note")
        counts = sync.drain()
        assert counts["upserted"] == 3
        assert _queue(store) == []
        vectors = VectorIndex(store.db)
        assert vectors.count() == 3
        assert vectors.content_hash(task.id) == content_hash("feature-hash-v1", "T\nbody")
        assert vectors.get_vector(epic.id) is not None
        assert vectors.get_vector(comment.id) is not None

    def test_delete_removes_vector(self, store):
        sync = _sync(store)
        task = store.create_task("T")
        sync.drain()
        store.delete_task(task.id)
        counts = sync.drain()
        assert counts["deleted"] == 1
        assert VectorIndex(store.db).count() == 0

    def test_delete_cascade_removes_comment_vectors(self, store):
        sync = _sync(store)
        task = store.create_task("T")
        store.add_comment(task.id, "ann", "note")
        sync.drain()
        store.delete_task(task.id)
        sync.drain()
        assert VectorIndex(store.db).count() == 0

    def test_unchanged_text_not_reembedded(self, store):
        embedder = CountingEmbedder()
        sync = _sync(store, embedder)
        task = store.create_task("T")
        sync.drain()
        # Re-queue without a text change.
        store.update_task(task.id, tags=["x"])
        store.update_task(task.id, tags=[])
        counts = sync.drain()
        assert counts["unchanged"] == 1
        assert embedder.calls == 1

    def test_subtask_orphaned_is_retyped(self, store):
        sync = _sync(store)
        parent = store.create_task("Parent")
        child = store.create_subtask(parent.id, "Child")
        sync.drain()
        store.delete_task(parent.id)
        sync.drain()
        row = store.db.fetchone("SELECT entity_type FROM embeddings WHERE entity_id = ?", (child.id,))
        assert row["entity_type"] == "task"

    def test_write_during_embedding_is_not_lost(self, store):
        task = store.create_task("Original")

        class RacingEmbedder(HashEmbedder):
            def embed(self, text):
                if text == "Original":
                    store.update_task(task.id, title="Edited")
                return super().embed(text)

        sync = _sync(store, RacingEmbedder())
        sync.process_pending()
        # The stale ack must not delete the newer queue row.
        assert [r["version"] for r in _queue(store)] == [2]
        sync.drain()
        assert VectorIndex(store.db).content_hash(task.id) == content_hash("feature-hash-v1", "Edited")


class TestRetry:
    def test_retry_then_success(self, store):
        embedder = FlakyEmbedder(failures=2)
        sync = _sync(store, embedder, max_attempts=5)
        store.create_task("T")
        assert sync.process_pending()["retried"] == 1
        assert sync.process_pending()["retried"] == 1
        assert sync.process_pending()["upserted"] == 1
        assert _queue(store) == []

    def test_backoff_defers_retry(self, store):
        sync = _sync(store, FlakyEmbedder(failures=1), backoff_base=60.0)
        store.create_task("T")
        sync.process_pending()
        assert sum(sync.process_pending().values()) == 0
        row = _queue(store)[0]
        assert row["attempts"] == 1
        assert row["next_attempt_at"] > time.time()
        assert "model hiccup" in row["last_error"]

    def test_dead_letter_and_revive(self, store):
        sync = _sync(store, FlakyEmbedder(failures=3), max_attempts=3)
        store.create_task("T")
        counts = sync.drain()
        assert counts["dead"] == 1
        assert sync.stats() == {"pending": 0, "dead": 1, "vectors": 0}
        assert sync.retry_dead() == 1
        assert sync.drain()["upserted"] == 1
        assert sync.stats() == {"pending": 0, "dead": 0, "vectors": 1}

    def test_new_write_revives_dead_item(self, store):
        sync = _sync(store, FlakyEmbedder(failures=1), max_attempts=1)
        task = store.create_task("T")
        sync.drain()
        assert sync.stats()["dead"] == 1
        store.update_task(task.id, title="T2")
        assert sync.drain()["upserted"] == 1


class TestReindex:
    def test_reindex_reembeds_everything(self, store):
        embedder = CountingEmbedder()
        sync = _sync(store, embedder)
        store.create_task("A")
        store.create_task("B")
        sync.drain()
        assert sync.reindex() == 2
        sync.drain()
        assert embedder.calls == 4

    def test_reindex_drops_stale_vectors(self, store):
        sync = _sync(store)
        VectorIndex(store.db).upsert("TASK-77", "task", HashEmbedder().embed("ghost"), "h")
        sync.reindex()
        sync.drain()
        assert VectorIndex(store.db).count() == 0


class TestWorker:
    def test_background_worker_follows_commits(self, store):
        sync = _sync(store, poll_interval=0.05)
        store.add_commit_listener(sync.notify)
        sync.start()
        try:
            task = store.create_task("Background")
            deadline = time.time() + 5
            while time.time() < deadline and VectorIndex(store.db).content_hash(task.id) is None:
                time.sleep(0.02)
        finally:
            sync.stop()
        assert not sync.running
        assert VectorIndex(store.db).content_hash(task.id) is not None

    def test_start_is_idempotent(self, store):
        sync = _sync(store, poll_interval=0.05)
        sync.start()
        first = sync._thread
        sync.start()
        assert sync._thread is first
        sync.stop()
        assert sync._thread is None
