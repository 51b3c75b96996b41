"""Tests for the Tracker facade: init/open/wipe lifecycle, reindex, background sync."""
import os
import time

import pytest

from tasktrail.embeddings import HashEmbedder
from tasktrail.errors import NotFoundError, ValidationError
from tasktrail.tracker import Tracker, get_tracker, reset_tracker


class TestLifecycle:
    def test_init_names_project_after_directory(self, tracker, project_dir):
        assert tracker.store.get_project().name == "myproject"
        assert tracker.db.path == str(project_dir / ".tasktrail" / "tasktrail.db")

    def test_init_twice_fails(self, tracker, project_dir):
        with pytest.raises(ValidationError):
            Tracker.init(project_dir)

    def test_open_uninitialized(self, project_dir):
        with pytest.raises(NotFoundError):
            Tracker.open(project_dir)

    def test_reopen_keeps_data(self, tracker, project_dir):
        task = tracker.store.create_task("Persisted")
        tracker.close()
        with Tracker.open(project_dir, embedder=HashEmbedder()) as again:
            assert again.store.get_task(task.id).title == "Persisted"
            assert again.store.create_task("Next").id == "TASK-2"

    def test_wipe_then_init(self, tracker, project_dir):
        tracker.store.create_task("Gone")
        tracker.wipe()
        assert tracker.list().total == 0
        assert tracker.history().total == 0
        tracker.close()
        with pytest.raises(NotFoundError):
            Tracker.open(project_dir)
        with Tracker.init(project_dir, name="fresh") as again:
            assert again.store.create_task("First").id == "TASK-1"
            assert again.store.get_project().name == "fresh"

    def test_tasktrail_db_env_wins(self, tmp_path, project_dir):
        os.environ["TASKTRAIL_DB"] = str(tmp_path / "elsewhere.db")
        with Tracker.init(project_dir) as t:
            assert t.db.path == str(tmp_path / "elsewhere.db")

    def test_in_memory(self):
        with Tracker(":memory:", embedder=HashEmbedder()) as t:
            t.store.init_project("mem")
            task = t.store.create_task("Fix login timeout")
            t.sync.drain()
            assert t.similar(text="login timeout", threshold=0.1)[0].id == task.id


class TestMaintenance:
    def test_reindex(self, tracker):
        tracker.store.create_task("A")
        tracker.store.create_epic("E")
        result = tracker.reindex()
        assert result == {"lexical": 2, "queued": 2}

    def test_keyword_only_reindex(self, tracker):
        tracker.store.create_task("A")
        assert tracker.reindex(embeddings=False)["queued"] == 0

    def test_status(self, tracker):
        tracker.store.create_task("A")
        info = tracker.status()
        assert info["project"] == "myproject"
        assert info["counts"] == {"task": 1}
        assert info["semantic_enabled"] is True
        assert info["embeddings"]["pending"] == 1


    def test_close_embeds_own_writes(self, project_dir):
        with Tracker.init(project_dir, embedder=HashEmbedder()) as t:
            t.store.create_task("Fix login timeout")
            assert t.sync.stats()["pending"] == 1
        with Tracker.open(project_dir, embedder=HashEmbedder()) as again:
            assert again.sync.stats() == {"pending": 0, "dead": 0, "vectors": 1}

    def test_close_flush_is_bounded(self, project_dir):
        os.environ["TASKTRAIL_SYNC_FLUSH_TIMEOUT"] = "0"
        with Tracker.init(project_dir, embedder=HashEmbedder()) as t:
            t.store.create_task("Fix login timeout")
        with Tracker.open(project_dir, embedder=HashEmbedder()) as again:
            assert again.sync.stats()["pending"] == 1


class TestBackgroundSync:
    def test_started_worker_indexes_new_tasks(self, project_dir):
        with Tracker.init(project_dir, embedder=HashEmbedder(), start_sync=True, sync_poll_interval=0.05) as t:
            assert t.sync.running
            task = t.store.create_task("Fix login timeout")
            deadline = time.time() + 5
            while time.time() < deadline and t.sync.stats()["vectors"] == 0:
                time.sleep(0.02)
            page = t.search("login timeout", threshold=0.1)
            assert page.semantic_enriched is True
            assert page.results[0].id == task.id
        assert not t.sync.running

    def test_no_worker_when_embeddings_disabled(self, project_dir):
        os.environ["TASKTRAIL_EMBEDDINGS"] = "none"
        with Tracker.init(project_dir, start_sync=True) as t:
            assert not t.semantic_enabled
            assert not t.sync.running


class TestSingleton:
    def test_get_tracker_uses_cwd(self, tracker, project_dir, monkeypatch):
        tracker.close()
        monkeypatch.chdir(project_dir)
        first = get_tracker()
        assert get_tracker() is first
        assert first.store.get_project().name == "myproject"
        reset_tracker()
        assert get_tracker() is not first
