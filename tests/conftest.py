"""tasktrail test configuration."""
import os
import sys
import pytest
from pathlib import Path

# Ensure tasktrail package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

_ENV_KEYS = (
    "TASKTRAIL_DIR",
    "TASKTRAIL_DB",
    "TASKTRAIL_HOME",
    "TASKTRAIL_EMBEDDINGS",
    "TASKTRAIL_SKIP_EMBEDDINGS",
    "TASKTRAIL_ONNX_MODEL_DIR",
    "TASKTRAIL_SEARCH_TIMEOUT",
    "TASKTRAIL_SIMILARITY_THRESHOLD",
    "TASKTRAIL_SYNC_MAX_ATTEMPTS",
    "TASKTRAIL_LOG_LEVEL",
    "TASKTRAIL_DEBUG",
)


@pytest.fixture(autouse=True)
def tmp_tasktrail_home(tmp_path):
    """Point TASKTRAIL_HOME at a temp dir and use hash embeddings unless a test says otherwise."""
    saved = {k: os.environ.get(k) for k in _ENV_KEYS}
    for k in _ENV_KEYS:
        os.environ.pop(k, None)
    home = tmp_path / ".tasktrail-home"
    home.mkdir()
    os.environ["TASKTRAIL_HOME"] = str(home)
    os.environ["TASKTRAIL_EMBEDDINGS"] = "hash"
    yield home
    for k, v in saved.items():
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v


@pytest.fixture(autouse=True)
def _reset_embeddings_after_test():
    """Reset embedding circuit-breaker after every test to prevent state leaks."""
    yield
    from tasktrail.embeddings import reset_embedding_state
    reset_embedding_state()


@pytest.fixture(autouse=True)
def _reset_tracker_singleton():
    yield
    from tasktrail.tracker import reset_tracker
    reset_tracker()


@pytest.fixture
def project_dir(tmp_path):
    """An empty working directory for a store."""
    d = tmp_path / "myproject"
    d.mkdir()
    return d


@pytest.fixture
def db():
    """Fresh in-memory database."""
    from tasktrail.db import Database
    d = Database()
    yield d
    d.close()


@pytest.fixture
def store(db):
    """Initialized EntityStore over an in-memory database."""
    from tasktrail.store import EntityStore
    s = EntityStore(db)
    s.init_project("test-project")
    return s


@pytest.fixture
def tracker(project_dir):
    """Initialized file-backed Tracker with deterministic hash embeddings (sync not started)."""
    from tasktrail.embeddings import HashEmbedder
    from tasktrail.tracker import Tracker
    t = Tracker.init(project_dir, embedder=HashEmbedder(), sync_backoff_base=0.0)
    yield t
    t.close(drain=False)
