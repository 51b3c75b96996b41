"""Tests for embedding backends and the vector index."""
import os

import numpy as np
import pytest

from tasktrail import embeddings
from tasktrail.embeddings import (
    EMBEDDING_DIM,
    Embedder,
    HashEmbedder,
    generate_embedding,
    get_embedding_info,
    hash_embedding,
    reset_embedding_state,
)
from tasktrail.errors import EmbeddingUnavailableError
from tasktrail.vectors import VectorIndex


def _cos(a, b):
    return float(np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b)))


class TestHashEmbedding:
    def test_shape_and_norm(self):
        vec = hash_embedding("Fix login timeout")
        assert len(vec) == EMBEDDING_DIM
        assert np.linalg.norm(vec) == pytest.approx(1.0, abs=1e-5)

    def test_deterministic(self):
        assert hash_embedding("same text") == hash_embedding("same text")

    def test_overlap_scores_higher(self):
        q = hash_embedding("login timeout")
        near = hash_embedding("fix the login timeout bug")
        far = hash_embedding("quarterly budget spreadsheet")
        assert _cos(q, near) > _cos(q, far)

    def test_empty_text(self):
        vec = hash_embedding("")
        assert np.linalg.norm(vec) == pytest.approx(1.0, abs=1e-5)

    def test_hash_embedder(self):
        e = HashEmbedder()
        assert e.model_name == "feature-hash-v1"
        assert e.embed_batch(["a", "b"]) == [hash_embedding("a"), hash_embedding("b")]


class TestBackendSelection:
    def test_hash_backend_from_env(self):
        os.environ["TASKTRAIL_EMBEDDINGS"] = "hash"
        assert generate_embedding("x") == hash_embedding("x")
        assert Embedder().model_name == "feature-hash-v1"
        assert embeddings.get_active_backend() == "hash"

    def test_disabled_raises(self):
        os.environ["TASKTRAIL_EMBEDDINGS"] = "none"
        with pytest.raises(EmbeddingUnavailableError):
            generate_embedding("x")

    def test_skip_flag_disables(self):
        os.environ["TASKTRAIL_SKIP_EMBEDDINGS"] = "1"
        with pytest.raises(EmbeddingUnavailableError):
            Embedder().embed("x")

    def test_missing_model_raises_not_hash(self, monkeypatch):
        """No silent fallback to hash vectors when the model cannot load."""
        os.environ["TASKTRAIL_EMBEDDINGS"] = "auto"
        monkeypatch.setattr(embeddings, "_get_embedding_model", lambda backend: None)
        with pytest.raises(EmbeddingUnavailableError):
            generate_embedding("x")

    def test_circuit_breaker_stops_retrying(self, monkeypatch, tmp_path):
        os.environ["TASKTRAIL_EMBEDDINGS"] = "onnx"
        os.environ["TASKTRAIL_ONNX_MODEL_DIR"] = str(tmp_path / "nowhere")
        monkeypatch.setattr(embeddings, "_check_onnx_runtime", lambda: False)
        for _ in range(5):
            assert embeddings._get_embedding_model("onnx") is None
        assert embeddings._LOAD_ATTEMPTS == embeddings._MAX_LOAD_ATTEMPTS
        reset_embedding_state()
        assert embeddings._LOAD_ATTEMPTS == 0

    def test_info(self):
        info = get_embedding_info()
        assert info["dimension"] == EMBEDDING_DIM
        assert info["requested_backend"] == "hash"


class TestVectorIndex:
    def test_upsert_knn_delete(self, db):
        index = VectorIndex(db)
        index.upsert("TASK-1", "task", hash_embedding("login timeout"), "h1")
        index.upsert("TASK-2", "task", hash_embedding("budget spreadsheet"), "h2")
        hits = index.knn(hash_embedding("login timeout"), k=2)
        assert hits[0].entity_id == "TASK-1"
        assert hits[0].similarity == pytest.approx(1.0, abs=1e-4)
        assert index.delete("TASK-1") is True
        assert index.delete("TASK-1") is False
        assert index.count() == 1

    def test_upsert_replaces(self, db):
        index = VectorIndex(db)
        index.upsert("TASK-1", "task", hash_embedding("a"), "h1")
        index.upsert("TASK-1", "subtask", hash_embedding("b"), "h2")
        assert index.count() == 1
        assert index.content_hash("TASK-1") == "h2"
        assert index.get_vector("TASK-1") == pytest.approx(hash_embedding("b"), abs=1e-6)

    def test_threshold(self, db):
        index = VectorIndex(db)
        index.upsert("TASK-1", "task", hash_embedding("login timeout"), "h1")
        assert index.knn(hash_embedding("quarterly budget"), k=5, threshold=0.9) == []

    def test_dimension_mismatch(self, db):
        with pytest.raises(ValueError):
            VectorIndex(db).upsert("TASK-1", "task", [0.1, 0.2], "h")

    def test_brute_force_path(self, db):
        db.vec_available = False
        index = VectorIndex(db)
        index.upsert("TASK-1", "task", hash_embedding("login"), "h1")
        index.upsert("TASK-2", "task", hash_embedding("budget"), "h2")
        hits = index.knn(hash_embedding("login"), k=1)
        assert [h.entity_id for h in hits] == ["TASK-1"]
