"""
Vector index -- one embedding per searchable entity.

Vectors live in the ``embeddings`` table (float32 blobs). When sqlite-vec is
loadable they are mirrored into the ``embeddings_vec`` vec0 table, keyed by
``embeddings.id``, and nearest-neighbour queries run there; otherwise we
score every stored vector with NumPy.
"""

import logging
import struct
from typing import List, NamedTuple, Optional

import numpy as np

from tasktrail.db import EMBEDDING_DIM, Database, utcnow

logger = logging.getLogger("tasktrail.vectors")


def _serialize_f32(vector: List[float]) -> bytes:
    """Serialize a float32 vector to bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def _deserialize_f32(data: bytes) -> List[float]:
    return list(struct.unpack(f"{len(data) // 4}f", data))


class Neighbour(NamedTuple):
    entity_id: str
    entity_type: str
    similarity: float


class VectorIndex:
    def __init__(self, db: Database, dimension: int = EMBEDDING_DIM):
        self._db = db
        self.dimension = dimension

    @property
    def uses_vec0(self) -> bool:
        return self._db.vec_available

    def upsert(
        self,
        entity_id: str,
        entity_type: str,
        vector: List[float],
        content_hash: str,
        model: Optional[str] = None,
    ) -> None:
        if len(vector) != self.dimension:
            raise ValueError(f"Expected {self.dimension}-dim vector for {entity_id}, got {len(vector)}")
        blob = _serialize_f32(vector)
        now = utcnow()
        with self._db.transaction() as c:
            row = c.execute("SELECT id FROM embeddings WHERE entity_id = ?", (entity_id,)).fetchone()
            if row is None:
                cur = c.execute(
                    "INSERT INTO embeddings (entity_id, entity_type, content_hash, vector, model, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (entity_id, entity_type, content_hash, blob, model, now),
                )
                rowid = cur.lastrowid
            else:
                rowid = row[0]
                c.execute(
                    "UPDATE embeddings SET entity_type = ?, content_hash = ?, vector = ?, model = ?, updated_at = ? "
                    "WHERE id = ?",
                    (entity_type, content_hash, blob, model, now, rowid),
                )
            if self._db.vec_available:
                c.execute("DELETE FROM embeddings_vec WHERE rowid = ?", (rowid,))
                c.execute("INSERT INTO embeddings_vec (rowid, embedding) VALUES (?, ?)", (rowid, blob))

    def delete(self, entity_id: str) -> bool:
        with self._db.transaction() as c:
            row = c.execute("SELECT id FROM embeddings WHERE entity_id = ?", (entity_id,)).fetchone()
            if row is None:
                return False
            if self._db.vec_available:
                c.execute("DELETE FROM embeddings_vec WHERE rowid = ?", (row[0],))
            c.execute("DELETE FROM embeddings WHERE id = ?", (row[0],))
        return True

    def retype(self, entity_id: str, entity_type: str) -> bool:
        """Change the stored entity type without touching the vector."""
        with self._db.transaction() as c:
            cur = c.execute(
                "UPDATE embeddings SET entity_type = ?, updated_at = ? WHERE entity_id = ?",
                (entity_type, utcnow(), entity_id),
            )
        return cur.rowcount > 0

    def content_hash(self, entity_id: str) -> Optional[str]:
        return self._db.scalar("SELECT content_hash FROM embeddings WHERE entity_id = ?", (entity_id,))

    def get_vector(self, entity_id: str) -> Optional[List[float]]:
        blob = self._db.scalar("SELECT vector FROM embeddings WHERE entity_id = ?", (entity_id,))
        return _deserialize_f32(blob) if blob is not None else None

    def count(self) -> int:
        return int(self._db.scalar("SELECT COUNT(*) FROM embeddings") or 0)

    def clear(self) -> None:
        with self._db.transaction() as c:
            if self._db.vec_available:
                c.execute("DELETE FROM embeddings_vec")
            c.execute("DELETE FROM embeddings")

    def knn(self, vector: List[float], k: int, threshold: float = 0.0) -> List[Neighbour]:
        """Up to k nearest entities with cosine similarity >= threshold, most similar first."""
        if k <= 0 or len(vector) != self.dimension:
            return []
        if self._db.vec_available:
            neighbours = self._knn_vec0(vector, k)
        else:
            neighbours = self._knn_brute_force(vector, k)
        return [n for n in neighbours if n.similarity >= threshold]

    def _knn_vec0(self, vector: List[float], k: int) -> List[Neighbour]:
        with self._db.reading() as c:
            rows = c.execute(
                "SELECT rowid, distance FROM embeddings_vec WHERE embedding MATCH ? AND k = ? ORDER BY distance",
                (_serialize_f32(vector), k),
            ).fetchall()
            results = []
            for rowid, distance in rows:
                meta = c.execute("SELECT entity_id, entity_type FROM embeddings WHERE id = ?", (rowid,)).fetchone()
                if meta is not None:
                    results.append(Neighbour(meta[0], meta[1], 1.0 - float(distance)))
        return results

    def _knn_brute_force(self, vector: List[float], k: int) -> List[Neighbour]:
        rows = self._db.fetchall("SELECT entity_id, entity_type, vector FROM embeddings ORDER BY id")
        if not rows:
            return []
        matrix = np.frombuffer(b"".join(r["vector"] for r in rows), dtype=np.float32).reshape(len(rows), -1)
        query = np.asarray(vector, dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * max(float(np.linalg.norm(query)), 1e-9)
        sims = (matrix @ query) / np.clip(norms, a_min=1e-9, a_max=None)
        order = np.argsort(-sims, kind="stable")[:k]
        return [Neighbour(rows[i]["entity_id"], rows[i]["entity_type"], float(sims[i])) for i in order]
