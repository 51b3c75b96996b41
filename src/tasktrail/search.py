"""
Hybrid search -- lexical (FTS5) and semantic (vector) channels fused with
reciprocal rank fusion.

The lexical channel always answers from the committed state. The semantic
channel runs on a worker thread with a timeout and is allowed to lag behind
(vectors are refreshed asynchronously by EmbeddingSync). Whenever it cannot
answer (embeddings disabled, model missing, provider error, timeout, empty
index) the search quietly returns lexical-only results with ``semantic_enriched=False``.

Usage:
    coordinator = SearchCoordinator(db)
    page = coordinator.search("login timeout", types=["task"], limit=10)
"""

import logging
import sqlite3
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Dict, List, Optional, Sequence

from tasktrail import config
from tasktrail.db import Database
from tasktrail.embeddings import Embedder
from tasktrail.ids import split_id
from tasktrail.errors import EmbeddingUnavailableError, NotFoundError, SearchDegradedError, ValidationError
from tasktrail.lexical import DEFAULT_MAX_CANDIDATES, LexicalHit, LexicalIndex
from tasktrail.models import SearchHit, SearchPage, SearchQuery, page_bounds, parse_input
from tasktrail.store import searchable_text
from tasktrail.vectors import Neighbour, VectorIndex

logger = logging.getLogger("tasktrail.search")

RRF_K = 60
LEXICAL = "lexical"
SEMANTIC = "semantic"
_SNIPPET_CHARS = 160

_DESCRIBE_SQL = """
    SELECT id, 'epic' AS type, title, COALESCE(description, '') AS body, status, NULL AS parent_id
    FROM epics WHERE id IN ({marks})
    UNION ALL
    SELECT id, IIF(parent_task_id IS NULL, 'task', 'subtask'), title, COALESCE(description, ''), status,
           COALESCE(parent_task_id, epic_id)
    FROM tasks WHERE id IN ({marks})
    UNION ALL
    SELECT id, 'comment', NULL, content, NULL, task_id
    FROM comments WHERE id IN ({marks})
"""


def rrf_score(ranks: Sequence[Optional[int]], k: int = RRF_K) -> float:
    """Reciprocal rank fusion: sum of 1/(k + rank) over the channels that ranked the item."""
    return sum(1.0 / (k + r) for r in ranks if r is not None)


class SearchCoordinator:
    def __init__(
        self,
        db: Database,
        lexical: Optional[LexicalIndex] = None,
        vectors: Optional[VectorIndex] = None,
        embedder: Optional[Embedder] = None,
        timeout: Optional[float] = None,
        threshold: Optional[float] = None,
        semantic_enabled: Optional[bool] = None,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
    ):
        self._db = db
        self.lexical = lexical or LexicalIndex(db, max_candidates=max_candidates)
        self.vectors = vectors or VectorIndex(db)
        self.embedder = embedder or Embedder()
        self.timeout = timeout if timeout is not None else config.search_timeout()
        self.threshold = threshold if threshold is not None else config.similarity_threshold()
        if semantic_enabled is None:
            semantic_enabled = config.embedding_backend() != "none"
        self.semantic_enabled = semantic_enabled
        self.max_candidates = max_candidates
        self._executor: Optional[ThreadPoolExecutor] = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tasktrail-semantic")
        return self._executor

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    # ------------------------------------------------------------------
    # Semantic channel
    # ------------------------------------------------------------------

    def _semantic_candidates(self, text: str, threshold: float) -> List[Neighbour]:
        if self.vectors.count() == 0:
            raise SearchDegradedError("vector index is empty")
        try:
            vector = self.embedder.embed(text)
            return self.vectors.knn(vector, self.max_candidates, threshold)
        except EmbeddingUnavailableError as e:
            raise SearchDegradedError(f"embedding unavailable: {e.message}") from e
        except (sqlite3.Error, ValueError) as e:
            raise SearchDegradedError(f"vector query failed: {e}") from e

    def _collect(self, future: Future) -> List[Neighbour]:
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout:
            future.cancel()
            raise SearchDegradedError(f"semantic channel timed out after {self.timeout:.1f}s") from None
        except SearchDegradedError:
            raise
        except Exception as e:
            raise SearchDegradedError(f"semantic provider failed: {type(e).__name__}: {e}") from e

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query_text: str, query: Optional[SearchQuery] = None, **kwargs) -> SearchPage:
        """Run a keyword, semantic or hybrid (default) search.

        Pass a SearchQuery, or its fields as keyword arguments (types, status,
        mode, page, limit, threshold).
        """
        q = query or parse_input(SearchQuery, kwargs)
        text = (query_text or "").strip()
        if not text:
            raise ValidationError("Search query must not be empty", field="query")

        want_lexical = q.mode in ("keyword", "hybrid")
        want_semantic = q.mode in ("semantic", "hybrid")
        threshold = q.threshold if q.threshold is not None else self.threshold

        future: Optional[Future] = None
        if want_semantic and self.semantic_enabled:
            future = self._get_executor().submit(self._semantic_candidates, text, threshold)

        offset, end = page_bounds(q.page, q.limit)
        lexical_hits: List[LexicalHit] = []
        lexical_total = 0
        if want_lexical:
            lexical_hits = self.lexical.search(
                text, limit=max(self.max_candidates, end), types=q.types, status=q.status
            )
            lexical_total = len(lexical_hits)
            if lexical_total == max(self.max_candidates, end):
                lexical_total = self.lexical.count(text, types=q.types, status=q.status)

        neighbours: List[Neighbour] = []
        if future is not None:
            try:
                neighbours = self._collect(future)
            except SearchDegradedError as e:
                logger.debug("Semantic channel degraded for %r: %s", text, e.message)
        elif want_semantic:
            logger.debug("Semantic channel disabled; %r answered lexically", text)

        hits = self._fuse(lexical_hits, neighbours)
        semantic_enriched = any(SEMANTIC in h.channels for h in hits)
        hits = self._post_filter(hits, q.types, q.status)
        total = self._total(text, q, hits, lexical_total, truncated=lexical_total > len(lexical_hits))
        return SearchPage(
            query=text,
            mode=q.mode,
            results=hits[offset:end],
            total=total,
            page=q.page,
            limit=q.limit,
            semantic_enriched=semantic_enriched,
        )

    def _total(self, text: str, q: SearchQuery, hits: List[SearchHit], lexical_total: int, truncated: bool) -> int:
        """Matches after filtering, before pagination.

        The lexical channel may hold more matches than it returned; semantic-only
        hits that are among those are counted once.
        """
        semantic_only = [h.id for h in hits if h.lexical_rank is None]
        if not truncated:
            return lexical_total + len(semantic_only)
        overlap = self.lexical.count(text, types=q.types, status=q.status, ids=semantic_only)
        return lexical_total + len(semantic_only) - overlap

    def _describe(self, ids: Sequence[str]) -> Dict[str, Dict]:
        """Live title/status/parent for ids; vanished entities are simply absent."""
        if not ids:
            return {}
        marks = ", ".join("?" * len(ids))
        rows = self._db.fetchall(_DESCRIBE_SQL.format(marks=marks), list(ids) * 3)
        return {r["id"]: dict(r) for r in rows}

    def _fuse(self, lexical_hits: List[LexicalHit], neighbours: List[Neighbour]) -> List[SearchHit]:
        entries: Dict[str, Dict] = {}
        for hit in lexical_hits:
            entries[hit.entity_id] = {
                "type": hit.entity_type,
                "title": hit.title,
                "snippet": hit.snippet,
                "status": hit.status,
                "parent_id": hit.parent_id,
                "lexical_rank": hit.rank,
                "semantic_rank": None,
                "similarity": None,
            }

        live = self._describe([n.entity_id for n in neighbours if n.entity_id not in entries])
        semantic_rank = 0
        for n in neighbours:
            entry = entries.get(n.entity_id)
            if entry is None:
                row = live.get(n.entity_id)
                if row is None:
                    # Vector outlived its entity; sync will drop it.
                    continue
                entry = entries[n.entity_id] = {
                    "type": row["type"],
                    "title": row["title"] or None,
                    "snippet": (row["body"] or "")[:_SNIPPET_CHARS] or None,
                    "status": row["status"] or None,
                    "parent_id": row["parent_id"],
                    "lexical_rank": None,
                    "semantic_rank": None,
                    "similarity": None,
                }
            semantic_rank += 1
            entry["semantic_rank"] = semantic_rank
            entry["similarity"] = n.similarity

        hits = []
        for entity_id, e in entries.items():
            channels = [c for c, r in ((LEXICAL, e["lexical_rank"]), (SEMANTIC, e["semantic_rank"])) if r]
            hits.append(SearchHit(id=entity_id, score=rrf_score([e["lexical_rank"], e["semantic_rank"]]),
                                  channels=channels, **e))
        hits.sort(key=lambda h: (
            -h.score,
            h.lexical_rank if h.lexical_rank is not None else float("inf"),
            split_id(h.id),
        ))
        return hits

    @staticmethod
    def _post_filter(hits: List[SearchHit], types: Optional[Sequence[str]], status: Optional[str]) -> List[SearchHit]:
        if types:
            hits = [h for h in hits if h.type in types]
        if status:
            hits = [h for h in hits if h.status == status]
        return hits

    # ------------------------------------------------------------------
    # Similar
    # ------------------------------------------------------------------

    def similar(
        self,
        entity_id: Optional[str] = None,
        text: Optional[str] = None,
        threshold: Optional[float] = None,
        limit: int = 10,
    ) -> List[SearchHit]:
        """Nearest neighbours of an entity (excluding itself) or of free text.

        Returns an empty list when the semantic channel is unavailable.
        """
        if bool(entity_id) == bool(text):
            raise ValidationError("Give exactly one of entity_id or text", field="entity_id")
        if limit < 1:
            raise ValidationError("limit must be >= 1", field="limit")
        threshold = self.threshold if threshold is None else threshold

        vector: Optional[List[float]] = None
        if entity_id:
            found = searchable_text(self._db, entity_id)
            if found is None:
                raise NotFoundError(f"Entity not found: {entity_id}", entity_id=entity_id)
            vector = self.vectors.get_vector(entity_id)
            text = found[1]
        if not self.semantic_enabled:
            return []
        try:
            if vector is None:
                vector = self.embedder.embed(text)
            neighbours = self.vectors.knn(vector, limit + 1, threshold)
        except EmbeddingUnavailableError as e:
            logger.info("similar() unavailable: %s", e.message)
            return []
        except Exception as e:
            logger.debug("similar() degraded: %s: %s", type(e).__name__, e)
            return []

        neighbours = [n for n in neighbours if n.entity_id != entity_id][:limit]
        live = self._describe([n.entity_id for n in neighbours])
        hits = []
        for rank, n in enumerate((n for n in neighbours if n.entity_id in live), start=1):
            row = live[n.entity_id]
            hits.append(SearchHit(
                type=row["type"],
                id=n.entity_id,
                title=row["title"] or None,
                snippet=(row["body"] or "")[:_SNIPPET_CHARS] or None,
                status=row["status"] or None,
                parent_id=row["parent_id"],
                score=n.similarity,
                semantic_rank=rank,
                similarity=n.similarity,
                channels=[SEMANTIC],
            ))
        return hits
