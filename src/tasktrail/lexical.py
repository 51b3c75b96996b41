"""
Lexical channel -- FTS5 search over epics, tasks, subtasks and comments.

The ``search_index`` table is maintained by triggers (see db.py), so it is
always current with the last committed write. When FTS5 is missing from the
SQLite build we fall back to LIKE scans of the entity tables.
"""

import logging
import re
import sqlite3
from typing import List, NamedTuple, Optional, Sequence

from tasktrail.db import Database

logger = logging.getLogger("tasktrail.lexical")

DEFAULT_MAX_CANDIDATES = 200
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

_POPULATE_SQL = (
    """INSERT INTO search_index(entity_id, entity_type, title, content, author, status, parent_id)
       SELECT id, 'epic', title, COALESCE(description, ''), '', status, NULL FROM epics""",
    """INSERT INTO search_index(entity_id, entity_type, title, content, author, status, parent_id)
       SELECT id, IIF(parent_task_id IS NULL, 'task', 'subtask'), title, COALESCE(description, ''), '',
              status, COALESCE(parent_task_id, epic_id)
       FROM tasks""",
    """INSERT INTO search_index(entity_id, entity_type, title, content, author, status, parent_id)
       SELECT id, 'comment', '', content, author, '', task_id FROM comments""",
)

_LIKE_SQL = """
    SELECT * FROM (
        SELECT id AS entity_id, 'epic' AS entity_type, title, COALESCE(description, '') AS content,
               '' AS author, status, NULL AS parent_id, created_at FROM epics
        UNION ALL
        SELECT id, IIF(parent_task_id IS NULL, 'task', 'subtask'), title, COALESCE(description, ''), '',
               status, COALESCE(parent_task_id, epic_id), created_at FROM tasks
        UNION ALL
        SELECT id, 'comment', '', content, author, '', task_id, created_at FROM comments
    )
"""


class LexicalHit(NamedTuple):
    entity_id: str
    entity_type: str
    title: Optional[str]
    snippet: Optional[str]
    status: Optional[str]
    parent_id: Optional[str]
    score: float
    rank: int


def tokenize(query_text: str) -> List[str]:
    return [t.lower() for t in _TOKEN_RE.findall(query_text or "")]


def build_match(query_text: str) -> Optional[str]:
    """FTS5 MATCH expression: every token quoted and OR-ed, restricted to the
    text columns so ids and type names never match. None when there are no tokens."""
    tokens = tokenize(query_text)
    if not tokens:
        return None
    terms = " OR ".join(f'"{t}"' for t in dict.fromkeys(tokens))
    return f"{{title content author}} : ({terms})"


class LexicalIndex:
    def __init__(self, db: Database, max_candidates: int = DEFAULT_MAX_CANDIDATES):
        self._db = db
        self.max_candidates = max_candidates

    @property
    def available(self) -> bool:
        return self._db.fts_available

    def search(
        self,
        query_text: str,
        limit: Optional[int] = None,
        types: Optional[Sequence[str]] = None,
        status: Optional[str] = None,
    ) -> List[LexicalHit]:
        """Ranked hits, best first. rank is 1-based.

        limit defaults to max_candidates; callers paging deep into the
        results pass a larger one.
        """
        limit = limit or self.max_candidates
        if not tokenize(query_text):
            return []
        if not self._db.fts_available:
            return self._like_search(query_text, limit, types, status)
        try:
            return self._fts_search(query_text, limit, types, status)
        except sqlite3.OperationalError as e:
            logger.warning("FTS5 search failed: %s -- rebuilding index", e)
            self.rebuild()
            return self._fts_search(query_text, limit, types, status)

    def count(
        self,
        query_text: str,
        types: Optional[Sequence[str]] = None,
        status: Optional[str] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> int:
        """Number of entities matching the query and filters, uncapped.

        ids restricts the count to those entities.
        """
        if not tokenize(query_text) or (ids is not None and not ids):
            return 0
        if not self._db.fts_available:
            return len(self._like_rows(query_text, types, status, ids))
        conditions, params = self._fts_conditions(query_text, types, status, ids)
        return self._db.scalar(f"SELECT COUNT(*) FROM search_index WHERE {' AND '.join(conditions)}", params)

    @staticmethod
    def _fts_conditions(query_text, types, status, ids=None):
        conditions = ["search_index MATCH ?"]
        params: list = [build_match(query_text)]
        if types:
            conditions.append(f"entity_type IN ({', '.join('?' * len(types))})")
            params.extend(types)
        if status:
            conditions.append("status = ?")
            params.append(status)
        if ids:
            conditions.append(f"entity_id IN ({', '.join('?' * len(ids))})")
            params.extend(ids)
        return conditions, params

    def _fts_search(self, query_text, limit, types, status) -> List[LexicalHit]:
        conditions, params = self._fts_conditions(query_text, types, status)
        params.append(limit)
        rows = self._db.fetchall(
            f"""
            SELECT entity_id, entity_type, title,
                   snippet(search_index, 3, '**', '**', '...', 32) AS snippet,
                   bm25(search_index) AS score, status, parent_id
            FROM search_index
            WHERE {' AND '.join(conditions)}
            ORDER BY bm25(search_index), entity_id
            LIMIT ?
            """,
            params,
        )
        return [
            LexicalHit(
                entity_id=r["entity_id"],
                entity_type=r["entity_type"],
                title=r["title"] or None,
                snippet=r["snippet"],
                status=r["status"] or None,
                parent_id=r["parent_id"] or None,
                score=abs(r["score"]),
                rank=i + 1,
            )
            for i, r in enumerate(rows)
        ]

    def _like_rows(self, query_text, types, status, ids=None) -> List[sqlite3.Row]:
        tokens = list(dict.fromkeys(tokenize(query_text)))
        clauses = []
        params: list = []
        for t in tokens:
            clauses.append("(LOWER(title) LIKE ? OR LOWER(content) LIKE ? OR LOWER(author) LIKE ?)")
            params.extend([f"%{t}%"] * 3)
        conditions = [f"({' OR '.join(clauses)})"]
        if types:
            conditions.append(f"entity_type IN ({', '.join('?' * len(types))})")
            params.extend(types)
        if status:
            conditions.append("status = ?")
            params.append(status)
        if ids:
            conditions.append(f"entity_id IN ({', '.join('?' * len(ids))})")
            params.extend(ids)
        return self._db.fetchall(
            f"{_LIKE_SQL} WHERE {' AND '.join(conditions)} ORDER BY created_at DESC",
            params,
        )

    def _like_search(self, query_text, limit, types, status) -> List[LexicalHit]:
        tokens = list(dict.fromkeys(tokenize(query_text)))
        rows = self._like_rows(query_text, types, status)
        scored = []
        for r in rows:
            haystack = f"{r['title']} {r['content']} {r['author']}".lower()
            matched = sum(1 for t in tokens if t in haystack)
            scored.append((matched / len(tokens), r))
        scored.sort(key=lambda pair: -pair[0])
        return [
            LexicalHit(
                entity_id=r["entity_id"],
                entity_type=r["entity_type"],
                title=r["title"] or None,
                snippet=(r["content"] or "")[:160] or None,
                status=r["status"] or None,
                parent_id=r["parent_id"] or None,
                score=score,
                rank=i + 1,
            )
            for i, (score, r) in enumerate(scored[:limit])
        ]

    def rebuild(self) -> int:
        """Repopulate search_index from the entity tables. Returns the row count."""
        if not self._db.fts_available:
            return 0
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM search_index")
            for sql in _POPULATE_SQL:
                conn.execute(sql)
            count = conn.execute("SELECT COUNT(*) FROM search_index").fetchone()[0]
        logger.info("Rebuilt lexical index (%d rows)", count)
        return count
