"""
Append-only audit log.

Events are written by the store inside the mutation's own transaction, so a
rolled back write leaves no event behind and a committed write always has
exactly one.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional

from tasktrail.db import Database, to_utc_iso, utcnow
from tasktrail.models import Event, HistoryPage, HistoryQuery, page_bounds

# Fields never reported in update diffs.
_DIFF_IGNORED = ("updated_at", "seq")


class AuditLog:
    def __init__(self, db: Database):
        self._db = db

    def record(
        self,
        conn: sqlite3.Connection,
        entity_type: str,
        entity_id: str,
        action: str,
        payload: Dict[str, Any],
        timestamp: Optional[str] = None,
    ) -> int:
        cur = conn.execute(
            "INSERT INTO events (entity_type, entity_id, action, payload, timestamp) VALUES (?, ?, ?, ?, ?)",
            (entity_type, entity_id, action, json.dumps(payload, sort_keys=True), timestamp or utcnow()),
        )
        return cur.lastrowid

    @staticmethod
    def diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """Field-level {field: {"from": old, "to": new}} for changed fields only."""
        changes: Dict[str, Dict[str, Any]] = {}
        for key, new in after.items():
            if key in _DIFF_IGNORED:
                continue
            old = before.get(key)
            if old != new:
                changes[key] = {"from": old, "to": new}
        return changes

    def query(self, q: Optional[HistoryQuery] = None) -> HistoryPage:
        """Filtered history, oldest first (ties by insertion order)."""
        q = q or HistoryQuery()
        conditions: List[str] = []
        params: List[Any] = []

        if q.entity_id:
            conditions.append("entity_id = ?")
            params.append(q.entity_id)
        if q.types:
            conditions.append(f"entity_type IN ({', '.join('?' * len(q.types))})")
            params.extend(q.types)
        if q.actions:
            conditions.append(f"action IN ({', '.join('?' * len(q.actions))})")
            params.extend(getattr(a, "value", a) for a in q.actions)
        if q.since is not None:
            conditions.append("timestamp >= ?")
            params.append(to_utc_iso(q.since))
        if q.until is not None:
            conditions.append("timestamp <= ?")
            params.append(to_utc_iso(q.until))

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        total = self._db.scalar(f"SELECT COUNT(*) FROM events {where}", params)
        offset, _ = page_bounds(q.page, q.limit)
        rows = self._db.fetchall(
            f"SELECT id, entity_type, entity_id, action, payload, timestamp FROM events {where} "
            f"ORDER BY timestamp ASC, id ASC LIMIT ? OFFSET ?",
            params + [q.limit, offset],
        )
        events = [
            Event(
                id=r["id"],
                entity_type=r["entity_type"],
                entity_id=r["entity_id"],
                action=r["action"],
                payload=json.loads(r["payload"]) if r["payload"] else {},
                timestamp=r["timestamp"],
            )
            for r in rows
        ]
        return HistoryPage(events=events, total=total, page=q.page, limit=q.limit)
