"""
Listing over epics, tasks and subtasks as one result set.

Filters, multi-key sort and pagination are pushed into a single SQL query
over a UNION ALL of the entity tables. Sort keys are whitelisted; every sort
ends with id ascending (prefix, then numeric sequence) so paging is stable.
"""

import logging
from typing import Any, Dict, List, Optional

from tasktrail.db import Database, to_utc_iso
from tasktrail.errors import ValidationError
from tasktrail.models import (
    DONE_STATUSES,
    ListItem,
    ListPage,
    ListQuery,
    ReadyTask,
    SortKey,
    TaskStatus,
    normalize_status,
    page_bounds,
    parse_input,
)
from tasktrail.store import task_from_row

logger = logging.getLogger("tasktrail.query")

_ITEMS_SQL = """
    SELECT 'epic' AS type, id, 'EPIC' AS prefix, seq, title, status, priority,
           NULL AS parent_id, NULL AS epic_id, NULL AS parent_task_id, '[]' AS tags,
           created_at, updated_at
    FROM epics
    UNION ALL
    SELECT CASE WHEN parent_task_id IS NULL THEN 'task' ELSE 'subtask' END, id, 'TASK', seq,
           title, status, priority, COALESCE(parent_task_id, epic_id), epic_id, parent_task_id, tags,
           created_at, updated_at
    FROM tasks
"""

# where-key -> column of the unioned item set
_WHERE_FIELDS = {
    "epic_id": "epic_id",
    "parent_id": "parent_id",
    "parent_task_id": "parent_task_id",
    "priority": "priority",
    "status": "status",
    "title": "title",
}

_SORT_COLUMNS = {
    "created": ["created_at"],
    "updated": ["updated_at"],
    "priority": ["priority"],
    "status": ["status"],
    "title": ["title COLLATE NOCASE"],
    "id": ["prefix", "seq"],
}

DEFAULT_SORT = [SortKey(field="created", direction="desc")]


def _item_from_row(row) -> ListItem:
    return ListItem(
        type=row["type"],
        id=row["id"],
        title=row["title"],
        status=row["status"],
        priority=row["priority"],
        parent_id=row["parent_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _order_by(sort: List[SortKey]) -> str:
    terms: List[str] = []
    for key in sort or DEFAULT_SORT:
        direction = getattr(key.direction, "value", key.direction).upper()
        for column in _SORT_COLUMNS[key.field]:
            terms.append(f"{column} {direction}")
    terms.extend(["prefix ASC", "seq ASC"])
    return ", ".join(terms)


class QueryEngine:
    def __init__(self, db: Database):
        self._db = db

    def list(self, query: Optional[ListQuery] = None, **kwargs) -> ListPage:
        """List epics, tasks and subtasks.

        Pass a ListQuery, or the same fields as keyword arguments:
        ``engine.list(types=["task"], statuses=["todo"], sort=parse_sort("priority:asc"))``.
        """
        q = query or parse_input(ListQuery, kwargs)
        conditions: List[str] = []
        params: List[Any] = []

        if q.types:
            conditions.append(f"type IN ({', '.join('?' * len(q.types))})")
            params.extend(q.types)
        if q.statuses:
            conditions.append(f"status IN ({', '.join('?' * len(q.statuses))})")
            params.extend(q.statuses)
        if q.priorities:
            conditions.append(f"priority IN ({', '.join('?' * len(q.priorities))})")
            params.extend(q.priorities)
        for key, value in q.where.items():
            column = _WHERE_FIELDS.get(key)
            if column is None:
                raise ValidationError(
                    f"Unknown filter field '{key}', valid fields: {', '.join(_WHERE_FIELDS)}", field="where"
                )
            if key == "status":
                value = normalize_status(value)
            if value is None:
                conditions.append(f"{column} IS NULL")
            else:
                conditions.append(f"{column} = ?")
                params.append(value)
        for tag in q.tags or []:
            conditions.append("EXISTS (SELECT 1 FROM json_each(items.tags) WHERE json_each.value = ?)")
            params.append(tag)
        if q.since is not None:
            conditions.append("created_at >= ?")
            params.append(to_utc_iso(q.since))
        if q.until is not None:
            conditions.append("created_at <= ?")
            params.append(to_utc_iso(q.until))

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        base = f"FROM ({_ITEMS_SQL}) AS items {where}"
        logger.debug("list %s params=%r order=%s", where or "(all)", params, _order_by(q.sort))
        offset, _ = page_bounds(q.page, q.limit)
        with self._db.reading() as conn:
            total = conn.execute(f"SELECT COUNT(*) {base}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * {base} ORDER BY {_order_by(q.sort)} LIMIT ? OFFSET ?",
                params + [q.limit, offset],
            ).fetchall()
        return ListPage(items=[_item_from_row(r) for r in rows], total=total, page=q.page, limit=q.limit)

    def ready(self) -> List[ReadyTask]:
        """Top-level todo tasks whose dependencies are all done, most urgent first."""
        done = ", ".join("?" * len(DONE_STATUSES))
        with self._db.reading() as conn:
            rows = conn.execute(
                f"""
                SELECT t.* FROM tasks t
                WHERE t.status = ?
                  AND t.parent_task_id IS NULL
                  AND NOT EXISTS (
                      SELECT 1 FROM dependencies d
                      JOIN tasks b ON b.id = d.depends_on_id
                      WHERE d.task_id = t.id AND b.status NOT IN ({done})
                  )
                ORDER BY t.priority ASC, t.created_at ASC, t.seq ASC
                """,
                [TaskStatus.TODO.value, *DONE_STATUSES],
            ).fetchall()
            ready: List[ReadyTask] = []
            for row in rows:
                dependents = conn.execute(
                    f"""
                    SELECT * FROM ({_ITEMS_SQL}) AS items
                    WHERE id IN (SELECT task_id FROM dependencies WHERE depends_on_id = ?)
                    ORDER BY seq
                    """,
                    (row["id"],),
                ).fetchall()
                ready.append(ReadyTask(task=task_from_row(row), dependents=[_item_from_row(d) for d in dependents]))
        return ready

    def counts(self) -> Dict[str, int]:
        """Number of items per type (epic / task / subtask)."""
        rows = self._db.fetchall(f"SELECT type, COUNT(*) AS n FROM ({_ITEMS_SQL}) GROUP BY type")
        return {r["type"]: r["n"] for r in rows}
