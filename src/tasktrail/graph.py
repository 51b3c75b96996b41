"""
Dependency graph over tasks.

An edge ``task_id -> depends_on_id`` means task_id cannot start before
depends_on_id is done. The edge set stays acyclic: before inserting an edge
we look for an existing path ``depends_on_id => task_id``.
"""

import logging
import sqlite3
from typing import Dict, List, Optional

from tasktrail.errors import CycleError, NotFoundError, ValidationError

logger = logging.getLogger("tasktrail.graph")


def _task_count(conn: sqlite3.Connection) -> int:
    return conn.execute("SELECT COUNT(*) FROM tasks").fetchone()[0]


class DependencyGraph:
    """Cycle-checked edge operations. All methods run on the caller's connection."""

    def find_path(self, conn: sqlite3.Connection, start: str, goal: str) -> Optional[List[str]]:
        """Return a path start => goal following depends-on edges, or None.

        Iterative DFS; each node is expanded at most once so the walk is
        bounded by the number of tasks.
        """
        if start == goal:
            return [start]
        came_from: Dict[str, Optional[str]] = {start: None}
        stack = [start]
        budget = _task_count(conn) + 1
        while stack and budget > 0:
            node = stack.pop()
            budget -= 1
            rows = conn.execute(
                "SELECT depends_on_id FROM dependencies WHERE task_id = ? ORDER BY seq",
                (node,),
            ).fetchall()
            for (nxt,) in rows:
                if nxt in came_from:
                    continue
                came_from[nxt] = node
                if nxt == goal:
                    path = [goal]
                    while came_from[path[-1]] is not None:
                        path.append(came_from[path[-1]])
                    path.reverse()
                    return path
                stack.append(nxt)
        return None

    def add_edge(
        self,
        conn: sqlite3.Connection,
        task_id: str,
        depends_on_id: str,
        dep_id: str,
        seq: int,
        created_at: str,
    ) -> None:
        if task_id == depends_on_id:
            raise CycleError(
                f"Task {task_id} cannot depend on itself",
                path=[task_id, task_id],
                entity_type="dependency",
                entity_id=task_id,
            )
        existing = conn.execute(
            "SELECT id FROM dependencies WHERE task_id = ? AND depends_on_id = ?",
            (task_id, depends_on_id),
        ).fetchone()
        if existing is not None:
            raise ValidationError(
                f"Dependency already exists: {task_id} depends on {depends_on_id} ({existing[0]})",
                entity_type="dependency",
                entity_id=existing[0],
            )
        path = self.find_path(conn, depends_on_id, task_id)
        if path is not None:
            cycle = [task_id] + path
            raise CycleError(
                f"Adding {task_id} -> {depends_on_id} would create a cycle: {' -> '.join(cycle)}",
                path=cycle,
                entity_type="dependency",
                entity_id=task_id,
            )
        conn.execute(
            "INSERT INTO dependencies (id, seq, task_id, depends_on_id, created_at) VALUES (?, ?, ?, ?, ?)",
            (dep_id, seq, task_id, depends_on_id, created_at),
        )
        logger.debug("Added dependency %s: %s -> %s", dep_id, task_id, depends_on_id)

    def remove_edge(self, conn: sqlite3.Connection, task_id: str, depends_on_id: str) -> Dict[str, str]:
        row = conn.execute(
            "SELECT id, task_id, depends_on_id, created_at FROM dependencies "
            "WHERE task_id = ? AND depends_on_id = ?",
            (task_id, depends_on_id),
        ).fetchone()
        if row is None:
            raise NotFoundError(
                f"Dependency not found: {task_id} depends on {depends_on_id}",
                entity_type="dependency",
            )
        conn.execute("DELETE FROM dependencies WHERE id = ?", (row["id"],))
        return dict(row)

    def remove_incident(self, conn: sqlite3.Connection, task_id: str) -> List[Dict[str, str]]:
        """Delete every edge touching task_id and return the removed rows."""
        rows = conn.execute(
            "SELECT id, task_id, depends_on_id, created_at FROM dependencies "
            "WHERE task_id = ? OR depends_on_id = ? ORDER BY seq",
            (task_id, task_id),
        ).fetchall()
        conn.execute("DELETE FROM dependencies WHERE task_id = ? OR depends_on_id = ?", (task_id, task_id))
        return [dict(r) for r in rows]

    def check_parent_chain(self, conn: sqlite3.Connection, task_id: str, new_parent_id: str) -> None:
        """Raise CycleError if making new_parent_id the parent of task_id closes a loop."""
        chain = [task_id]
        current: Optional[str] = new_parent_id
        budget = _task_count(conn) + 1
        while current is not None and budget > 0:
            chain.append(current)
            if current == task_id:
                raise CycleError(
                    f"Task {new_parent_id} cannot become the parent of {task_id}: {' -> '.join(chain)}",
                    path=chain,
                    entity_type="task",
                    entity_id=task_id,
                    field="parent_task_id",
                )
            row = conn.execute("SELECT parent_task_id FROM tasks WHERE id = ?", (current,)).fetchone()
            current = row[0] if row is not None else None
            budget -= 1
        if budget <= 0:
            logger.warning("Parent chain above %s did not terminate; stored hierarchy may be corrupt", new_parent_id)

    def edges_of(self, conn: sqlite3.Connection, task_id: str) -> Dict[str, List[str]]:
        depends_on = conn.execute(
            "SELECT depends_on_id FROM dependencies WHERE task_id = ? ORDER BY seq", (task_id,)
        ).fetchall()
        blocks = conn.execute(
            "SELECT task_id FROM dependencies WHERE depends_on_id = ? ORDER BY seq", (task_id,)
        ).fetchall()
        return {
            "depends_on": [r[0] for r in depends_on],
            "blocks": [r[0] for r in blocks],
        }
