"""
tasktrail entity store -- canonical records with referential and graph integrity.

Every mutation is one transaction: validate input, check references, allocate
the id, run graph checks, write the row (FTS triggers fire in the same
transaction), append exactly one audit event and enqueue the affected
entities for embedding. Commit listeners hear about the committed entities
afterwards; a failing listener is logged and never undoes the write.

Usage:
    store = EntityStore(Database(path))
    store.init_project("my-project")
    task = store.create_task(title="Write docs", priority=1)
    store.add_dependency(task.id, other.id)
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple

from tasktrail.audit import AuditLog
from tasktrail.db import ENQUEUE_SQL, Database, utcnow
from tasktrail.errors import AllocationError, NotFoundError, ValidationError
from tasktrail.graph import DependencyGraph
from tasktrail.ids import IdAllocator
from tasktrail.models import (
    COMMENT,
    DEPENDENCY,
    EPIC,
    PROJECT,
    SUBTASK,
    TASK,
    Comment,
    CommentCreate,
    CommentUpdate,
    Dependency,
    Epic,
    EpicCompletion,
    EpicCreate,
    EpicStatus,
    EpicUpdate,
    Project,
    Task,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
    parse_input,
)

logger = logging.getLogger("tasktrail.store")

PROJECT_ID = "PROJ-1"

# Columns an update may never set to NULL.
_NOT_NULL = ("title", "status", "priority", "tags", "content")


class CommitFact(NamedTuple):
    """An entity touched by a committed mutation. op is 'upsert' or 'delete'."""

    entity_id: str
    entity_type: str
    op: str


CommitListener = Callable[[List[CommitFact]], None]


def kind_of(entity_id: str) -> Optional[str]:
    """Guess the table family from an id prefix (TASK covers subtasks)."""
    prefix = entity_id.split("-", 1)[0].upper()
    return {"EPIC": EPIC, "TASK": TASK, "CMT": COMMENT, "DEP": DEPENDENCY, "PROJ": PROJECT}.get(prefix)


def epic_from_row(row: sqlite3.Row) -> Epic:
    return Epic(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        priority=row["priority"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def task_from_row(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        epic_id=row["epic_id"],
        parent_task_id=row["parent_task_id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        priority=row["priority"],
        tags=json.loads(row["tags"] or "[]"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def comment_from_row(row: sqlite3.Row) -> Comment:
    return Comment(
        id=row["id"],
        task_id=row["task_id"],
        author=row["author"],
        content=row["content"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def searchable_text(db: Database, entity_id: str) -> Optional[Tuple[str, str]]:
    """(entity_type, text to embed) for an epic, task, subtask or comment; None if gone."""
    kind = kind_of(entity_id)
    if kind == EPIC:
        row = db.fetchone("SELECT title, description FROM epics WHERE id = ?", (entity_id,))
        if row is None:
            return None
        return EPIC, "\n".join(p for p in (row["title"], row["description"]) if p)
    if kind == TASK:
        row = db.fetchone(
            "SELECT title, description, tags, parent_task_id FROM tasks WHERE id = ?", (entity_id,)
        )
        if row is None:
            return None
        tags = json.loads(row["tags"] or "[]")
        parts = [row["title"], row["description"], " ".join(tags) if tags else None]
        return (SUBTASK if row["parent_task_id"] else TASK), "\n".join(p for p in parts if p)
    if kind == COMMENT:
        row = db.fetchone("SELECT content FROM comments WHERE id = ?", (entity_id,))
        if row is None:
            return None
        return COMMENT, row["content"]
    return None


class EntityStore:
    """Create / update / delete / get for every entity kind."""

    def __init__(
        self,
        db: Database,
        ids: Optional[IdAllocator] = None,
        graph: Optional[DependencyGraph] = None,
        audit: Optional[AuditLog] = None,
        outbox: bool = True,
    ):
        self.db = db
        self.ids = ids or IdAllocator(db)
        self.graph = graph or DependencyGraph()
        self.audit = audit or AuditLog(db)
        self.outbox = outbox
        self._listeners: List[CommitListener] = []

    # ------------------------------------------------------------------
    # Commit plumbing
    # ------------------------------------------------------------------

    def add_commit_listener(self, listener: CommitListener) -> None:
        self._listeners.append(listener)

    def remove_commit_listener(self, listener: CommitListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @contextmanager
    def _mutation(self) -> Iterator[Tuple[sqlite3.Connection, List[CommitFact]]]:
        facts: List[CommitFact] = []
        with self.db.transaction() as conn:
            yield conn, facts
        if facts:
            self._notify(facts)

    def _notify(self, facts: List[CommitFact]) -> None:
        for listener in list(self._listeners):
            try:
                listener(list(facts))
            except Exception as e:
                logger.warning("Commit listener %r failed: %s", listener, e, exc_info=True)

    def _enqueue(
        self,
        conn: sqlite3.Connection,
        facts: List[CommitFact],
        entity_id: str,
        entity_type: str,
        op: str,
        now: str,
    ) -> None:
        facts.append(CommitFact(entity_id, entity_type, op))
        if not self.outbox:
            return
        conn.execute(ENQUEUE_SQL, (entity_id, entity_type, op, now))

    # ------------------------------------------------------------------
    # Reference checks
    # ------------------------------------------------------------------

    def _require_project(self, conn: sqlite3.Connection) -> str:
        row = conn.execute("SELECT id FROM projects LIMIT 1").fetchone()
        if row is None:
            raise AllocationError("Store is not initialized; run 'tasktrail init' first", entity_type=PROJECT)
        return row[0]

    @staticmethod
    def _epic_row(conn: sqlite3.Connection, epic_id: str) -> Optional[sqlite3.Row]:
        return conn.execute("SELECT * FROM epics WHERE id = ?", (epic_id,)).fetchone()

    @staticmethod
    def _task_row(conn: sqlite3.Connection, task_id: str) -> Optional[sqlite3.Row]:
        return conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()

    @staticmethod
    def _comment_row(conn: sqlite3.Connection, comment_id: str) -> Optional[sqlite3.Row]:
        return conn.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()

    def _check_epic_ref(self, conn, epic_id: Optional[str], entity_type: str, entity_id: Optional[str] = None) -> None:
        if epic_id is not None and self._epic_row(conn, epic_id) is None:
            raise ValidationError(
                f"Epic not found: {epic_id}", entity_type=entity_type, entity_id=entity_id, field="epic_id"
            )

    def _check_task_ref(self, conn, task_id: Optional[str], field: str, entity_type: str,
                        entity_id: Optional[str] = None) -> None:
        if task_id is not None and self._task_row(conn, task_id) is None:
            raise ValidationError(
                f"Task not found: {task_id}", entity_type=entity_type, entity_id=entity_id, field=field
            )

    @staticmethod
    def _reject_nulls(changes: Dict[str, Any], entity_type: str, entity_id: str) -> None:
        if not changes:
            raise ValidationError("No fields to update", entity_type=entity_type, entity_id=entity_id)
        for key, value in changes.items():
            if key in _NOT_NULL and value is None:
                raise ValidationError(
                    f"Field '{key}' cannot be cleared", entity_type=entity_type, entity_id=entity_id, field=key
                )

    # ------------------------------------------------------------------
    # Project
    # ------------------------------------------------------------------

    def init_project(self, name: str) -> Project:
        if not name or not name.strip():
            raise ValidationError("Project name is required", entity_type=PROJECT, field="name")
        with self._mutation() as (conn, facts):
            existing = conn.execute("SELECT id FROM projects LIMIT 1").fetchone()
            if existing is not None:
                raise ValidationError("Store is already initialized", entity_type=PROJECT, entity_id=existing[0])
            now = utcnow()
            conn.execute(
                "INSERT INTO projects (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (PROJECT_ID, name.strip(), now, now),
            )
            project = Project(id=PROJECT_ID, name=name.strip(), created_at=now, updated_at=now)
            self.audit.record(conn, PROJECT, PROJECT_ID, "create", {"snapshot": project.model_dump()}, now)
        logger.info("Initialized project %r", project.name)
        return project

    def get_project(self) -> Optional[Project]:
        row = self.db.fetchone("SELECT * FROM projects LIMIT 1")
        if row is None:
            return None
        return Project(id=row["id"], name=row["name"], created_at=row["created_at"], updated_at=row["updated_at"])

    # ------------------------------------------------------------------
    # Epics
    # ------------------------------------------------------------------

    def create_epic(self, title: str, description: Optional[str] = None, status: Optional[str] = None,
                    priority: Optional[int] = None) -> Epic:
        data = {"title": title, "description": description, "status": status, "priority": priority}
        inp = parse_input(EpicCreate, {k: v for k, v in data.items() if v is not None}, entity_type=EPIC)
        with self._mutation() as (conn, facts):
            project_id = self._require_project(conn)
            epic_id, seq = self.ids.allocate(conn, EPIC)
            now = utcnow()
            conn.execute(
                "INSERT INTO epics (id, seq, project_id, title, description, status, priority, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (epic_id, seq, project_id, inp.title, inp.description, inp.status, inp.priority, now, now),
            )
            epic = epic_from_row(self._epic_row(conn, epic_id))
            self.audit.record(conn, EPIC, epic_id, "create", {"snapshot": epic.model_dump()}, now)
            self._enqueue(conn, facts, epic_id, EPIC, "upsert", now)
        return epic

    def update_epic(self, epic_id: str, **fields) -> Epic:
        inp = parse_input(EpicUpdate, fields, entity_type=EPIC, entity_id=epic_id)
        changes = inp.model_dump(exclude_unset=True)
        self._reject_nulls(changes, EPIC, epic_id)
        with self._mutation() as (conn, facts):
            row = self._epic_row(conn, epic_id)
            if row is None:
                raise NotFoundError(f"Epic not found: {epic_id}", entity_type=EPIC, entity_id=epic_id)
            before = epic_from_row(row)
            now = utcnow()
            assignments = ", ".join(f"{k} = ?" for k in changes)
            conn.execute(
                f"UPDATE epics SET {assignments}, updated_at = ? WHERE id = ?",
                list(changes.values()) + [now, epic_id],
            )
            after = epic_from_row(self._epic_row(conn, epic_id))
            diff = self.audit.diff(before.model_dump(), after.model_dump())
            self.audit.record(conn, EPIC, epic_id, "update", {"changes": diff}, now)
            if "title" in diff or "description" in diff:
                self._enqueue(conn, facts, epic_id, EPIC, "upsert", now)
        return after

    def delete_epic(self, epic_id: str) -> Epic:
        with self._mutation() as (conn, facts):
            row = self._epic_row(conn, epic_id)
            if row is None:
                raise NotFoundError(f"Epic not found: {epic_id}", entity_type=EPIC, entity_id=epic_id)
            epic = epic_from_row(row)
            now = utcnow()
            detached = [r[0] for r in conn.execute(
                "SELECT id FROM tasks WHERE epic_id = ? ORDER BY seq", (epic_id,)
            ).fetchall()]
            conn.execute("UPDATE tasks SET epic_id = NULL, updated_at = ? WHERE epic_id = ?", (now, epic_id))
            conn.execute("DELETE FROM epics WHERE id = ?", (epic_id,))
            self.audit.record(
                conn, EPIC, epic_id, "delete",
                {"snapshot": epic.model_dump(), "cascade": {"detached_tasks": detached}}, now,
            )
            self._enqueue(conn, facts, epic_id, EPIC, "delete", now)
        return epic

    def complete_epic(self, epic_id: str) -> EpicCompletion:
        """Mark an epic completed and archive its tasks and everything under them.

        One event is recorded on the epic; the archived ids ride in its cascade payload.
        """
        with self._mutation() as (conn, facts):
            row = self._epic_row(conn, epic_id)
            if row is None:
                raise NotFoundError(f"Epic not found: {epic_id}", entity_type=EPIC, entity_id=epic_id)
            before = epic_from_row(row)
            if before.status == EpicStatus.COMPLETED.value:
                raise ValidationError(
                    f"Epic is already completed: {epic_id}", entity_type=EPIC, entity_id=epic_id, field="status"
                )
            now = utcnow()
            tasks = [r[0] for r in conn.execute(
                "SELECT id FROM tasks WHERE epic_id = ? AND parent_task_id IS NULL ORDER BY seq", (epic_id,)
            ).fetchall()]
            subtasks = [r[0] for r in conn.execute(
                """
                WITH RECURSIVE below(id) AS (
                    SELECT id FROM tasks WHERE epic_id = ? AND parent_task_id IS NULL
                    UNION
                    SELECT t.id FROM tasks t JOIN below b ON t.parent_task_id = b.id
                )
                SELECT t.id FROM tasks t JOIN below b ON t.id = b.id
                WHERE t.parent_task_id IS NOT NULL ORDER BY t.seq
                """,
                (epic_id,),
            ).fetchall()]
            archived = tasks + subtasks
            if archived:
                conn.execute(
                    f"UPDATE tasks SET status = ?, updated_at = ? WHERE id IN ({', '.join('?' * len(archived))})",
                    [TaskStatus.ARCHIVED.value, now, *archived],
                )
            conn.execute(
                "UPDATE epics SET status = ?, updated_at = ? WHERE id = ?",
                (EpicStatus.COMPLETED.value, now, epic_id),
            )
            after = epic_from_row(self._epic_row(conn, epic_id))
            self.audit.record(
                conn, EPIC, epic_id, "update",
                {
                    "changes": self.audit.diff(before.model_dump(), after.model_dump()),
                    "cascade": {"archived_tasks": tasks, "archived_subtasks": subtasks},
                },
                now,
            )
        logger.info("Completed epic %s (archived %d tasks, %d subtasks)", epic_id, len(tasks), len(subtasks))
        return EpicCompletion(epic=after, archived_tasks=tasks, archived_subtasks=subtasks)

    def get_epic(self, epic_id: str) -> Epic:
        row = self.db.fetchone("SELECT * FROM epics WHERE id = ?", (epic_id,))
        if row is None:
            raise NotFoundError(f"Epic not found: {epic_id}", entity_type=EPIC, entity_id=epic_id)
        return epic_from_row(row)

    def list_epics(self) -> List[Epic]:
        return [epic_from_row(r) for r in self.db.fetchall("SELECT * FROM epics ORDER BY seq")]

    # ------------------------------------------------------------------
    # Tasks and subtasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        status: Optional[str] = None,
        priority: Optional[int] = None,
        epic_id: Optional[str] = None,
        parent_task_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Task:
        data = {
            "title": title, "description": description, "status": status, "priority": priority,
            "epic_id": epic_id, "parent_task_id": parent_task_id, "tags": tags,
        }
        kind = SUBTASK if parent_task_id else TASK
        inp = parse_input(TaskCreate, {k: v for k, v in data.items() if v is not None}, entity_type=kind)
        with self._mutation() as (conn, facts):
            project_id = self._require_project(conn)
            self._check_epic_ref(conn, inp.epic_id, kind)
            self._check_task_ref(conn, inp.parent_task_id, "parent_task_id", kind)
            task_id, seq = self.ids.allocate(conn, TASK)
            now = utcnow()
            conn.execute(
                "INSERT INTO tasks (id, seq, project_id, epic_id, parent_task_id, title, description, status, "
                "priority, tags, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (task_id, seq, project_id, inp.epic_id, inp.parent_task_id, inp.title, inp.description,
                 inp.status, inp.priority, json.dumps(inp.tags or []), now, now),
            )
            task = task_from_row(self._task_row(conn, task_id))
            self.audit.record(conn, kind, task_id, "create", {"snapshot": task.model_dump()}, now)
            self._enqueue(conn, facts, task_id, kind, "upsert", now)
        return task

    def create_subtask(self, parent_task_id: str, title: str, **fields) -> Task:
        if not parent_task_id:
            raise ValidationError("Subtasks need a parent task", entity_type=SUBTASK, field="parent_task_id")
        return self.create_task(title=title, parent_task_id=parent_task_id, **fields)

    def update_task(self, task_id: str, **fields) -> Task:
        inp = parse_input(TaskUpdate, fields, entity_type=TASK, entity_id=task_id)
        changes = inp.model_dump(exclude_unset=True)
        self._reject_nulls(changes, TASK, task_id)
        with self._mutation() as (conn, facts):
            row = self._task_row(conn, task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}", entity_type=TASK, entity_id=task_id)
            before = task_from_row(row)
            kind = before.kind
            if "epic_id" in changes:
                self._check_epic_ref(conn, changes["epic_id"], kind, task_id)
            if changes.get("parent_task_id") is not None:
                parent_id = changes["parent_task_id"]
                self._check_task_ref(conn, parent_id, "parent_task_id", kind, task_id)
                self.graph.check_parent_chain(conn, task_id, parent_id)
            if "tags" in changes:
                changes["tags"] = json.dumps(changes["tags"])
            now = utcnow()
            assignments = ", ".join(f"{k} = ?" for k in changes)
            conn.execute(
                f"UPDATE tasks SET {assignments}, updated_at = ? WHERE id = ?",
                list(changes.values()) + [now, task_id],
            )
            after = task_from_row(self._task_row(conn, task_id))
            diff = self.audit.diff(before.model_dump(), after.model_dump())
            self.audit.record(conn, after.kind, task_id, "update", {"changes": diff}, now)
            if {"title", "description", "tags", "parent_task_id"} & set(diff):
                self._enqueue(conn, facts, task_id, after.kind, "upsert", now)
        return after

    def delete_task(self, task_id: str) -> Task:
        """Delete a task or subtask.

        Its comments and incident dependency edges go with it; its children
        survive as top-level tasks.
        """
        with self._mutation() as (conn, facts):
            row = self._task_row(conn, task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}", entity_type=TASK, entity_id=task_id)
            task = task_from_row(row)
            now = utcnow()

            comment_ids = [r[0] for r in conn.execute(
                "SELECT id FROM comments WHERE task_id = ? ORDER BY seq", (task_id,)
            ).fetchall()]
            conn.execute("DELETE FROM comments WHERE task_id = ?", (task_id,))
            removed_deps = self.graph.remove_incident(conn, task_id)
            orphans = [r[0] for r in conn.execute(
                "SELECT id FROM tasks WHERE parent_task_id = ? ORDER BY seq", (task_id,)
            ).fetchall()]
            conn.execute(
                "UPDATE tasks SET parent_task_id = NULL, updated_at = ? WHERE parent_task_id = ?", (now, task_id)
            )
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))

            cascade = {
                "comments": comment_ids,
                "dependencies": [d["id"] for d in removed_deps],
                "orphaned_subtasks": orphans,
            }
            self.audit.record(
                conn, task.kind, task_id, "delete", {"snapshot": task.model_dump(), "cascade": cascade}, now
            )
            self._enqueue(conn, facts, task_id, task.kind, "delete", now)
            for comment_id in comment_ids:
                self._enqueue(conn, facts, comment_id, COMMENT, "delete", now)
            for orphan_id in orphans:
                self._enqueue(conn, facts, orphan_id, TASK, "upsert", now)
        return task

    def get_task(self, task_id: str) -> Task:
        row = self.db.fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}", entity_type=TASK, entity_id=task_id)
        return task_from_row(row)

    def list_subtasks(self, parent_task_id: str) -> List[Task]:
        self.get_task(parent_task_id)
        rows = self.db.fetchall("SELECT * FROM tasks WHERE parent_task_id = ? ORDER BY seq", (parent_task_id,))
        return [task_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def add_comment(self, task_id: str, author: str, content: str) -> Comment:
        inp = parse_input(CommentCreate, {"task_id": task_id, "author": author, "content": content},
                          entity_type=COMMENT)
        with self._mutation() as (conn, facts):
            self._require_project(conn)
            self._check_task_ref(conn, inp.task_id, "task_id", COMMENT)
            comment_id, seq = self.ids.allocate(conn, COMMENT)
            now = utcnow()
            conn.execute(
                "INSERT INTO comments (id, seq, task_id, author, content, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (comment_id, seq, inp.task_id, inp.author, inp.content, now, now),
            )
            comment = comment_from_row(self._comment_row(conn, comment_id))
            self.audit.record(conn, COMMENT, comment_id, "create", {"snapshot": comment.model_dump()}, now)
            self._enqueue(conn, facts, comment_id, COMMENT, "upsert", now)
        return comment

    def update_comment(self, comment_id: str, content: str) -> Comment:
        inp = parse_input(CommentUpdate, {"content": content}, entity_type=COMMENT, entity_id=comment_id)
        with self._mutation() as (conn, facts):
            row = self._comment_row(conn, comment_id)
            if row is None:
                raise NotFoundError(f"Comment not found: {comment_id}", entity_type=COMMENT, entity_id=comment_id)
            before = comment_from_row(row)
            now = utcnow()
            conn.execute("UPDATE comments SET content = ?, updated_at = ? WHERE id = ?", (inp.content, now, comment_id))
            after = comment_from_row(self._comment_row(conn, comment_id))
            diff = self.audit.diff(before.model_dump(), after.model_dump())
            self.audit.record(conn, COMMENT, comment_id, "update", {"changes": diff}, now)
            if diff:
                self._enqueue(conn, facts, comment_id, COMMENT, "upsert", now)
        return after

    def delete_comment(self, comment_id: str) -> Comment:
        with self._mutation() as (conn, facts):
            row = self._comment_row(conn, comment_id)
            if row is None:
                raise NotFoundError(f"Comment not found: {comment_id}", entity_type=COMMENT, entity_id=comment_id)
            comment = comment_from_row(row)
            now = utcnow()
            conn.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
            self.audit.record(conn, COMMENT, comment_id, "delete", {"snapshot": comment.model_dump()}, now)
            self._enqueue(conn, facts, comment_id, COMMENT, "delete", now)
        return comment

    def get_comment(self, comment_id: str) -> Comment:
        row = self.db.fetchone("SELECT * FROM comments WHERE id = ?", (comment_id,))
        if row is None:
            raise NotFoundError(f"Comment not found: {comment_id}", entity_type=COMMENT, entity_id=comment_id)
        return comment_from_row(row)

    def list_comments(self, task_id: str) -> List[Comment]:
        self.get_task(task_id)
        rows = self.db.fetchall("SELECT * FROM comments WHERE task_id = ? ORDER BY seq", (task_id,))
        return [comment_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: str, depends_on_id: str) -> Dependency:
        """Record that task_id depends on depends_on_id. Cycles raise CycleError."""
        with self._mutation() as (conn, facts):
            self._check_task_ref(conn, task_id, "task_id", DEPENDENCY)
            self._check_task_ref(conn, depends_on_id, "depends_on_id", DEPENDENCY)
            dep_id, seq = self.ids.allocate(conn, DEPENDENCY)
            now = utcnow()
            self.graph.add_edge(conn, task_id, depends_on_id, dep_id, seq, now)
            dep = Dependency(id=dep_id, task_id=task_id, depends_on_id=depends_on_id, created_at=now)
            self.audit.record(conn, DEPENDENCY, dep_id, "create", {"snapshot": dep.model_dump()}, now)
        return dep

    def remove_dependency(self, task_id: str, depends_on_id: str) -> Dependency:
        with self._mutation() as (conn, facts):
            removed = self.graph.remove_edge(conn, task_id, depends_on_id)
            dep = Dependency(**removed)
            self.audit.record(conn, DEPENDENCY, dep.id, "delete", {"snapshot": dep.model_dump()}, utcnow())
        return dep

    def get_dependencies(self, task_id: str) -> Dict[str, List[str]]:
        """{"depends_on": [...], "blocks": [...]} for an existing task."""
        self.get_task(task_id)
        with self.db.reading() as conn:
            return self.graph.edges_of(conn, task_id)

    # ------------------------------------------------------------------
    # Generic lookup
    # ------------------------------------------------------------------

    def get_entity(self, entity_id: str):
        """Fetch any entity by id. Raises NotFoundError."""
        kind = kind_of(entity_id)
        if kind == EPIC:
            return self.get_epic(entity_id)
        if kind == TASK:
            return self.get_task(entity_id)
        if kind == COMMENT:
            return self.get_comment(entity_id)
        if kind == DEPENDENCY:
            row = self.db.fetchone(
                "SELECT id, task_id, depends_on_id, created_at FROM dependencies WHERE id = ?", (entity_id,)
            )
            if row is not None:
                return Dependency(**dict(row))
        if kind == PROJECT:
            project = self.get_project()
            if project is not None and project.id == entity_id:
                return project
        raise NotFoundError(f"Entity not found: {entity_id}", entity_type=kind, entity_id=entity_id)

    def exists(self, entity_id: str) -> bool:
        try:
            self.get_entity(entity_id)
        except NotFoundError:
            return False
        return True
