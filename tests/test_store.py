"""Tests for EntityStore -- CRUD, validation, referential integrity, cascades, outbox."""
import pytest

from tasktrail.errors import AllocationError, NotFoundError, ValidationError
from tasktrail.models import HistoryQuery
from tasktrail.store import EntityStore, searchable_text


def _queue(store):
    rows = store.db.fetchall("SELECT entity_id, op, version FROM embedding_queue ORDER BY entity_id")
    return {r["entity_id"]: (r["op"], r["version"]) for r in rows}


class TestProject:
    def test_init_twice_fails(self, store):
        with pytest.raises(ValidationError):
            store.init_project("again")

    def test_writes_require_project(self, db):
        s = EntityStore(db)
        with pytest.raises(AllocationError):
            s.create_task("Too early")
        assert s.get_project() is None

    def test_writes_after_wipe_need_init(self, store):
        task = store.create_task("Before wipe")
        store.db.wipe()
        with pytest.raises(AllocationError):
            store.create_epic("After wipe")
        with pytest.raises(AllocationError):
            store.create_task("After wipe")
        store.init_project("again")
        assert store.create_task("Fresh").id == task.id

    def test_project_record(self, store):
        project = store.get_project()
        assert project.id == "PROJ-1"
        assert project.name == "test-project"


class TestEpics:
    def test_create_defaults(self, store):
        epic = store.create_epic("Auth overhaul")
        assert epic.id == "EPIC-1"
        assert epic.status == "todo"
        assert epic.priority == 2
        assert store.get_epic(epic.id) == epic

    def test_update(self, store):
        epic = store.create_epic("Auth overhaul")
        updated = store.update_epic(epic.id, status="In-Progress", priority=0, description="SSO too")
        assert updated.status == "in_progress"
        assert updated.priority == 0
        assert updated.description == "SSO too"
        assert updated.updated_at >= epic.updated_at

    def test_epic_rejects_wont_fix(self, store):
        epic = store.create_epic("E")
        with pytest.raises(ValidationError) as exc:
            store.update_epic(epic.id, status="wont_fix")
        assert exc.value.field == "status"

    def test_delete_detaches_tasks(self, store):
        epic = store.create_epic("E")
        task = store.create_task("T", epic_id=epic.id)
        store.delete_epic(epic.id)
        assert store.get_task(task.id).epic_id is None
        with pytest.raises(NotFoundError):
            store.get_epic(epic.id)

    def test_complete_archives_tasks_and_subtasks(self, store):
        epic = store.create_epic("Auth overhaul")
        login = store.create_task("Fix login", epic_id=epic.id, status="in_progress")
        logout = store.create_task("Fix logout", epic_id=epic.id, status="completed")
        repro = store.create_subtask(login.id, "Reproduce")
        trace = store.create_subtask(repro.id, "Capture trace")
        other = store.create_task("Unrelated")
        events_before = store.audit.query().total

        done = store.complete_epic(epic.id)

        assert done.epic.status == "completed"
        assert done.archived_tasks == [login.id, logout.id]
        assert done.archived_subtasks == [repro.id, trace.id]
        for t in (login, logout, repro, trace):
            assert store.get_task(t.id).status == "archived"
        assert store.get_task(other.id).status == "todo"
        assert store.audit.query().total == events_before + 1
        event = store.audit.query(HistoryQuery(entity_id=epic.id)).events[-1]
        assert event.action == "update"
        assert event.payload["changes"]["status"] == {"from": "todo", "to": "completed"}
        assert event.payload["cascade"] == {
            "archived_tasks": [login.id, logout.id],
            "archived_subtasks": [repro.id, trace.id],
        }

    def test_complete_twice_rejected(self, store):
        epic = store.create_epic("E")
        store.complete_epic(epic.id)
        with pytest.raises(ValidationError) as exc:
            store.complete_epic(epic.id)
        assert exc.value.field == "status"
        with pytest.raises(NotFoundError):
            store.complete_epic("EPIC-404")

    def test_list_epics(self, store):
        store.create_epic("One")
        store.create_epic("Two")
        assert [e.title for e in store.list_epics()] == ["One", "Two"]


class TestTasks:
    def test_create_with_all_fields(self, store):
        epic = store.create_epic("E")
        task = store.create_task(
            "  Fix login timeout  ", description="Sessions drop after 5m", status="in_progress",
            priority=0, epic_id=epic.id, tags=["auth", "bug", "auth"],
        )
        assert task.title == "Fix login timeout"
        assert task.tags == ["auth", "bug"]
        assert task.kind == "task"
        assert store.get_task(task.id) == task

    @pytest.mark.parametrize("fields, field", [
        ({"title": ""}, "title"),
        ({"title": "ok", "priority": 6}, "priority"),
        ({"title": "ok", "priority": -1}, "priority"),
        ({"title": "ok", "status": "done"}, "status"),
        ({"title": "ok", "epic_id": "EPIC-42"}, "epic_id"),
        ({"title": "ok", "parent_task_id": "TASK-42"}, "parent_task_id"),
    ])
    def test_create_validation(self, store, fields, field):
        with pytest.raises(ValidationError) as exc:
            store.create_task(**fields)
        assert exc.value.field == field

    def test_update_rejects_unknown_field(self, store):
        task = store.create_task("T")
        with pytest.raises(ValidationError):
            store.update_task(task.id, colour="red")

    def test_update_cannot_clear_title(self, store):
        task = store.create_task("T")
        with pytest.raises(ValidationError):
            store.update_task(task.id, title=None)

    def test_update_missing(self, store):
        with pytest.raises(NotFoundError):
            store.update_task("TASK-99", title="x")

    def test_detach_from_epic(self, store):
        epic = store.create_epic("E")
        task = store.create_task("T", epic_id=epic.id)
        assert store.update_task(task.id, epic_id=None).epic_id is None

    def test_delete_cascades(self, store):
        parent = store.create_task("Parent")
        child = store.create_subtask(parent.id, "Child")
        comment = store.add_comment(parent.id, "ann", "note")
        store.delete_task(parent.id)
        with pytest.raises(NotFoundError):
            store.get_task(parent.id)
        with pytest.raises(NotFoundError):
            store.get_comment(comment.id)
        orphan = store.get_task(child.id)
        assert orphan.parent_task_id is None
        assert orphan.kind == "task"

    def test_delete_missing(self, store):
        with pytest.raises(NotFoundError):
            store.delete_task("TASK-1")


class TestSubtasks:
    def test_subtask_owns_its_fields(self, store):
        epic = store.create_epic("E")
        parent = store.create_task("Parent", epic_id=epic.id, priority=0)
        child = store.create_subtask(parent.id, "Child")
        assert child.parent_task_id == parent.id
        assert child.kind == "subtask"
        # Nothing is inherited from the parent.
        assert child.epic_id is None
        assert child.priority == 2
        assert store.list_subtasks(parent.id) == [child]

    def test_subtask_needs_existing_parent(self, store):
        with pytest.raises(ValidationError):
            store.create_subtask("TASK-7", "Child")


class TestComments:
    def test_add_update_delete(self, store):
        task = store.create_task("T")
        comment = store.add_comment(task.id, "ann", "first")
        assert comment.id == "CMT-1"
        updated = store.update_comment(comment.id, "second")
        assert updated.content == "second"
        assert store.list_comments(task.id) == [updated]
        store.delete_comment(comment.id)
        assert store.list_comments(task.id) == []

    def test_comment_on_missing_task(self, store):
        with pytest.raises(ValidationError) as exc:
            store.add_comment("TASK-5", "ann", "hello")
        assert exc.value.field == "task_id"

    def test_empty_content_rejected(self, store):
        task = store.create_task("T")
        with pytest.raises(ValidationError):
            store.add_comment(task.id, "ann", "   ")


class TestGetEntity:
    def test_any_kind(self, store):
        epic = store.create_epic("E")
        task = store.create_task("T")
        comment = store.add_comment(task.id, "ann", "c")
        assert store.get_entity(epic.id) == epic
        assert store.get_entity(task.id) == task
        assert store.get_entity(comment.id) == comment
        assert store.get_entity("PROJ-1").name == "test-project"
        assert store.exists(task.id)
        assert not store.exists("TASK-99")
        with pytest.raises(NotFoundError):
            store.get_entity("NOPE-1")


class TestOutbox:
    def test_mutations_enqueue_in_same_transaction(self, store):
        epic = store.create_epic("E")
        task = store.create_task("T")
        assert _queue(store) == {epic.id: ("upsert", 1), task.id: ("upsert", 1)}

    def test_newer_write_supersedes(self, store):
        task = store.create_task("T")
        store.update_task(task.id, title="T2")
        store.delete_task(task.id)
        assert _queue(store)[task.id] == ("delete", 3)

    def test_status_only_update_not_enqueued(self, store):
        task = store.create_task("T")
        store.update_task(task.id, status="completed")
        assert _queue(store)[task.id] == ("upsert", 1)

    def test_rollback_leaves_queue_untouched(self, store):
        with pytest.raises(ValidationError):
            store.create_task("T", epic_id="EPIC-1")
        assert _queue(store) == {}

    def test_commit_listener_after_commit(self, store):
        seen = []

        def listener(facts):
            # The write is visible once listeners run.
            seen.extend((f.entity_id, f.op, store.exists(f.entity_id)) for f in facts)

        store.add_commit_listener(listener)
        task = store.create_task("T")
        assert seen == [(task.id, "upsert", True)]

    def test_failing_listener_does_not_undo_write(self, store):
        def boom(facts):
            raise RuntimeError("listener down")

        store.add_commit_listener(boom)
        task = store.create_task("T")
        assert store.exists(task.id)

    def test_outbox_disabled(self, db):
        s = EntityStore(db, outbox=False)
        s.init_project("p")
        s.create_task("T")
        assert db.scalar("SELECT COUNT(*) FROM embedding_queue") == 0


class TestSearchableText:
    def test_task_text_includes_tags(self, store):
        task = store.create_task("Login", description="Timeout", tags=["auth"])
        assert searchable_text(store.db, task.id) == ("task", "Login\nTimeout\nauth")

    def test_missing(self, store):
        assert searchable_text(store.db, "TASK-1") is None
