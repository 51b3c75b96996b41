"""Tests for the tasktrail CLI."""
import json

import pytest

from tasktrail.cli import build_parser, main


def run(capsys, project_dir, *argv):
    """Run the CLI against project_dir and return (stdout, stderr)."""
    args = list(argv)
    # -C/--json belong to the leaf command, so append them.
    main(args + ["-C", str(project_dir)])
    out = capsys.readouterr()
    return out.out, out.err


def run_json(capsys, project_dir, *argv):
    out, _ = run(capsys, project_dir, *argv, "--json")
    return json.loads(out)


@pytest.fixture
def cli_store(capsys, project_dir):
    run(capsys, project_dir, "init")
    return project_dir


class TestParser:
    def test_all_commands_registered(self):
        parser = build_parser()
        for argv in (
            ["init"], ["wipe", "--yes"], ["status"], ["epic", "list"], ["epic", "complete", "EPIC-1"],
            ["task", "show", "TASK-1"],
            ["subtask", "create", "TASK-1", "x"], ["comment", "add", "TASK-1", "hi"], ["dep", "show", "TASK-1"],
            ["list"], ["ready"], ["search", "x"], ["similar", "x"], ["history"], ["reindex"], ["sync"],
        ):
            assert parser.parse_args(argv).command == argv[0]

    def test_no_command_prints_help(self, capsys):
        main([])
        assert "usage" in capsys.readouterr().out.lower()


class TestInit:
    def test_init_and_status(self, capsys, project_dir):
        out, _ = run(capsys, project_dir, "init", "--name", "demo")
        assert "Initialized project 'demo'" in out
        info = run_json(capsys, project_dir, "status")
        assert info["project"] == "demo"

    def test_init_twice_exits_1(self, capsys, cli_store):
        with pytest.raises(SystemExit) as exc:
            run(capsys, cli_store, "init")
        assert exc.value.code == 1
        assert "already initialized" in capsys.readouterr().err

    def test_uninitialized_store(self, capsys, project_dir):
        with pytest.raises(SystemExit):
            run(capsys, project_dir, "list")
        assert "tasktrail init" in capsys.readouterr().err

    def test_wipe_requires_yes(self, capsys, cli_store):
        with pytest.raises(SystemExit):
            run(capsys, cli_store, "wipe")
        run(capsys, cli_store, "wipe", "--yes")
        with pytest.raises(SystemExit):
            run(capsys, cli_store, "list")


class TestEntities:
    def test_epic_task_subtask_comment_flow(self, capsys, cli_store):
        epic = run_json(capsys, cli_store, "epic", "create", "Auth overhaul", "-p", "1")
        assert epic["id"] == "EPIC-1"
        task = run_json(capsys, cli_store, "task", "create", "Fix login timeout", "--epic", "EPIC-1",
                        "--tags", "auth,bug")
        assert task["tags"] == ["auth", "bug"]
        sub = run_json(capsys, cli_store, "subtask", "create", task["id"], "Reproduce")
        assert sub["parent_task_id"] == task["id"]
        comment = run_json(capsys, cli_store, "comment", "add", task["id"], "proxy", "drops", "it", "-a", "ann")
        assert comment["content"] == "proxy drops it"

        shown = run_json(capsys, cli_store, "task", "show", task["id"])
        assert [s["id"] for s in shown["subtasks"]] == [sub["id"]]
        assert [c["id"] for c in shown["comments"]] == [comment["id"]]

        updated = run_json(capsys, cli_store, "task", "update", task["id"], "-s", "in-progress", "--epic", "")
        assert updated["status"] == "in_progress"
        assert updated["epic_id"] is None

    def test_validation_error_json(self, capsys, cli_store):
        with pytest.raises(SystemExit) as exc:
            run(capsys, cli_store, "task", "create", "Bad", "-p", "9", "--json")
        assert exc.value.code == 1
        err = json.loads(capsys.readouterr().err)
        assert err["error"] == "ValidationError"
        assert err["field"] == "priority"

    def test_dependency_cycle_reported(self, capsys, cli_store):
        run(capsys, cli_store, "task", "create", "A")
        run(capsys, cli_store, "task", "create", "B")
        run(capsys, cli_store, "dep", "add", "TASK-1", "TASK-2")
        with pytest.raises(SystemExit):
            run(capsys, cli_store, "dep", "add", "TASK-2", "TASK-1", "--json")
        err = json.loads(capsys.readouterr().err)
        assert err["error"] == "CycleError"
        assert err["path"] == ["TASK-2", "TASK-1", "TASK-2"]
        deps = run_json(capsys, cli_store, "dep", "show", "TASK-2")
        assert deps == {"depends_on": [], "blocks": ["TASK-1"]}

    def test_epic_complete(self, capsys, cli_store):
        run(capsys, cli_store, "epic", "create", "Auth overhaul")
        run(capsys, cli_store, "task", "create", "Fix login", "--epic", "EPIC-1")
        run(capsys, cli_store, "subtask", "create", "TASK-1", "Reproduce")
        out, _ = run(capsys, cli_store, "epic", "complete", "EPIC-1")
        assert "archived 1 tasks, 1 subtasks" in out
        assert run_json(capsys, cli_store, "task", "show", "TASK-2")["task"]["status"] == "archived"
        with pytest.raises(SystemExit):
            run(capsys, cli_store, "epic", "complete", "EPIC-1")
        assert "already completed" in capsys.readouterr().err

    def test_not_found(self, capsys, cli_store):
        with pytest.raises(SystemExit):
            run(capsys, cli_store, "epic", "show", "EPIC-9")
        assert "Epic not found" in capsys.readouterr().err


class TestQueries:
    def test_list_sort_and_page(self, capsys, cli_store):
        for p in (4, 1, 2):
            run(capsys, cli_store, "task", "create", f"P{p}", "-p", str(p))
        page = run_json(capsys, cli_store, "list", "--sort", "priority:asc", "--limit", "2")
        assert [i["priority"] for i in page["items"]] == [1, 2]
        assert page["total"] == 3
        out, _ = run(capsys, cli_store, "list")
        assert "P4" in out and "1-3 of 3" in out

    def test_ready(self, capsys, cli_store):
        run(capsys, cli_store, "task", "create", "A")
        run(capsys, cli_store, "task", "create", "B")
        run(capsys, cli_store, "dep", "add", "TASK-2", "TASK-1")
        ready = run_json(capsys, cli_store, "ready")
        assert [r["task"]["id"] for r in ready] == ["TASK-1"]

    def test_search_keyword(self, capsys, cli_store):
        run(capsys, cli_store, "task", "create", "Fix login timeout")
        result = run_json(capsys, cli_store, "search", "login", "-m", "keyword")
        assert [h["id"] for h in result["results"]] == ["TASK-1"]
        out, _ = run(capsys, cli_store, "search", "nothing-matches-this")
        assert "No results" in out

    def test_writes_are_embedded_before_exit(self, capsys, cli_store):
        run(capsys, cli_store, "task", "create", "Fix login timeout")
        result = run_json(capsys, cli_store, "search", "Fix", "login", "timeout", "-m", "semantic")
        assert result["semantic_enriched"] is True
        assert [h["id"] for h in result["results"]] == ["TASK-1"]

    def test_sync_then_similar(self, capsys, cli_store):
        run(capsys, cli_store, "task", "create", "Fix login timeout")
        synced = run_json(capsys, cli_store, "sync")
        assert synced["processed"]["upserted"] == 0
        assert (synced["queue"]["pending"], synced["queue"]["vectors"]) == (0, 1)
        hits = run_json(capsys, cli_store, "similar", "login", "timeout", "--threshold", "0.1")
        assert [h["id"] for h in hits] == ["TASK-1"]

    def test_history(self, capsys, cli_store):
        run(capsys, cli_store, "task", "create", "A")
        run(capsys, cli_store, "task", "update", "TASK-1", "-p", "0")
        page = run_json(capsys, cli_store, "history", "--id", "TASK-1")
        assert [e["action"] for e in page["events"]] == ["create", "update"]

    def test_reindex(self, capsys, cli_store):
        run(capsys, cli_store, "task", "create", "A")
        result = run_json(capsys, cli_store, "reindex", "--drain")
        assert result["lexical"] == 1
        assert result["sync"]["upserted"] == 1
