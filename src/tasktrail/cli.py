"""tasktrail CLI -- project setup, epics, tasks, comments, dependencies, listing, search and sync."""

import argparse
import json
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from tasktrail import config
from tasktrail.errors import TrailError
from tasktrail.models import parse_sort


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _dump(obj: Any) -> Any:
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if isinstance(obj, (list, tuple)):
        return [_dump(o) for o in obj]
    if isinstance(obj, dict):
        return {k: _dump(v) for k, v in obj.items()}
    return obj


def _print_json(obj: Any) -> None:
    print(json.dumps(_dump(obj), indent=2, default=str))


def _print_table(headers: Sequence[str], rows: List[Sequence[Any]]) -> None:
    cells = [[("" if v is None else str(v)) for v in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in cells:
        for i, v in enumerate(row):
            widths[i] = min(max(widths[i], len(v)), 60)
    print("  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)).rstrip())
    print("  ".join("-" * w for w in widths))
    for row in cells:
        print("  ".join(v[: widths[i]].ljust(widths[i]) for i, v in enumerate(row)).rstrip())


def _format_age(iso: Optional[str]) -> str:
    """Format an ISO timestamp as a human-readable age string."""
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    seconds = int((datetime.now(timezone.utc) - dt).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    days = seconds // 86400
    if days < 7:
        return f"{days}d ago"
    if days < 30:
        return f"{days // 7}w ago"
    return f"{days // 30}mo ago"


def _split(value: Optional[str]) -> Optional[List[str]]:
    """'a,b, c' -> ['a', 'b', 'c']; None stays None."""
    if value is None:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


def _fields(args, names: Sequence[str]) -> Dict[str, Any]:
    """Collect the options that were actually given."""
    return {n: getattr(args, n) for n in names if getattr(args, n, None) is not None}


def _show_record(args, record) -> None:
    if args.json:
        _print_json(record)
        return
    for key, value in record.model_dump().items():
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value)
        print(f"  {key + ':':<16}{'' if value is None else value}")


def _report(args, record, message: str) -> None:
    if args.json:
        _print_json(record)
    else:
        print(message)


def _open(args):
    from tasktrail.tracker import Tracker

    return Tracker.open(getattr(args, "dir", None))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_init(args):
    """Initialize a store in the working directory."""
    from tasktrail.tracker import Tracker

    with Tracker.init(args.dir, name=args.name) as tracker:
        project = tracker.store.get_project()
        if args.json:
            _print_json({"project": project, "db_path": tracker.db.path})
        else:
            print(f"Initialized project '{project.name}' at {tracker.db.path}")


def cmd_wipe(args):
    """Delete every entity, event and vector. Run init again afterwards."""
    if not args.yes:
        print("Refusing to wipe without --yes", file=sys.stderr)
        sys.exit(1)
    with _open(args) as tracker:
        tracker.wipe()
    if args.json:
        _print_json({"wiped": True})
    else:
        print("Store wiped. Run 'tasktrail init' to start again.")


def cmd_epic(args):
    """Manage epics: create, update, delete, complete, show, list."""
    sub = args.epic_command
    with _open(args) as tracker:
        store = tracker.store
        if sub == "create":
            epic = store.create_epic(
                title=args.title, description=args.description, status=args.status, priority=args.priority
            )
            _report(args, epic, f"Created {epic.id}: {epic.title}")
        elif sub == "update":
            epic = store.update_epic(args.id, **_fields(args, ("title", "description", "status", "priority")))
            _report(args, epic, f"Updated {epic.id}")
        elif sub == "delete":
            epic = store.delete_epic(args.id)
            _report(args, epic, f"Deleted {epic.id}: {epic.title}")
        elif sub == "complete":
            done = store.complete_epic(args.id)
            _report(
                args, done,
                f"Completed {done.epic.id}: archived {len(done.archived_tasks)} tasks, "
                f"{len(done.archived_subtasks)} subtasks",
            )
        elif sub == "show":
            _show_record(args, store.get_epic(args.id))
        elif sub == "list":
            epics = store.list_epics()
            if args.json:
                _print_json(epics)
            elif epics:
                _print_table(["ID", "P", "Status", "Title"], [(e.id, e.priority, e.status, e.title) for e in epics])
            else:
                print("No epics.")
        else:
            print("Usage: tasktrail epic {create,update,delete,complete,show,list}", file=sys.stderr)
            sys.exit(1)


_TASK_FIELDS = ("title", "description", "status", "priority", "epic_id", "parent_task_id", "tags")


def _task_fields(args) -> Dict[str, Any]:
    fields = _fields(args, _TASK_FIELDS)
    if "tags" in fields:
        fields["tags"] = _split(fields["tags"])
    # An empty string detaches: --epic "" / --parent "".
    for ref in ("epic_id", "parent_task_id"):
        if fields.get(ref) == "":
            fields[ref] = None
    return fields


def _show_task(args, tracker, task_id: str) -> None:
    store = tracker.store
    task = store.get_task(task_id)
    deps = store.get_dependencies(task_id)
    subtasks = store.list_subtasks(task_id)
    comments = store.list_comments(task_id)
    if args.json:
        _print_json({"task": task, "dependencies": deps, "subtasks": subtasks, "comments": comments})
        return
    _show_record(args, task)
    if deps["depends_on"]:
        print(f"  depends on:     {', '.join(deps['depends_on'])}")
    if deps["blocks"]:
        print(f"  blocks:         {', '.join(deps['blocks'])}")
    if subtasks:
        print("\n  Subtasks:")
        for s in subtasks:
            print(f"    {s.id}  [{s.status}] {s.title}")
    if comments:
        print("\n  Comments:")
        for c in comments:
            print(f"    {c.id}  {c.author} ({_format_age(c.created_at)}): {c.content[:120]}")


def cmd_task(args):
    """Manage tasks and subtasks: create, update, delete, show, list."""
    sub = args.task_command
    is_subtask = args.command == "subtask"
    with _open(args) as tracker:
        store = tracker.store
        if sub == "create":
            fields = _task_fields(args)
            title = fields.pop("title")
            if is_subtask:
                task = store.create_subtask(args.parent, title, **fields)
            else:
                task = store.create_task(title, **fields)
            _report(args, task, f"Created {task.id}: {task.title}")
        elif sub == "update":
            task = store.update_task(args.id, **_task_fields(args))
            _report(args, task, f"Updated {task.id}")
        elif sub == "delete":
            task = store.delete_task(args.id)
            _report(args, task, f"Deleted {task.id}: {task.title}")
        elif sub == "show":
            _show_task(args, tracker, args.id)
        elif sub == "list":
            if is_subtask:
                items = store.list_subtasks(args.parent)
                if args.json:
                    _print_json(items)
                else:
                    _print_table(["ID", "P", "Status", "Title"], [(t.id, t.priority, t.status, t.title) for t in items])
                return
            where = {"epic_id": args.epic_id} if args.epic_id else {}
            page = tracker.list(types=["task"], statuses=_split(args.status), where=where,
                                sort=parse_sort("priority:asc,created:asc"), limit=args.limit)
            _print_list(args, page)
        else:
            print(f"Usage: tasktrail {args.command} {{create,update,delete,show,list}}", file=sys.stderr)
            sys.exit(1)


def cmd_comment(args):
    """Manage comments: add, update, delete, list."""
    sub = args.comment_command
    with _open(args) as tracker:
        store = tracker.store
        if sub == "add":
            comment = store.add_comment(args.task_id, author=args.author, content=" ".join(args.content))
            _report(args, comment, f"Added {comment.id} on {comment.task_id}")
        elif sub == "update":
            comment = store.update_comment(args.id, content=" ".join(args.content))
            _report(args, comment, f"Updated {comment.id}")
        elif sub == "delete":
            comment = store.delete_comment(args.id)
            _report(args, comment, f"Deleted {comment.id}")
        elif sub == "list":
            comments = store.list_comments(args.task_id)
            if args.json:
                _print_json(comments)
            elif comments:
                for c in comments:
                    print(f"{c.id}  {c.author} ({_format_age(c.created_at)})")
                    print(f"    {c.content}")
            else:
                print(f"No comments on {args.task_id}.")
        else:
            print("Usage: tasktrail comment {add,update,delete,list}", file=sys.stderr)
            sys.exit(1)


def cmd_dep(args):
    """Manage dependencies: add, remove, show."""
    sub = args.dep_command
    with _open(args) as tracker:
        store = tracker.store
        if sub == "add":
            dep = store.add_dependency(args.task_id, args.depends_on_id)
            _report(args, dep, f"{dep.task_id} now depends on {dep.depends_on_id}")
        elif sub == "remove":
            dep = store.remove_dependency(args.task_id, args.depends_on_id)
            _report(args, dep, f"Removed {dep.id}")
        elif sub == "show":
            deps = store.get_dependencies(args.task_id)
            if args.json:
                _print_json(deps)
            else:
                print(f"{args.task_id}")
                print(f"  depends on: {', '.join(deps['depends_on']) or '-'}")
                print(f"  blocks:     {', '.join(deps['blocks']) or '-'}")
        else:
            print("Usage: tasktrail dep {add,remove,show}", file=sys.stderr)
            sys.exit(1)


def _print_list(args, page) -> None:
    if args.json:
        _print_json(page)
        return
    if not page.items:
        print("Nothing found.")
        return
    rows = [(i.id, i.type, i.priority, i.status, i.title, i.parent_id, _format_age(i.created_at)) for i in page.items]
    _print_table(["ID", "Type", "P", "Status", "Title", "Parent", "Age"], rows)
    last = min(page.total, page.page * page.limit)
    print(f"\n{(page.page - 1) * page.limit + 1}-{last} of {page.total}")


def cmd_list(args):
    """List epics, tasks and subtasks with filters, sort and pagination."""
    kwargs: Dict[str, Any] = {
        "types": _split(args.type),
        "statuses": _split(args.status),
        "tags": _split(args.tags),
        "page": args.page,
        "limit": args.limit,
    }
    if args.priority:
        kwargs["priorities"] = [int(p) for p in _split(args.priority)]
    if args.epic_id:
        kwargs["where"] = {"epic_id": args.epic_id}
    if args.sort:
        kwargs["sort"] = parse_sort(args.sort)
    for key in ("since", "until"):
        if getattr(args, key):
            kwargs[key] = getattr(args, key)
    with _open(args) as tracker:
        page = tracker.list(**{k: v for k, v in kwargs.items() if v is not None})
    _print_list(args, page)


def cmd_ready(args):
    """Show todo tasks with no open dependencies."""
    with _open(args) as tracker:
        ready = tracker.ready()
    if args.json:
        _print_json(ready)
        return
    if not ready:
        print("No ready tasks.")
        return
    rows = [(r.task.id, r.task.priority, r.task.title, ", ".join(d.id for d in r.dependents)) for r in ready]
    _print_table(["ID", "P", "Title", "Unblocks"], rows)


def cmd_search(args):
    """Keyword, semantic or hybrid search over epics, tasks and comments."""
    query_text = " ".join(args.query_text)
    if not query_text.strip():
        print("Usage: tasktrail search <text>", file=sys.stderr)
        sys.exit(1)
    kwargs = {"mode": args.mode, "types": _split(args.type), "status": args.status,
              "page": args.page, "limit": args.limit}
    start = time.monotonic()
    with _open(args) as tracker:
        result = tracker.search(query_text, **{k: v for k, v in kwargs.items() if v is not None})
    elapsed = time.monotonic() - start

    if args.json:
        out = result.model_dump()
        out["elapsed_s"] = round(elapsed, 3)
        _print_json(out)
        return
    if not result.results:
        print(f'No results for "{query_text}" ({elapsed:.2f}s)')
        return
    rows = []
    for hit in result.results:
        preview = (hit.title or hit.snippet or "").replace("\n", " ")[:80]
        rows.append((f"{hit.score:.4f}", hit.type, hit.id, hit.status, preview, "+".join(hit.channels)))
    _print_table(["Score", "Type", "ID", "Status", "Preview", "Via"], rows)
    note = "" if result.semantic_enriched or result.mode == "keyword" else ", keyword only"
    print(f"\n{result.total} result(s) ({elapsed:.2f}s{note})")


def cmd_similar(args):
    """Find entities semantically close to an entity or to free text."""
    text = " ".join(args.text) if args.text else None
    with _open(args) as tracker:
        hits = tracker.similar(entity_id=args.id, text=text, threshold=args.threshold, limit=args.limit)
        enabled = tracker.semantic_enabled
    if args.json:
        _print_json(hits)
        return
    if not hits:
        print("No similar items." if enabled else "Semantic search is disabled.")
        return
    _print_table(["Sim", "Type", "ID", "Title"],
                 [(f"{h.similarity:.0%}", h.type, h.id, h.title or (h.snippet or "")[:80]) for h in hits])


def cmd_history(args):
    """Show the audit log, oldest first."""
    kwargs = {
        "entity_id": args.id,
        "types": _split(args.type),
        "actions": _split(args.action),
        "since": args.since,
        "until": args.until,
        "page": args.page,
        "limit": args.limit,
    }
    with _open(args) as tracker:
        page = tracker.history(**{k: v for k, v in kwargs.items() if v is not None})
    if args.json:
        _print_json(page)
        return
    if not page.events:
        print("No events.")
        return
    for e in page.events:
        detail = ""
        if e.action == "update":
            detail = ", ".join(sorted(e.payload.get("changes", {})))
        print(f"{e.timestamp}  {e.action:<7} {e.entity_type:<10} {e.entity_id}  {detail}".rstrip())
    print(f"\n{len(page.events)} of {page.total} event(s)")


def cmd_reindex(args):
    """Rebuild the keyword index and queue everything for re-embedding."""
    with _open(args) as tracker:
        result = tracker.reindex(embeddings=not args.keyword_only)
        if args.drain and tracker.semantic_enabled:
            result["sync"] = tracker.sync.drain()
    if args.json:
        _print_json(result)
    else:
        print(f"Keyword index rebuilt ({result['lexical']} rows), {result['queued']} queued for embedding")
        if "sync" in result:
            print(f"  Embedded: {result['sync']}")


def cmd_sync(args):
    """Process the embedding queue in the foreground."""
    with _open(args) as tracker:
        if not tracker.semantic_enabled:
            print("Embeddings are disabled (TASKTRAIL_EMBEDDINGS=none).", file=sys.stderr)
            sys.exit(1)
        revived = tracker.sync.retry_dead() if args.retry_dead else 0
        if not args.stats:
            from tasktrail.embeddings import preload_embedding_model

            preload_embedding_model()
        counts = {} if args.stats else tracker.sync.drain()
        stats = tracker.sync.stats()
    if args.json:
        _print_json({"processed": counts, "revived": revived, "queue": stats})
        return
    if revived:
        print(f"Revived {revived} dead-lettered item(s)")
    if counts:
        print("Processed: " + ", ".join(f"{k}={v}" for k, v in counts.items()))
    print(f"Queue: {stats['pending']} pending, {stats['dead']} dead, {stats['vectors']} vectors stored")


def cmd_status(args):
    """Show store location, counts and search capabilities."""
    with _open(args) as tracker:
        info = tracker.status()
    if args.json:
        _print_json(info)
        return
    print(f"  Project:    {info['project']}")
    print(f"  Database:   {info['db_path']}")
    counts = info["counts"]
    print(f"  Items:      {counts.get('epic', 0)} epics, {counts.get('task', 0)} tasks, "
          f"{counts.get('subtask', 0)} subtasks")
    print(f"  FTS5:       {'yes' if info['fts_available'] else 'no (LIKE fallback)'}")
    print(f"  sqlite-vec: {'yes' if info['vec_available'] else 'no (NumPy fallback)'}")
    emb = info["embeddings"]
    print(f"  Semantic:   {'on' if info['semantic_enabled'] else 'off'} "
          f"({emb['vectors']} vectors, {emb['pending']} pending, {emb['dead']} dead)")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_task_options(p: argparse.ArgumentParser, create: bool) -> None:
    if create:
        p.add_argument("title", help="Title")
    else:
        p.add_argument("id", help="Task id (TASK-n)")
        p.add_argument("--title", help="New title")
    p.add_argument("-d", "--description", help="Description")
    p.add_argument("-s", "--status", help="todo, in_progress, completed, wont_fix, archived")
    p.add_argument("-p", "--priority", type=int, help="0 (critical) .. 5 (someday)")
    p.add_argument("--epic", dest="epic_id", help="Epic id (empty string detaches)")
    p.add_argument("--tags", help="Comma-separated tags")


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", help="Output as JSON")
    common.add_argument("-C", "--dir", type=Path, default=None, help="Directory holding the store (default: cwd)")

    parser = argparse.ArgumentParser(prog="tasktrail", description="tasktrail -- local work tracker")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- Store ---
    init_parser = subparsers.add_parser("init", parents=[common], help="Initialize a store in this directory")
    init_parser.add_argument("--name", help="Project name (default: directory name)")
    wipe_parser = subparsers.add_parser("wipe", parents=[common], help="Delete all data in the store")
    wipe_parser.add_argument("--yes", action="store_true", help="Confirm")
    subparsers.add_parser("status", parents=[common], help="Show store location, counts and capabilities")

    # --- Epics ---
    epic_parser = subparsers.add_parser("epic", help="Manage epics")
    epic_sub = epic_parser.add_subparsers(dest="epic_command", help="Epic subcommands")
    for name in ("create", "update"):
        p = epic_sub.add_parser(name, parents=[common], help=f"{name.capitalize()} an epic")
        if name == "create":
            p.add_argument("title", help="Title")
        else:
            p.add_argument("id", help="Epic id (EPIC-n)")
            p.add_argument("--title", help="New title")
        p.add_argument("-d", "--description", help="Description")
        p.add_argument("-s", "--status", help="todo, in_progress, completed, archived")
        p.add_argument("-p", "--priority", type=int, help="0 (critical) .. 5 (someday)")
    for name in ("delete", "show"):
        epic_sub.add_parser(name, parents=[common], help=f"{name.capitalize()} an epic").add_argument("id")
    epic_sub.add_parser(
        "complete", parents=[common], help="Complete an epic and archive its tasks and subtasks"
    ).add_argument("id")
    epic_sub.add_parser("list", parents=[common], help="List epics")

    # --- Tasks and subtasks ---
    for command in ("task", "subtask"):
        task_parser = subparsers.add_parser(command, help=f"Manage {command}s")
        task_sub = task_parser.add_subparsers(dest="task_command", help=f"{command.capitalize()} subcommands")
        p = task_sub.add_parser("create", parents=[common], help=f"Create a {command}")
        if command == "subtask":
            p.add_argument("parent", help="Parent task id")
        _add_task_options(p, create=True)
        p = task_sub.add_parser("update", parents=[common], help=f"Update a {command}")
        _add_task_options(p, create=False)
        p.add_argument("--parent", dest="parent_task_id", help="Parent task id (empty string detaches)")
        for name in ("delete", "show"):
            task_sub.add_parser(name, parents=[common], help=f"{name.capitalize()} a {command}").add_argument("id")
        p = task_sub.add_parser("list", parents=[common], help=f"List {command}s")
        if command == "subtask":
            p.add_argument("parent", help="Parent task id")
        else:
            p.add_argument("--epic", dest="epic_id", help="Only tasks in this epic")
            p.add_argument("-s", "--status", help="Comma-separated statuses")
            p.add_argument("--limit", type=int, default=50)

    # --- Comments ---
    comment_parser = subparsers.add_parser("comment", help="Manage comments")
    comment_sub = comment_parser.add_subparsers(dest="comment_command", help="Comment subcommands")
    p = comment_sub.add_parser("add", parents=[common], help="Comment on a task")
    p.add_argument("task_id")
    p.add_argument("content", nargs="+")
    p.add_argument("-a", "--author", default="user", help="Author (default: user)")
    p = comment_sub.add_parser("update", parents=[common], help="Replace a comment's text")
    p.add_argument("id")
    p.add_argument("content", nargs="+")
    comment_sub.add_parser("delete", parents=[common], help="Delete a comment").add_argument("id")
    comment_sub.add_parser("list", parents=[common], help="Comments on a task").add_argument("task_id")

    # --- Dependencies ---
    dep_parser = subparsers.add_parser("dep", help="Manage task dependencies")
    dep_sub = dep_parser.add_subparsers(dest="dep_command", help="Dependency subcommands")
    for name, text in (("add", "TASK depends on DEPENDS_ON"), ("remove", "Remove a dependency")):
        p = dep_sub.add_parser(name, parents=[common], help=text)
        p.add_argument("task_id")
        p.add_argument("depends_on_id")
    dep_sub.add_parser("show", parents=[common], help="What a task depends on and blocks").add_argument("task_id")

    # --- Queries ---
    list_parser = subparsers.add_parser("list", parents=[common], help="List epics, tasks and subtasks")
    list_parser.add_argument("-t", "--type", help="Comma-separated: epic, task, subtask")
    list_parser.add_argument("-s", "--status", help="Comma-separated statuses")
    list_parser.add_argument("-p", "--priority", help="Comma-separated priorities")
    list_parser.add_argument("--epic", dest="epic_id", help="Only items in this epic")
    list_parser.add_argument("--tags", help="Comma-separated tags (all must match)")
    list_parser.add_argument("--sort", help="e.g. priority:asc,created:desc")
    list_parser.add_argument("--since", help="Created at or after (ISO 8601)")
    list_parser.add_argument("--until", help="Created at or before (ISO 8601)")
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument("--limit", type=int, default=50)

    subparsers.add_parser("ready", parents=[common], help="Todo tasks with no open dependencies")

    search_parser = subparsers.add_parser("search", parents=[common], help="Search epics, tasks and comments")
    search_parser.add_argument("query_text", nargs="+", help="Search text")
    search_parser.add_argument("-m", "--mode", choices=["keyword", "semantic", "hybrid"], default="hybrid")
    search_parser.add_argument("-t", "--type", help="Comma-separated: epic, task, subtask, comment")
    search_parser.add_argument("-s", "--status", help="Only results with this status")
    search_parser.add_argument("--page", type=int, default=1)
    search_parser.add_argument("--limit", type=int, default=20)

    similar_parser = subparsers.add_parser("similar", parents=[common], help="Semantically similar items")
    similar_parser.add_argument("--id", help="Entity id to compare against")
    similar_parser.add_argument("text", nargs="*", help="Free text to compare against")
    similar_parser.add_argument("--threshold", type=float, default=None)
    similar_parser.add_argument("--limit", type=int, default=10)

    history_parser = subparsers.add_parser("history", parents=[common], help="Show the audit log")
    history_parser.add_argument("--id", help="Only events for this entity")
    history_parser.add_argument("-t", "--type", help="Comma-separated entity types")
    history_parser.add_argument("-a", "--action", help="Comma-separated: create, update, delete")
    history_parser.add_argument("--since", help="ISO 8601")
    history_parser.add_argument("--until", help="ISO 8601")
    history_parser.add_argument("--page", type=int, default=1)
    history_parser.add_argument("--limit", type=int, default=50)

    # --- Maintenance ---
    reindex_parser = subparsers.add_parser("reindex", parents=[common], help="Rebuild search indexes")
    reindex_parser.add_argument("--keyword-only", action="store_true", help="Skip re-embedding")
    reindex_parser.add_argument("--drain", action="store_true", help="Embed now instead of in the background")
    sync_parser = subparsers.add_parser("sync", parents=[common], help="Process pending embeddings")
    sync_parser.add_argument("--retry-dead", action="store_true", help="Revive dead-lettered items first")
    sync_parser.add_argument("--stats", action="store_true", help="Only show queue statistics")

    return parser


COMMANDS = {
    "init": cmd_init,
    "wipe": cmd_wipe,
    "status": cmd_status,
    "epic": cmd_epic,
    "task": cmd_task,
    "subtask": cmd_task,
    "comment": cmd_comment,
    "dep": cmd_dep,
    "list": cmd_list,
    "ready": cmd_ready,
    "search": cmd_search,
    "similar": cmd_similar,
    "history": cmd_history,
    "reindex": cmd_reindex,
    "sync": cmd_sync,
}


def main(argv: Optional[Sequence[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    config.setup_logging(logging.DEBUG if args.verbose else None)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return
    if not hasattr(args, "json"):
        # Group command given without a subcommand.
        parser.parse_args([args.command, "--help"])
        return
    try:
        handler(args)
    except TrailError as e:
        if args.json:
            print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        else:
            print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
