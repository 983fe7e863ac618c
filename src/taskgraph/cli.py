"""Command line interface for taskgraph.

Every command prints JSON on stdout.  Rejected operations (unknown task,
dependency cycle, birthline after deadline, ...) print the reason on stderr
and exit with status 1.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .config import (
    get_default_priority,
    get_events_enabled,
    get_log_level,
    load_config,
    state_dir_for,
)
from .task_engine.engine import TaskEngine
from .task_engine.model import ComputedProgress, OffsetBase, Progress


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _engine(args: argparse.Namespace) -> TaskEngine:
    project = _resolve_project_dir(args.project_dir)
    config, err = load_config(project)
    if err:
        logger.warning("Ignoring unreadable config: {}", err)
    now = args.now
    return TaskEngine(
        state_dir_for(project),
        clock=(lambda: now) if now is not None else None,
        default_priority=get_default_priority(config),
        events_enabled=get_events_enabled(config),
    )


def _emit(payload: Any) -> int:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    return 0


def _ms_or_none(value: str) -> Optional[int]:
    if value.lower() in {"none", "null", ""}:
        return None
    try:
        return int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected milliseconds or 'none', got {value!r}")


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def _task_create(args: argparse.Namespace) -> int:
    recurrence = None
    if args.recur_offset is not None:
        recurrence = {"offset": args.recur_offset, "offset_base": args.recur_base}
    task = _engine(args).create_task(
        name=args.name,
        description=args.description,
        deadline=args.deadline,
        birthline=args.birthline,
        priority=args.priority,
        progress=args.progress,
        auto_fail=args.auto_fail,
        group_like=args.group_like,
        dependencies=args.depends_on,
        recurrence=recurrence,
    )
    return _emit({"task": task.to_dict()})


def _task_list(args: argparse.Namespace) -> int:
    tasks = _engine(args).list_tasks(
        progress=args.progress,
        computed_progress=args.computed_progress,
        search=args.search,
        roots_only=args.roots_only,
    )
    return _emit({"tasks": [t.to_dict() for t in tasks], "total": len(tasks)})


def _task_show(args: argparse.Namespace) -> int:
    task = _engine(args).get_task(args.task_id)
    if task is None:
        sys.stderr.write(f"Task {args.task_id} not found\n")
        return 1
    return _emit({"task": task.to_dict()})


def _task_update(args: argparse.Namespace) -> int:
    changes: dict[str, Any] = {}
    for key in ("name", "description", "priority", "progress", "auto_fail", "group_like"):
        value = getattr(args, key)
        if value is not None:
            changes[key] = value
    # "none" is a meaningful value for the two time bounds, so track presence separately.
    for key in ("deadline", "birthline"):
        if key in args.time_fields:
            changes[key] = getattr(args, key)
    if args.depends_on is not None:
        changes["dependencies"] = args.depends_on
    if args.no_recurrence:
        changes["recurrence"] = None
    elif args.recur_offset is not None:
        changes["recurrence"] = {"offset": args.recur_offset, "offset_base": args.recur_base}
    task = _engine(args).update_task(args.task_id, changes)
    return _emit({"task": task.to_dict()})


def _task_delete(args: argparse.Namespace) -> int:
    task = _engine(args).delete_task(args.task_id)
    return _emit({"deleted": task.id})


def _dep_add(args: argparse.Namespace) -> int:
    task = _engine(args).add_dependency(args.task_id, args.depends_on)
    return _emit({"task": task.to_dict()})


def _dep_remove(args: argparse.Namespace) -> int:
    task = _engine(args).remove_dependency(args.task_id, args.depends_on)
    return _emit({"task": task.to_dict()})


def _evaluate(args: argparse.Namespace) -> int:
    engine = _engine(args)
    graph = engine.evaluate()
    return _emit({"tasks": [t.to_dict() for t in graph], "summary": engine.summary()})


def _promote(args: argparse.Namespace) -> int:
    task = _engine(args).promote_next_instance(args.task_id)
    return _emit({"task": task.to_dict()})


def _export(args: argparse.Namespace) -> int:
    text = _engine(args).export_json()
    if args.output:
        Path(args.output).write_text(text + "\n", encoding="utf-8")
        return _emit({"exported": str(args.output)})
    sys.stdout.write(text + "\n")
    return 0


def _import(args: argparse.Namespace) -> int:
    text = Path(args.path).read_text(encoding="utf-8")
    graph = _engine(args).import_json(text)
    return _emit({"imported": len(graph)})


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'taskgraph[server]'\n")
        return 1

    from .server import create_app

    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class _TrackTimeField(argparse.Action):
    """Store the value and remember that the option was given at all."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        namespace.time_fields = set(getattr(namespace, "time_fields", set())) | {self.dest}


def _add_recurrence_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--recur-offset", type=int, default=None, help="Recurrence offset in milliseconds")
    parser.add_argument(
        "--recur-base",
        default=OffsetBase.DEADLINE.value,
        choices=[e.value for e in OffsetBase],
        help="Count the recurrence offset from the deadline or the finish time",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="taskgraph - tasks with computed priority, deadline and progress")
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument("--log-level", default=None, help="Log level (default: config log_level or INFO)")
    parser.add_argument("--now", type=int, default=None, help="Evaluate at this time (ms since epoch) instead of the clock")
    subparsers = parser.add_subparsers(dest="command")

    task = subparsers.add_parser("task", help="Manage tasks")
    task_sub = task.add_subparsers(dest="task_cmd", required=True)

    tcreate = task_sub.add_parser("create", help="Create a task")
    tcreate.add_argument("name")
    tcreate.add_argument("--description", default="")
    tcreate.add_argument("--deadline", type=int, default=None, help="Deadline in ms since epoch")
    tcreate.add_argument("--birthline", type=int, default=None, help="Birthline in ms since epoch")
    tcreate.add_argument("--priority", type=int, default=None)
    tcreate.add_argument("--progress", default=Progress.TODO.value, choices=[e.value for e in Progress])
    tcreate.add_argument("--auto-fail", action="store_true")
    tcreate.add_argument("--group-like", action="store_true")
    tcreate.add_argument("--depends-on", type=int, nargs="*", default=[])
    _add_recurrence_args(tcreate)
    tcreate.set_defaults(func=_task_create)

    tlist = task_sub.add_parser("list", help="List tasks")
    tlist.add_argument("--progress", default=None, choices=[e.value for e in Progress])
    tlist.add_argument("--computed-progress", default=None, choices=[e.value for e in ComputedProgress])
    tlist.add_argument("--search", default=None)
    tlist.add_argument("--roots-only", action="store_true")
    tlist.set_defaults(func=_task_list)

    tshow = task_sub.add_parser("show", help="Show one task")
    tshow.add_argument("task_id", type=int)
    tshow.set_defaults(func=_task_show)

    tupdate = task_sub.add_parser("update", help="Change stored fields of a task")
    tupdate.add_argument("task_id", type=int)
    tupdate.add_argument("--name", default=None)
    tupdate.add_argument("--description", default=None)
    tupdate.add_argument("--deadline", type=_ms_or_none, action=_TrackTimeField, help="ms since epoch, or 'none'")
    tupdate.add_argument("--birthline", type=_ms_or_none, action=_TrackTimeField, help="ms since epoch, or 'none'")
    tupdate.add_argument("--priority", type=int, default=None)
    tupdate.add_argument("--progress", default=None, choices=[e.value for e in Progress])
    tupdate.add_argument("--auto-fail", action=argparse.BooleanOptionalAction, default=None)
    tupdate.add_argument("--group-like", action=argparse.BooleanOptionalAction, default=None)
    tupdate.add_argument("--depends-on", type=int, nargs="*", default=None, help="Replace the dependency set")
    tupdate.add_argument("--no-recurrence", action="store_true")
    _add_recurrence_args(tupdate)
    tupdate.set_defaults(func=_task_update, time_fields=set())

    tdelete = task_sub.add_parser("delete", help="Delete a task nothing depends on")
    tdelete.add_argument("task_id", type=int)
    tdelete.set_defaults(func=_task_delete)

    dep = subparsers.add_parser("dep", help="Edit dependencies")
    dep_sub = dep.add_subparsers(dest="dep_cmd", required=True)
    dadd = dep_sub.add_parser("add", help="Make TASK_ID depend on DEPENDS_ON")
    dadd.add_argument("task_id", type=int)
    dadd.add_argument("depends_on", type=int)
    dadd.set_defaults(func=_dep_add)
    dremove = dep_sub.add_parser("remove", help="Drop the dependency of TASK_ID on DEPENDS_ON")
    dremove.add_argument("task_id", type=int)
    dremove.add_argument("depends_on", type=int)
    dremove.set_defaults(func=_dep_remove)

    evaluate = subparsers.add_parser("evaluate", help="Recompute and store computed properties")
    evaluate.set_defaults(func=_evaluate)

    promote = subparsers.add_parser("promote", help="Turn a recurrence preview into a real task")
    promote.add_argument("task_id", type=int)
    promote.set_defaults(func=_promote)

    export = subparsers.add_parser("export", help="Write the graph as JSON")
    export.add_argument("--output", default=None)
    export.set_defaults(func=_export)

    imp = subparsers.add_parser("import", help="Replace the graph with a JSON document")
    imp.add_argument("path")
    imp.set_defaults(func=_import)

    server = subparsers.add_parser("server", help="Start the web server")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=8000, type=int)
    server.set_defaults(func=_server)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1

    level = args.log_level
    if level is None:
        config, _ = load_config(_resolve_project_dir(args.project_dir))
        level = get_log_level(config)
    _configure_logging(level)

    try:
        return int(handler(args) or 0)
    except ValueError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())
