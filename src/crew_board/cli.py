from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .context import BoardContext
from .errors import CrewBoardError
from .task_engine.model import Task
from .task_engine.precheck import precheck
from .watchdog.runner import TICK_KINDS

_PRIORITIES = ['P0', 'P1', 'P2', 'P3']


def _configure_logging(level: str = "WARNING") -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> - "
            "{message}"
        ),
    )


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(args: argparse.Namespace) -> BoardContext:
    return BoardContext(_resolve_project_dir(args.project_dir))


def _emit(payload: Any) -> int:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + '\n')
    return 0


def _parse_json_object(raw: Optional[str], flag: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise CrewBoardError(f"{flag} is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise CrewBoardError(f"{flag} must be a JSON object")
    return value


def _render_task_table(tasks: list[Task]) -> None:
    table = Table(title=f"Tasks ({len(tasks)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Pri")
    table.add_column("Assignee")
    table.add_column("Reviewer")
    table.add_column("Title")
    for task in tasks:
        table.add_row(
            task.id,
            task.status.value,
            task.priority.value,
            task.assignee or "-",
            task.reviewer or "-",
            task.title,
        )
    Console().print(table)


# ---------------------------------------------------------------------------
# task
# ---------------------------------------------------------------------------

def _task_create(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    draft: dict[str, Any] = {
        'title': args.title,
        'description': args.description,
        'priority': args.priority,
        'tags': args.tag or [],
        'done_criteria': args.done or [],
        'blocked_by': args.blocked_by or [],
        'metadata': _parse_json_object(args.metadata, '--metadata'),
    }
    for key in ('assignee', 'reviewer', 'team_id'):
        value = getattr(args, key)
        if value:
            draft[key] = value
    task = ctx.engine.create_task(draft, actor=args.actor)
    return _emit({'task': task.to_dict()})


def _task_list(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    tasks = ctx.engine.list_tasks(
        status=args.status,
        assignee=args.assignee,
        team_id=args.team_id,
        updated_since=args.updated_since,
        limit=args.limit,
    )
    if args.table:
        _render_task_table(tasks)
        return 0
    return _emit({'tasks': [t.to_dict() for t in tasks]})


def _task_show(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    return _emit({'task': ctx.engine.get_task(args.task_id).to_dict()})


def _task_patch(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    partial = _parse_json_object(args.json, '--json')
    for key in ('status', 'assignee', 'reviewer', 'priority', 'title'):
        value = getattr(args, key)
        if value is not None:
            partial[key] = value
    if args.metadata:
        partial['metadata'] = {**(partial.get('metadata') or {}), **_parse_json_object(args.metadata, '--metadata')}
    if not partial:
        raise CrewBoardError("Nothing to patch", hint="Pass --status, --metadata or --json.")
    result = ctx.engine.patch_task(args.task_id, partial, actor=args.actor)
    return _emit(result.to_dict())


def _task_delete(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    return _emit({'deleted': ctx.engine.delete_task(args.task_id, actor=args.actor), 'task_id': args.task_id})


def _task_next(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    task = ctx.engine.next_task(args.agent)
    return _emit({'agent': args.agent, 'task': task.to_dict() if task else None})


def _task_precheck(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    return _emit(precheck(ctx.engine, args.task_id, args.target, actor=args.actor).to_dict())


# ---------------------------------------------------------------------------
# audit / sync / assign / tick
# ---------------------------------------------------------------------------

def _audit_list(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    task_id = ctx.engine.get_task(args.task_id).id if args.task_id else None
    entries = ctx.audit.list_entries(task_id=task_id, limit=args.limit)
    return _emit({'entries': [e.to_dict() for e in entries]})


def _sync_status(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    payload: dict[str, Any] = {'status': ctx.sync.sync_status()}
    if args.pending:
        payload['pending'] = [row.to_dict() for row in ctx.sync.pending_rows(limit=args.limit)]
    return _emit(payload)


def _assign_suggest(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    task = ctx.engine.get_task(args.task_id)
    suggestion = ctx.engine.assignment.suggest(task, ctx.engine.list_tasks(), now_ms=ctx.engine.now())
    return _emit({'task_id': task.id, **suggestion.to_dict()})


def _tick(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    result = ctx.watchdog.run_tick(args.kind, dry_run=args.dry_run, force=args.force, now_ms=args.now_ms)
    return _emit(result.to_dict())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='crew-board: task lifecycle engine for agent teams')
    parser.add_argument('--project-dir', default=None, help='Target project directory (default: current working directory)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging on stderr')
    subparsers = parser.add_subparsers(dest='command', required=True)

    task = subparsers.add_parser('task', help='Manage tasks')
    task_sub = task.add_subparsers(dest='task_cmd', required=True)
    tcreate = task_sub.add_parser('create', help='Create a task')
    tcreate.add_argument('title')
    tcreate.add_argument('--description', default='')
    tcreate.add_argument('--priority', default=None, choices=_PRIORITIES, help='Defaults to P3')
    tcreate.add_argument('--tag', action='append')
    tcreate.add_argument('--done', action='append', help='Done criterion (repeatable)')
    tcreate.add_argument('--blocked-by', action='append')
    tcreate.add_argument('--assignee', default=None)
    tcreate.add_argument('--reviewer', default=None, help='Agent name or "auto"')
    tcreate.add_argument('--team-id', default=None)
    tcreate.add_argument('--metadata', default=None, help='JSON object')
    tcreate.add_argument('--actor', default=None)
    tcreate.set_defaults(func=_task_create)

    tlist = task_sub.add_parser('list', help='List tasks')
    tlist.add_argument('--status', default=None)
    tlist.add_argument('--assignee', default=None)
    tlist.add_argument('--team-id', default=None)
    tlist.add_argument('--updated-since', default=None, type=int, help='Epoch ms; only tasks updated at or after it')
    tlist.add_argument('--limit', default=None, type=int)
    tlist.add_argument('--table', action='store_true', help='Render a table instead of JSON')
    tlist.set_defaults(func=_task_list)

    tshow = task_sub.add_parser('show', help='Show one task by id or unique prefix')
    tshow.add_argument('task_id')
    tshow.set_defaults(func=_task_show)

    tpatch = task_sub.add_parser('patch', help='Patch a task through the gate pipeline')
    tpatch.add_argument('task_id')
    tpatch.add_argument('--status', default=None)
    tpatch.add_argument('--assignee', default=None)
    tpatch.add_argument('--reviewer', default=None)
    tpatch.add_argument('--priority', default=None, choices=_PRIORITIES)
    tpatch.add_argument('--title', default=None)
    tpatch.add_argument('--metadata', default=None, help='JSON object merged into metadata')
    tpatch.add_argument('--json', default=None, help='Full partial update as a JSON object')
    tpatch.add_argument('--actor', default=None)
    tpatch.set_defaults(func=_task_patch)

    tdelete = task_sub.add_parser('delete', help='Delete a task')
    tdelete.add_argument('task_id')
    tdelete.add_argument('--actor', default=None)
    tdelete.set_defaults(func=_task_delete)

    tnext = task_sub.add_parser('next', help='Next available task for an agent')
    tnext.add_argument('agent')
    tnext.set_defaults(func=_task_next)

    tpre = task_sub.add_parser('precheck', help='Dry-run the gates for a status change')
    tpre.add_argument('task_id')
    tpre.add_argument('target')
    tpre.add_argument('--actor', default=None)
    tpre.set_defaults(func=_task_precheck)

    audit = subparsers.add_parser('audit', help='Review audit ledger')
    audit_sub = audit.add_subparsers(dest='audit_cmd', required=True)
    alist = audit_sub.add_parser('list', help='List audit entries (most recent first)')
    alist.add_argument('--task-id', default=None)
    alist.add_argument('--limit', default=100, type=int)
    alist.set_defaults(func=_audit_list)

    sync = subparsers.add_parser('sync', help='Cloud sync ledger')
    sync_sub = sync.add_subparsers(dest='sync_cmd', required=True)
    sstatus = sync_sub.add_parser('status', help='Counts by sync status')
    sstatus.add_argument('--pending', action='store_true', help='Include pending rows')
    sstatus.add_argument('--limit', default=50, type=int)
    sstatus.set_defaults(func=_sync_status)

    assign = subparsers.add_parser('assign', help='Assignment suggestions')
    assign_sub = assign.add_subparsers(dest='assign_cmd', required=True)
    asuggest = assign_sub.add_parser('suggest', help='Rank agents for a task')
    asuggest.add_argument('task_id')
    asuggest.set_defaults(func=_assign_suggest)

    tick = subparsers.add_parser('tick', help='Run one watchdog tick')
    tick.add_argument('kind', choices=list(TICK_KINDS))
    tick.add_argument('--dry-run', action='store_true')
    tick.add_argument('--force', action='store_true', help='Ignore quiet hours')
    tick.add_argument('--now-ms', default=None, type=int)
    tick.set_defaults(func=_tick)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging("DEBUG" if args.verbose else "WARNING")
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except CrewBoardError as exc:
        sys.stderr.write(json.dumps(exc.to_dict(), indent=2, default=str) + '\n')
        return 1


if __name__ == '__main__':
    raise SystemExit(main())
