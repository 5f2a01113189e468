"""relaysync CLI.

Subcommands:
  add     -> capture a new local issue (labels suggested from the title)
  list    -> list local issues, newest first
  show    -> print one issue
  edit    -> change title/body/state/labels (marks linked issues for push)
  remove  -> delete a local issue (the remote issue is left alone)
  status  -> counts per state/label plus the overall sync status
  sync    -> pull/push/bidirectional sync with the remote tracker

Exit codes: 0 success, 1 sync finished with per-issue errors (or a lookup /
validation failure), 2 fatal (configuration, authentication, listing).
"""

from __future__ import annotations

import argparse
import json
import os
import threading
from pathlib import Path
from typing import Any

from relaysync.config import RelayConfig, detect_repository, load_config, save_config
from relaysync.errors import ConfigurationError, RelaySyncError
from relaysync.github_issues import build_provider
from relaysync.issue_store import IssueStore, suggest_labels
from relaysync.logging import configure_logging
from relaysync.models import VALID_STATES, Issue, SyncResult, format_timestamp
from relaysync.sync_engine import SYNC_DIRECTIONS, SyncEngine
from relaysync.ux import (
    format_issue_row,
    format_sync_status,
    print_error,
    print_success,
    print_summary_box,
    print_warning,
)

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_FATAL = 2

_MAX_HELP_WIDTH = 100


class _HelpFormatter(argparse.HelpFormatter):
    def __init__(self, prog: str) -> None:
        super().__init__(prog, max_help_position=30, width=_MAX_HELP_WIDTH)


class _FormatterArgumentParser(argparse.ArgumentParser):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("formatter_class", _HelpFormatter)
        super().__init__(*args, **kwargs)


def _build_parser() -> argparse.ArgumentParser:
    p = _FormatterArgumentParser(
        prog="relaysync", description="Local issue store with GitHub sync"
    )
    p.add_argument("--project", default=".", help="Project directory holding .relay/ (default: cwd)")
    p.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress informational output (env: RELAYSYNC_QUIET=1)",
    )
    sub = p.add_subparsers(
        dest="cmd",
        required=True,
        parser_class=_FormatterArgumentParser,
        metavar="<command>",
    )

    pa = sub.add_parser("add", help="Capture a new issue")
    pa.add_argument("title")
    pa.add_argument("--body", default="")
    pa.add_argument("--label", action="append", dest="labels", help="Label (repeatable)")
    pa.add_argument("--state", choices=VALID_STATES, default="open")

    pl = sub.add_parser("list", help="List issues")
    pl.add_argument("--state", choices=VALID_STATES)
    pl.add_argument("--label")
    pl.add_argument("--json", action="store_true", help="Emit JSON instead of a table")

    psh = sub.add_parser("show", help="Show one issue")
    psh.add_argument("id", type=int)
    psh.add_argument("--json", action="store_true")

    pe = sub.add_parser("edit", help="Edit an issue")
    pe.add_argument("id", type=int)
    pe.add_argument("--title")
    pe.add_argument("--body")
    pe.add_argument("--state", choices=VALID_STATES)
    pe.add_argument("--label", action="append", dest="labels", help="Replace labels (repeatable)")

    pr = sub.add_parser("remove", help="Remove an issue locally")
    pr.add_argument("id", type=int)

    sub.add_parser("status", help="Counts and overall sync status")

    ps = sub.add_parser("sync", help="Sync with the remote tracker")
    ps.add_argument("--direction", choices=SYNC_DIRECTIONS, help="Override github.sync_direction")
    ps.add_argument("--repo", help="Override target repository (owner/repo)")
    ps.add_argument("--dry-run", action="store_true", help="Show what a push would send")
    ps.add_argument("--json", action="store_true", help="Emit the sync result as JSON")
    ps.add_argument(
        "--watch",
        action="store_true",
        help="Repeat every sync_interval minutes (requires auto_sync)",
    )
    return p


def _is_quiet(args: argparse.Namespace) -> bool:
    return bool(args.quiet or os.environ.get("RELAYSYNC_QUIET") == "1")


def _open_store(args: argparse.Namespace) -> IssueStore:
    return IssueStore.for_project(args.project)


def _issue_json(issue: Issue) -> str:
    return json.dumps(issue.to_dict(), indent=2)


def _cmd_add(args: argparse.Namespace) -> int:
    store = _open_store(args)
    labels = args.labels if args.labels else suggest_labels(args.title)
    issue = store.add(args.title, body=args.body, labels=labels, state=args.state)
    if not _is_quiet(args):
        print_success(f"Added issue {issue.local_id}: {issue.title}")
    else:
        print(issue.local_id)
    return EXIT_OK


def _cmd_list(args: argparse.Namespace) -> int:
    issues = _open_store(args).list_issues(state=args.state, label=args.label)
    if args.json:
        print(json.dumps([issue.to_dict() for issue in issues], indent=2))
        return EXIT_OK
    for issue in issues:
        print(format_issue_row(issue))
    if not issues and not _is_quiet(args):
        print("No issues.")
    return EXIT_OK


def _cmd_show(args: argparse.Namespace) -> int:
    issue = _open_store(args).get(args.id)
    if args.json:
        print(_issue_json(issue))
        return EXIT_OK
    print(f"#{issue.local_id} {issue.title}")
    print(f"  state:   {issue.state}")
    print(f"  labels:  {', '.join(issue.labels) or '-'}")
    print(f"  remote:  {issue.remote_url or issue.remote_id or '-'}")
    print(f"  sync:    {format_sync_status(issue.sync_status)}")
    print(f"  updated: {format_timestamp(issue.updated_at)}")
    print(f"  synced:  {format_timestamp(issue.last_synced_at) or 'never'}")
    if issue.body:
        print()
        print(issue.body)
    return EXIT_OK


def _cmd_edit(args: argparse.Namespace) -> int:
    if args.title is None and args.body is None and args.state is None and args.labels is None:
        print_error("edit: nothing to change (use --title/--body/--state/--label)")
        return EXIT_FATAL
    issue = _open_store(args).update_fields(
        args.id, title=args.title, body=args.body, state=args.state, labels=args.labels
    )
    if not _is_quiet(args):
        print_success(f"Updated issue {issue.local_id} ({issue.sync_status.value})")
    return EXIT_OK


def _cmd_remove(args: argparse.Namespace) -> int:
    removed = _open_store(args).remove(args.id)
    if not _is_quiet(args):
        print_success(f"Removed issue {removed.local_id}: {removed.title}")
        if removed.remote_id is not None:
            print_warning(f"remote issue #{removed.remote_id} was not changed")
    return EXIT_OK


def _cmd_status(args: argparse.Namespace) -> int:
    cfg = load_config(args.project)
    store = _open_store(args)
    stats = store.stats()
    items: list[tuple[str, str | int]] = [
        ("Repository", cfg.repository or "(not configured)"),
        ("Total", stats["total"]),
        ("Open", stats.get("open", 0)),
        ("Closed", stats.get("closed", 0)),
    ]
    items.extend(
        (f"Label {key.split(':', 1)[1]}", value)
        for key, value in sorted(stats.items())
        if key.startswith("label:")
    )
    items.append(("Pending push", len(store.list_unsynced())))
    items.append(("Sync status", store.overall_sync_status().value))
    items.append(("Last synced", format_timestamp(cfg.last_synced_at) or "never"))
    print_summary_box("Status", items)
    return EXIT_OK


def _resolve_repository(cfg: RelayConfig, args: argparse.Namespace) -> str | None:
    if args.repo:
        return str(args.repo)
    if cfg.repository:
        return cfg.repository
    try:
        return detect_repository(cfg.project_dir)
    except ConfigurationError as exc:
        if not _is_quiet(args):
            print_warning(str(exc))
        return None


def _exit_code(result: SyncResult) -> int:
    if result.fatal_error:
        return EXIT_FATAL
    if result.has_errors:
        return EXIT_ERRORS
    return EXIT_OK


def _report(result: SyncResult, args: argparse.Namespace) -> None:
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return
    if _is_quiet(args):
        print(f"[sync] {result.summary_line()}")
        return
    print_summary_box(
        "Sync Summary",
        [
            ("Created locally", result.created_local),
            ("Created remotely", result.created_remote),
            ("Updated locally", result.updated_local),
            ("Updated remotely", result.updated_remote),
            ("Conflicts", result.conflicts_found),
            ("Unchanged", result.skipped),
        ],
    )
    for error in result.errors:
        print_error(error)
    if result.fatal_error:
        print_error(result.summary_line())
    else:
        print_success(result.summary_line())


def _run_sync_once(
    cfg: RelayConfig,
    engine: SyncEngine,
    direction: str,
    args: argparse.Namespace,
    cancel_event: threading.Event,
) -> int:
    result = engine.sync(direction, cancel_event=cancel_event)
    if not result.fatal_error and not result.cancelled:
        cfg.last_synced_at = result.finished_at
        save_config(cfg)
    _report(result, args)
    return _exit_code(result)


def _cmd_sync(args: argparse.Namespace) -> int:
    cfg = load_config(args.project)
    repository = _resolve_repository(cfg, args)
    direction = args.direction or cfg.sync_direction
    provider = build_provider(repository, closed_lookback_hours=cfg.closed_lookback_hours)
    engine = SyncEngine(_open_store(args), provider, repository, max_workers=cfg.max_workers)

    if args.dry_run:
        plan = engine.plan_push()
        if args.json:
            print(json.dumps({"direction": direction, "plan": plan}, indent=2))
        else:
            for entry in plan:
                target = f"#{entry['remote_id']}" if entry["remote_id"] is not None else "new"
                print(f"[dry-run] {entry['action']} local #{entry['local_id']} -> {target}: {entry['title']}")
            if not plan:
                print("[dry-run] nothing to push")
        return EXIT_OK

    cancel_event = threading.Event()
    if not args.watch:
        try:
            return _run_sync_once(cfg, engine, direction, args, cancel_event)
        except KeyboardInterrupt:
            cancel_event.set()
            return EXIT_ERRORS

    if not cfg.auto_sync or cfg.sync_interval <= 0:
        print_error("--watch requires github.auto_sync: true and a positive github.sync_interval")
        return EXIT_FATAL
    exit_code = EXIT_OK
    try:
        while not cancel_event.is_set():
            exit_code = _run_sync_once(cfg, engine, direction, args, cancel_event)
            cancel_event.wait(cfg.sync_interval * 60)
    except KeyboardInterrupt:
        cancel_event.set()
    return exit_code


def _build_handlers(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "add": lambda: _cmd_add(args),
        "list": lambda: _cmd_list(args),
        "show": lambda: _cmd_show(args),
        "edit": lambda: _cmd_edit(args),
        "remove": lambda: _cmd_remove(args),
        "status": lambda: _cmd_status(args),
        "sync": lambda: _cmd_sync(args),
    }


def _configure_logging(args: argparse.Namespace) -> None:
    try:
        cfg = load_config(args.project)
    except ConfigurationError:
        configure_logging(level="WARNING")
        return
    level = "WARNING" if _is_quiet(args) else cfg.logging_level
    configure_logging(json_logging=cfg.logging_json_enabled, level=level)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    args.project = str(Path(args.project))
    _configure_logging(args)
    handler = _build_handlers(args).get(args.cmd)
    if handler is None:  # pragma: no cover - argparse enforces valid choices
        parser.print_help()
        return EXIT_FATAL
    try:
        return int(handler())
    except ConfigurationError as exc:
        print_error(f"configuration error: {exc}")
        return EXIT_FATAL
    except RelaySyncError as exc:
        print_error(str(exc))
        return EXIT_ERRORS


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
