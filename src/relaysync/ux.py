"""Terminal output helpers for the relaysync CLI."""

from __future__ import annotations

import os
import sys
from collections.abc import Sequence
from typing import TextIO

from .models import Issue, SyncStatus


class Colors:
    """ANSI escape codes used by the CLI."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"


_STATUS_COLORS = {
    SyncStatus.SYNCED: Colors.GREEN,
    SyncStatus.SYNCING: Colors.YELLOW,
    SyncStatus.ERROR: Colors.RED,
}


def _supports_color(stream: TextIO | None = None) -> bool:
    stream = stream or sys.stdout
    if os.environ.get("NO_COLOR") or os.environ.get("TERM") == "dumb":
        return False
    return hasattr(stream, "isatty") and stream.isatty()


def colorize(text: str, color: str, bold: bool = False, stream: TextIO | None = None) -> str:
    if not _supports_color(stream):
        return text
    prefix = (Colors.BOLD if bold else "") + color
    return f"{prefix}{text}{Colors.RESET}"


def print_success(message: str, stream: TextIO | None = None) -> None:
    stream = stream or sys.stdout
    print(colorize("✓", Colors.GREEN, bold=True, stream=stream) + " " + message, file=stream)


def print_error(message: str, stream: TextIO | None = None) -> None:
    stream = stream or sys.stderr
    print(colorize("✗", Colors.RED, bold=True, stream=stream) + " " + message, file=stream)


def print_warning(message: str, stream: TextIO | None = None) -> None:
    stream = stream or sys.stderr
    print(colorize("⚠", Colors.YELLOW, bold=True, stream=stream) + " " + message, file=stream)


def format_sync_status(status: SyncStatus, stream: TextIO | None = None) -> str:
    return colorize(status.value, _STATUS_COLORS.get(status, Colors.DIM), stream=stream)


def format_issue_row(issue: Issue, stream: TextIO | None = None) -> str:
    """One-line listing: id, state, remote link, labels, title."""
    remote = f"#{issue.remote_id}" if issue.remote_id is not None else "-"
    labels = ",".join(issue.labels)
    state_color = Colors.DIM if issue.state == "closed" else Colors.CYAN
    state = colorize(issue.state.ljust(6), state_color, stream=stream)
    status = format_sync_status(issue.sync_status, stream)
    row = f"{issue.local_id:>4}  {state}  {remote:>6}  {status}  {issue.title}"
    if labels:
        row += f"  [{labels}]"
    return row


def print_summary_box(
    title: str, items: Sequence[tuple[str, str | int]], stream: TextIO | None = None
) -> None:
    """Key/value box used for the sync summary."""
    stream = stream or sys.stdout
    max_key_len = max((len(k) for k, _ in items), default=0)

    print(colorize(f"\n{title}", Colors.CYAN, bold=True, stream=stream), file=stream)
    print(colorize("─" * 60, Colors.DIM, stream=stream), file=stream)
    for key, value in items:
        value_str = str(value)
        if isinstance(value, int) and value > 0:
            value_str = colorize(value_str, Colors.GREEN, bold=True, stream=stream)
        print(f"  {key.ljust(max_key_len)}  {value_str}", file=stream)
    print(colorize("─" * 60, Colors.DIM, stream=stream), file=stream)


__all__ = [
    "Colors",
    "colorize",
    "format_issue_row",
    "format_sync_status",
    "print_error",
    "print_success",
    "print_summary_box",
    "print_warning",
]
