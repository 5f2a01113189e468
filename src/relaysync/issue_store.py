"""Durable, file-backed issue collection.

The store is the single source of truth between sync runs. The whole
collection lives in one JSON array (``<project>/.relay/issues.json``) and
every mutation rewrites it atomically: serialize, write to a temp file in the
same directory, fsync, ``os.replace`` over the live file. A failed write
leaves both the file and the in-memory cache exactly as they were.

A companion ``issues.json.seq`` file records the id high-water mark so
removed ids are never handed out again.
"""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import NotFoundError, PersistenceError, ValidationError
from .logging import get_logger
from .models import (
    MAX_TITLE_LENGTH,
    STATE_OPEN,
    VALID_STATES,
    Issue,
    SyncStatus,
    normalize_labels,
    utcnow,
)

RELAY_DIR = ".relay"
ISSUES_FILE = "issues.json"

_BUG_KEYWORDS = ("bug", "fix", "error", "issue", "problem", "crash", "fail", "broken", "exception")

Clock = Callable[[], datetime]


def suggest_labels(title: str) -> list[str]:
    """Keyword categorisation for freshly captured issues."""
    lowered = title.lower()
    if any(keyword in lowered for keyword in _BUG_KEYWORDS):
        return ["bug"]
    return ["enhancement"]


def validate_title(title: str) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValidationError("issue title cannot be empty")
    if len(cleaned) > MAX_TITLE_LENGTH:
        raise ValidationError(f"issue title too long (max {MAX_TITLE_LENGTH} characters)")
    return cleaned


def validate_state(state: str) -> str:
    cleaned = (state or "").strip().lower()
    if cleaned not in VALID_STATES:
        raise ValidationError(
            f"invalid state {state!r}. Valid states: {', '.join(VALID_STATES)}"
        )
    return cleaned


def write_atomic(path: Path, text: str) -> None:
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise


class IssueStore:
    """Issue collection persisted as a JSON array.

    All read-modify-persist sequences run under one re-entrant lock so a
    background sync and a foreground edit cannot interleave. Returned issues
    are copies; mutate through the store.
    """

    def __init__(self, path: str | Path, *, clock: Clock | None = None) -> None:
        self._path = Path(path)
        self._seq_path = self._path.with_name(self._path.name + ".seq")
        self._clock = clock or utcnow
        self._lock = threading.RLock()
        self._logger = get_logger()
        self._issues: list[Issue] = []
        self._next_id = 1
        self.reload()

    @classmethod
    def for_project(cls, project_dir: str | Path, *, clock: Clock | None = None) -> IssueStore:
        return cls(Path(project_dir) / RELAY_DIR / ISSUES_FILE, clock=clock)

    @property
    def path(self) -> Path:
        return self._path

    def _now(self) -> datetime:
        return self._clock()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the store gate across a read, decide, write sequence."""
        with self._lock:
            yield

    # --- loading / persistence ------------------------------------------
    def reload(self) -> None:
        with self._lock:
            self._issues = self._load_issues()
            high_water = max((issue.local_id for issue in self._issues), default=0)
            self._next_id = max(high_water, self._load_sequence()) + 1

    def _load_issues(self) -> list[Issue]:
        if not self._path.exists():
            return []
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"failed to read issues file {self._path}: {exc}") from exc
        if not text.strip():
            return []
        try:
            raw: Any = json.loads(text)
            if not isinstance(raw, list):
                raise ValueError("expected a JSON array")
            return [Issue.from_dict(entry) for entry in raw]
        except (ValueError, KeyError, TypeError) as exc:
            raise PersistenceError(f"failed to parse issues file {self._path}: {exc}") from exc

    def _load_sequence(self) -> int:
        try:
            return int(self._seq_path.read_text(encoding="utf-8").strip() or 0)
        except (OSError, ValueError):
            return 0

    def _serialize(self, issues: list[Issue]) -> str:
        return json.dumps([issue.to_dict() for issue in issues], indent=2) + "\n"

    def _commit(self, issues: list[Issue], next_id: int | None = None) -> None:
        """Persist ``issues`` and only then adopt them as the cached state.

        The main file is replaced first; the ``.seq`` high-water mark follows.
        If the mark cannot be written the previous main file is put back, so
        disk and cache either both move or both stay.
        """
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            write_atomic(self._path, self._serialize(issues))
        except OSError as exc:
            self._logger.log_error("issue store write failed", error=str(exc), path=str(self._path))
            raise PersistenceError(f"failed to save issues file {self._path}: {exc}") from exc
        if next_id is not None and next_id != self._next_id:
            try:
                write_atomic(self._seq_path, f"{next_id - 1}\n")
            except OSError as exc:
                self._restore_previous()
                self._logger.log_error(
                    "issue store write failed", error=str(exc), path=str(self._seq_path)
                )
                raise PersistenceError(f"failed to save id sequence {self._seq_path}: {exc}") from exc
        self._issues = issues
        if next_id is not None:
            self._next_id = next_id

    def _restore_previous(self) -> None:
        try:
            write_atomic(self._path, self._serialize(self._issues))
        except OSError as exc:
            self._logger.log_error(
                "issue store rollback failed", error=str(exc), path=str(self._path)
            )

    def _index_of(self, local_id: int) -> int:
        for idx, issue in enumerate(self._issues):
            if issue.local_id == local_id:
                return idx
        raise NotFoundError(f"issue with ID {local_id} not found")

    def _ensure_remote_free(self, remote_id: int, local_id: int | None) -> None:
        for issue in self._issues:
            if issue.remote_id == remote_id and issue.local_id != local_id:
                raise ValidationError(
                    f"remote issue #{remote_id} is already linked to local issue {issue.local_id}"
                )

    def _mutate(self, local_id: int, change: Callable[[Issue], None], *, touch: bool) -> Issue:
        with self._lock:
            idx = self._index_of(local_id)
            updated = self._issues[idx].copy()
            change(updated)
            if touch:
                updated.updated_at = self._now()
            issues = list(self._issues)
            issues[idx] = updated
            self._commit(issues)
            return updated.copy()

    # --- creation ----------------------------------------------------------
    def add(
        self,
        title: str,
        body: str = "",
        labels: Iterable[str] | None = None,
        state: str = STATE_OPEN,
    ) -> Issue:
        title = validate_title(title)
        state = validate_state(state)
        with self._lock:
            now = self._now()
            issue = Issue(
                local_id=self._next_id,
                title=title,
                body=body or "",
                state=state,
                labels=normalize_labels(labels),
                created_at=now,
                updated_at=now,
                sync_status=SyncStatus.SYNCED,
            )
            self._commit([*self._issues, issue], next_id=self._next_id + 1)
        self._logger.log_issue_action("added", local_id=issue.local_id)
        return issue.copy()

    def create_from_remote(
        self,
        *,
        remote_id: int,
        title: str,
        body: str,
        state: str,
        labels: Iterable[str],
        remote_url: str,
        synced_at: datetime,
        baseline: dict[str, Any] | None = None,
    ) -> Issue:
        """Materialize a remote issue locally in a single durable write."""
        title = validate_title(title)
        state = validate_state(state)
        with self._lock:
            self._ensure_remote_free(remote_id, None)
            issue = Issue(
                local_id=self._next_id,
                title=title,
                body=body or "",
                state=state,
                labels=normalize_labels(labels),
                created_at=synced_at,
                updated_at=synced_at,
                sync_status=SyncStatus.SYNCED,
                remote_id=remote_id,
                remote_url=remote_url,
                last_synced_at=synced_at,
                sync_baseline=baseline,
            )
            self._commit([*self._issues, issue], next_id=self._next_id + 1)
            return issue.copy()

    # --- reads -------------------------------------------------------------
    def get(self, local_id: int) -> Issue:
        with self._lock:
            return self._issues[self._index_of(local_id)].copy()

    def find_by_remote_id(self, remote_id: int) -> Issue | None:
        with self._lock:
            for issue in self._issues:
                if issue.remote_id == remote_id:
                    return issue.copy()
        return None

    def list_issues(self, state: str | None = None, label: str | None = None) -> list[Issue]:
        """Snapshot filtered by state and/or label, newest first."""
        with self._lock:
            snapshot = [issue.copy() for issue in self._issues]
        out = [
            issue
            for issue in snapshot
            if (not state or issue.state == state) and (not label or label in issue.labels)
        ]
        out.sort(key=lambda issue: (issue.created_at, issue.local_id), reverse=True)
        return out

    def list_unsynced(self) -> list[Issue]:
        with self._lock:
            return [issue.copy() for issue in self._issues if issue.needs_push]

    def __len__(self) -> int:
        with self._lock:
            return len(self._issues)

    # --- content mutations -------------------------------------------------
    def _mark_pending(self, issue: Issue, mark_pending: bool) -> None:
        if mark_pending and issue.remote_id is not None:
            issue.sync_status = SyncStatus.SYNCING

    def update_title(self, local_id: int, title: str, *, mark_pending: bool = True) -> Issue:
        title = validate_title(title)

        def _change(issue: Issue) -> None:
            issue.title = title
            self._mark_pending(issue, mark_pending)

        return self._mutate(local_id, _change, touch=True)

    def update_body(self, local_id: int, body: str, *, mark_pending: bool = True) -> Issue:
        def _change(issue: Issue) -> None:
            issue.body = body or ""
            self._mark_pending(issue, mark_pending)

        return self._mutate(local_id, _change, touch=True)

    def update_state(self, local_id: int, state: str, *, mark_pending: bool = True) -> Issue:
        state = validate_state(state)

        def _change(issue: Issue) -> None:
            issue.state = state
            self._mark_pending(issue, mark_pending)

        return self._mutate(local_id, _change, touch=True)

    def update_labels(
        self, local_id: int, labels: Iterable[str], *, mark_pending: bool = True
    ) -> Issue:
        cleaned = normalize_labels(labels)

        def _change(issue: Issue) -> None:
            issue.labels = cleaned
            self._mark_pending(issue, mark_pending)

        return self._mutate(local_id, _change, touch=True)

    def update_fields(
        self,
        local_id: int,
        *,
        title: str | None = None,
        body: str | None = None,
        state: str | None = None,
        labels: Iterable[str] | None = None,
        mark_pending: bool = True,
    ) -> Issue:
        """Apply several content edits in one durable write; ``None`` means unchanged."""
        fields: dict[str, Any] = {}
        if title is not None:
            fields["title"] = validate_title(title)
        if body is not None:
            fields["body"] = body
        if state is not None:
            fields["state"] = validate_state(state)
        if labels is not None:
            fields["labels"] = normalize_labels(labels)
        if not fields:
            raise ValidationError("no fields to update")

        def _change(issue: Issue) -> None:
            for name, value in fields.items():
                setattr(issue, name, value)
            self._mark_pending(issue, mark_pending)

        return self._mutate(local_id, _change, touch=True)

    # --- sync bookkeeping (no updated_at bump) -----------------------------
    def update_sync_status(self, local_id: int, status: SyncStatus | str) -> Issue:
        try:
            parsed = SyncStatus.parse(status)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        def _change(issue: Issue) -> None:
            issue.sync_status = parsed

        return self._mutate(local_id, _change, touch=False)

    def link_remote(
        self,
        local_id: int,
        remote_id: int,
        *,
        remote_url: str | None = None,
        last_synced_at: datetime | None = None,
        baseline: dict[str, Any] | None = None,
        sync_status: SyncStatus | None = None,
        expected_updated_at: datetime | None = None,
    ) -> Issue:
        """Record the remote link and sync bookkeeping.

        With ``expected_updated_at`` the write is a compare-and-set: if the
        issue was edited since that timestamp, the edit is kept pending
        (``Syncing``) instead of taking ``sync_status``. ``baseline`` is still
        recorded, since it describes what the remote holds.
        """
        with self._lock:
            self._ensure_remote_free(remote_id, local_id)

            def _change(issue: Issue) -> None:
                edited = expected_updated_at is not None and issue.updated_at != expected_updated_at
                issue.remote_id = remote_id
                if remote_url is not None:
                    issue.remote_url = remote_url
                if last_synced_at is not None:
                    issue.last_synced_at = last_synced_at
                if baseline is not None:
                    issue.sync_baseline = dict(baseline)
                if edited:
                    issue.sync_status = SyncStatus.SYNCING
                elif sync_status is not None:
                    issue.sync_status = sync_status

            return self._mutate(local_id, _change, touch=False)

    def apply_remote_changes(
        self,
        local_id: int,
        changes: dict[str, Any],
        *,
        synced_at: datetime,
        remote_url: str | None = None,
        baseline: dict[str, Any] | None = None,
        sync_status: SyncStatus = SyncStatus.SYNCED,
    ) -> Issue:
        """Apply merged remote field values and the new sync baseline at once.

        ``updated_at`` moves to ``synced_at`` only when a field actually changed.
        """
        validated: dict[str, Any] = {}
        for name, value in changes.items():
            if name == "title":
                validated[name] = validate_title(value)
            elif name == "state":
                validated[name] = validate_state(value)
            elif name == "labels":
                validated[name] = normalize_labels(value)
            elif name == "body":
                validated[name] = value or ""
            else:
                raise ValidationError(f"unknown issue field {name!r}")

        def _change(issue: Issue) -> None:
            for name, value in validated.items():
                setattr(issue, name, value)
            if validated:
                issue.updated_at = synced_at
            issue.last_synced_at = synced_at
            if remote_url:
                issue.remote_url = remote_url
            if baseline is not None:
                issue.sync_baseline = dict(baseline)
            issue.sync_status = sync_status

        return self._mutate(local_id, _change, touch=False)

    def remove(self, local_id: int) -> Issue:
        with self._lock:
            idx = self._index_of(local_id)
            removed = self._issues[idx]
            self._commit([issue for i, issue in enumerate(self._issues) if i != idx])
        self._logger.log_issue_action("removed", local_id=local_id, remote_id=removed.remote_id)
        return removed.copy()

    # --- aggregates --------------------------------------------------------
    def stats(self) -> dict[str, int]:
        with self._lock:
            stats: dict[str, int] = {"total": len(self._issues)}
            for state in VALID_STATES:
                stats[state] = 0
            for issue in self._issues:
                stats[issue.state] = stats.get(issue.state, 0) + 1
                for label in issue.labels:
                    stats[f"label:{label}"] = stats.get(f"label:{label}", 0) + 1
            return stats

    def overall_sync_status(self) -> SyncStatus:
        """Error wins over Syncing, which wins over Synced."""
        with self._lock:
            statuses = {issue.sync_status for issue in self._issues}
        if SyncStatus.ERROR in statuses:
            return SyncStatus.ERROR
        if SyncStatus.SYNCING in statuses:
            return SyncStatus.SYNCING
        return SyncStatus.SYNCED


__all__ = [
    "IssueStore",
    "RELAY_DIR",
    "ISSUES_FILE",
    "suggest_labels",
    "validate_title",
    "validate_state",
    "write_atomic",
]
