"""Bidirectional synchronization between the local issue store and a remote tracker.

Three entry points share one per-issue pipeline:

* ``pull``  - remote → local: materialize unknown remote issues, merge known
  ones field by field.
* ``push``  - local → remote: create remote issues for unlinked records and
  update linked records flagged as pending.
* ``bidirectional`` - pull then push, results combined.

Every issue is processed independently: a failure is recorded in
``SyncResult.errors`` (prefixed with the issue identifier) and the run moves
on. Only engine preconditions (no repository, provider not authenticated,
remote listing failed) abort a phase, reported via ``SyncResult.fatal_error``.

Conflict policy (pull merge, per field in ``SYNC_FIELDS``):

* never synced (``last_synced_at`` is None) → the remote value wins;
* otherwise the remote value is taken only if the remote changed the field
  after the last sync AND (the local side did not, or the remote record was
  updated later than the local record).

"Changed" is judged per field against ``Issue.sync_baseline`` (the values
both sides held at the last sync). Records without a baseline fall back to
record-level timestamps. Wall-clock ordering is a heuristic: clock skew and
same-second edits are not ordered reliably.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from typing import Any

from .concurrency import ConcurrencyConfig, ConcurrentProcessor, ResultCollector
from .errors import ConfigurationError, RemoteAPIError, classify_error, redact
from .field_mapper import (
    local_labels_to_remote,
    local_snapshot,
    local_state_to_remote,
    remote_snapshot,
)
from .issue_store import IssueStore
from .logging import StructuredLogger, get_logger
from .models import (
    STATE_CLOSED,
    SYNC_FIELDS,
    Issue,
    RemoteIssue,
    SyncResult,
    SyncStatus,
    normalize_labels,
    utcnow,
)
from .providers import AuthenticatedProvider, RemoteProvider

DIRECTION_PULL = "pull"
DIRECTION_PUSH = "push"
DIRECTION_BIDIRECTIONAL = "bidirectional"
SYNC_DIRECTIONS = (DIRECTION_PULL, DIRECTION_PUSH, DIRECTION_BIDIRECTIONAL)


def _comparable(name: str, value: Any) -> Any:
    if name == "labels":
        return normalize_labels(value)
    if value is None:
        return ""
    return value


def _latest_by_number(remote_issues: Iterable[RemoteIssue]) -> list[RemoteIssue]:
    """Collapse duplicate numbers (open + recently-closed listings can overlap)."""
    by_number: dict[int, RemoteIssue] = {}
    for remote in remote_issues:
        current = by_number.get(remote.number)
        if current is None or (
            remote.updated_at is not None
            and (current.updated_at is None or remote.updated_at > current.updated_at)
        ):
            by_number[remote.number] = remote
    return list(by_number.values())


class SyncEngine:
    """Orchestrates Pull, Push and Bidirectional sync for one project.

    Holds no authoritative state of its own: everything durable lives in the
    injected ``IssueStore``.
    """

    def __init__(
        self,
        store: IssueStore,
        provider: RemoteProvider,
        repository: str | None,
        *,
        clock: Callable[[], datetime] | None = None,
        max_workers: int = 1,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.repository = (repository or "").strip()
        self._clock = clock or utcnow
        self._logger = logger or get_logger()
        self._processor = ConcurrentProcessor(ConcurrencyConfig(max_workers), self._logger)

    def _now(self) -> datetime:
        return self._clock()

    # --- preconditions -----------------------------------------------------
    def _check_preconditions(self, result: SyncResult) -> bool:
        try:
            if not self.repository:
                raise ConfigurationError("remote repository not configured")
            if isinstance(self.provider, AuthenticatedProvider):
                try:
                    authenticated = self.provider.is_authenticated()
                except RemoteAPIError:
                    authenticated = False
                if not authenticated:
                    raise RemoteAPIError("remote authentication failed")
        except (ConfigurationError, RemoteAPIError) as exc:
            self._record_fatal(result, exc)
            return False
        return True

    def _record_fatal(self, result: SyncResult, exc: BaseException) -> None:
        info = classify_error(exc)
        self._logger.log_error(
            "sync_failed",
            category=info.category,
            transient=info.transient,
            original_type=info.original_type,
            error=info.message,
        )
        result.fail(info.message)

    def _record_issue_error(self, collector: ResultCollector, label: str, exc: BaseException) -> None:
        info = classify_error(exc)
        message = f"{label}: {info.message}"
        self._logger.log_error(
            "issue sync failed",
            error=info.message,
            category=info.category,
            issue=label,
        )
        collector.add_error(redact(message))

    # --- conflict resolution -----------------------------------------------
    def should_update_local(self, issue: Issue, remote: RemoteIssue) -> bool:
        """Whether a pulled remote record warrants a merge into ``issue``."""
        if issue.last_synced_at is None:
            return True
        if remote.updated_at is not None and remote.updated_at < issue.last_synced_at:
            return False
        return local_snapshot(issue) != remote_snapshot(remote)

    def resolve_fields(self, issue: Issue, remote: RemoteIssue) -> tuple[dict[str, Any], int]:
        """Return (fields to take from the remote, number of two-sided conflicts)."""
        local_view = local_snapshot(issue)
        remote_view = remote_snapshot(remote)
        differing = [name for name in SYNC_FIELDS if local_view[name] != remote_view[name]]

        last_synced = issue.last_synced_at
        if last_synced is None:
            return {name: remote_view[name] for name in differing}, 0

        remote_updated = remote.updated_at
        remote_after = remote_updated is None or remote_updated > last_synced
        local_after = issue.updated_at > last_synced
        remote_newer = remote_updated is None or remote_updated > issue.updated_at
        baseline = issue.sync_baseline or {}

        changes: dict[str, Any] = {}
        conflicts = 0
        for name in differing:
            if name in baseline:
                agreed = _comparable(name, baseline[name])
                remote_changed = remote_after and remote_view[name] != agreed
                local_changed = local_view[name] != agreed
            else:
                remote_changed = remote_after
                local_changed = local_after
            if remote_changed and local_changed:
                conflicts += 1
            if remote_changed and (not local_changed or remote_newer):
                changes[name] = remote_view[name]
        return changes, conflicts

    # --- pull --------------------------------------------------------------
    def pull(
        self,
        remote_issues: Sequence[RemoteIssue] | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        result = SyncResult()
        if not self._check_preconditions(result):
            result.finished_at = self._now()
            return result
        with self._logger.timed_operation("sync_pull", repository=self.repository):
            if remote_issues is None:
                try:
                    remote_issues = self.provider.fetch_all(self.repository)
                except RemoteAPIError as exc:
                    self._record_fatal(result, RemoteAPIError(f"failed to fetch remote issues: {exc}"))
                    result.finished_at = self._now()
                    return result
            candidates = _latest_by_number(remote_issues)
            collector = ResultCollector(result)
            ran = self._processor.process(
                candidates,
                lambda remote: self._pull_one(remote, collector),
                cancel_event=cancel_event,
                on_cancel=collector.mark_cancelled,
            )
            result.processed += ran
        result.finished_at = self._now()
        self._logger.log_operation(
            "sync_pull_complete",
            created_local=result.created_local,
            updated_local=result.updated_local,
            conflicts=result.conflicts_found,
            errors=len(result.errors),
        )
        return result

    def _pull_one(self, remote: RemoteIssue, collector: ResultCollector) -> None:
        try:
            # read, merge and write as one step under the store gate
            with self.store.transaction():
                self._merge_remote(remote, collector)
        except Exception as exc:  # noqa: BLE001 - isolate per-issue failures
            self._record_issue_error(collector, f"remote #{remote.number}", exc)

    def _merge_remote(self, remote: RemoteIssue, collector: ResultCollector) -> None:
        synced_at = self._now()
        existing = self.store.find_by_remote_id(remote.number)
        remote_view = remote_snapshot(remote)
        if existing is None:
            created = self.store.create_from_remote(
                remote_id=remote.number,
                title=remote_view["title"],
                body=remote_view["body"],
                state=remote_view["state"],
                labels=remote_view["labels"],
                remote_url=remote.url,
                synced_at=synced_at,
                baseline=remote_view,
            )
            collector.incr("created_local")
            self._logger.log_issue_action("pulled_new", local_id=created.local_id, remote_id=remote.number)
            return
        if not self.should_update_local(existing, remote):
            collector.incr("skipped")
            return
        changes, conflicts = self.resolve_fields(existing, remote)
        merged = {**local_snapshot(existing), **changes}
        pending = any(_comparable(name, merged[name]) != remote_view[name] for name in SYNC_FIELDS)
        self.store.apply_remote_changes(
            existing.local_id,
            changes,
            synced_at=synced_at,
            remote_url=remote.url,
            baseline=remote_view,
            sync_status=SyncStatus.SYNCING if pending else SyncStatus.SYNCED,
        )
        if conflicts:
            collector.incr("conflicts_found", conflicts)
        if changes:
            collector.incr("updated_local")
            self._logger.log_issue_action(
                "pulled_update",
                local_id=existing.local_id,
                remote_id=remote.number,
                fields=",".join(sorted(changes)),
            )
        else:
            collector.incr("skipped")

    # --- push --------------------------------------------------------------
    def plan_push(self, issues: Sequence[Issue] | None = None) -> list[dict[str, Any]]:
        """Describe what ``push`` would send, without touching anything."""
        plan: list[dict[str, Any]] = []
        for issue in self.store.list_unsynced() if issues is None else issues:
            plan.append(
                {
                    "local_id": issue.local_id,
                    "action": "create" if issue.remote_id is None else "update",
                    "remote_id": issue.remote_id,
                    "title": issue.title,
                    "state": local_state_to_remote(issue.state),
                    "labels": local_labels_to_remote(issue.labels),
                }
            )
        return plan

    def push(
        self,
        issues: Sequence[Issue] | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        result = SyncResult()
        if not self._check_preconditions(result):
            result.finished_at = self._now()
            return result
        with self._logger.timed_operation("sync_push", repository=self.repository):
            pending = self.store.list_unsynced() if issues is None else list(issues)
            collector = ResultCollector(result)
            ran = self._processor.process(
                pending,
                lambda issue: self._push_one(issue.local_id, collector),
                cancel_event=cancel_event,
                on_cancel=collector.mark_cancelled,
            )
            result.processed += ran
        result.finished_at = self._now()
        self._logger.log_operation(
            "sync_push_complete",
            created_remote=result.created_remote,
            updated_remote=result.updated_remote,
            errors=len(result.errors),
        )
        return result

    def _push_one(self, local_id: int, collector: ResultCollector) -> None:
        try:
            issue = self.store.update_sync_status(local_id, SyncStatus.SYNCING)
            snapshot = local_snapshot(issue)
            state = local_state_to_remote(issue.state)
            labels = local_labels_to_remote(issue.labels)
            remote_id = issue.remote_id
            if remote_id is None:
                created = self.provider.create(self.repository, issue.title, issue.body, labels)
                remote_id = created.number
                # the link is durable before any further remote call
                self.store.link_remote(
                    local_id,
                    remote_id,
                    remote_url=created.url,
                    last_synced_at=self._now(),
                    baseline=remote_snapshot(created),
                )
                if state == STATE_CLOSED:
                    self.provider.update(self.repository, remote_id, issue.title, issue.body, state, labels)
                counter, action = "created_remote", "pushed_new"
            else:
                self.provider.update(self.repository, remote_id, issue.title, issue.body, state, labels)
                counter, action = "updated_remote", "pushed_update"
            linked = self.store.link_remote(
                local_id,
                remote_id,
                last_synced_at=self._now(),
                baseline=snapshot,
                sync_status=SyncStatus.SYNCED,
                expected_updated_at=issue.updated_at,
            )
            collector.incr(counter)
            self._logger.log_issue_action(action, local_id=local_id, remote_id=remote_id)
            if linked.sync_status is not SyncStatus.SYNCED:
                self._logger.log_issue_action("edited_during_push", local_id=local_id, remote_id=remote_id)
        except Exception as exc:  # noqa: BLE001 - isolate per-issue failures
            self._mark_error(local_id)
            self._record_issue_error(collector, f"local #{local_id}", exc)

    def _mark_error(self, local_id: int) -> None:
        try:
            self.store.update_sync_status(local_id, SyncStatus.ERROR)
        except Exception as exc:  # noqa: BLE001 - best effort, the original failure is reported
            self._logger.debug(f"could not flag issue {local_id} as errored: {exc}")

    # --- combined ----------------------------------------------------------
    def bidirectional(self, *, cancel_event: threading.Event | None = None) -> SyncResult:
        pulled = self.pull(cancel_event=cancel_event)
        if pulled.fatal_error or pulled.cancelled:
            return pulled
        if cancel_event is not None and cancel_event.is_set():
            pulled.cancelled = True
            return pulled
        pushed = self.push(cancel_event=cancel_event)
        return pulled.combine(pushed)

    def sync(
        self,
        direction: str = DIRECTION_BIDIRECTIONAL,
        *,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        if direction == DIRECTION_PULL:
            return self.pull(cancel_event=cancel_event)
        if direction == DIRECTION_PUSH:
            return self.push(cancel_event=cancel_event)
        if direction == DIRECTION_BIDIRECTIONAL:
            return self.bidirectional(cancel_event=cancel_event)
        result = SyncResult()
        self._record_fatal(
            result,
            ConfigurationError(
                f"invalid sync direction {direction!r}; expected one of {', '.join(SYNC_DIRECTIONS)}"
            ),
        )
        result.finished_at = self._now()
        return result


__all__ = [
    "SyncEngine",
    "SYNC_DIRECTIONS",
    "DIRECTION_PULL",
    "DIRECTION_PUSH",
    "DIRECTION_BIDIRECTIONAL",
]
