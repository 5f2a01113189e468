from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

STATE_OPEN = "open"
STATE_CLOSED = "closed"
VALID_STATES = (STATE_OPEN, STATE_CLOSED)

MAX_TITLE_LENGTH = 1000

# Fields compared and merged during sync, in merge order.
SYNC_FIELDS = ("title", "state", "labels", "body")


class SyncStatus(str, Enum):
    SYNCED = "Synced"
    SYNCING = "Syncing"
    ERROR = "Sync Error"

    @classmethod
    def parse(cls, value: Any) -> SyncStatus:
        if isinstance(value, SyncStatus):
            return value
        text = str(value or "").strip()
        for member in cls:
            if text.lower() in (member.value.lower(), member.name.lower()):
                return member
        # Legacy spelling written by older builds
        if text.lower() == "error":
            return cls.ERROR
        raise ValueError(f"invalid sync status {value!r}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 / ISO 8601 timestamp into an aware UTC datetime.

    Accepts the trailing ``Z`` GitHub emits. Naive values are assumed UTC.
    Returns None for empty input; raises ValueError for garbage.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def normalize_labels(labels: Any) -> list[str]:
    """Deduplicated, sorted label list; blank entries dropped."""
    if not labels:
        return []
    cleaned = {str(label).strip() for label in labels}
    cleaned.discard("")
    return sorted(cleaned)


@dataclass
class Issue:
    """A locally captured development issue.

    ``sync_baseline`` holds the field values both sides agreed on at
    ``last_synced_at``; the sync engine uses it to tell which side touched a
    given field since then.
    """

    local_id: int
    title: str
    body: str = ""
    state: str = STATE_OPEN
    labels: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    sync_status: SyncStatus = SyncStatus.SYNCED
    remote_id: int | None = None
    remote_url: str = ""
    last_synced_at: datetime | None = None
    sync_baseline: dict[str, Any] | None = None

    def copy(self) -> Issue:
        return copy.deepcopy(self)

    @property
    def needs_push(self) -> bool:
        return self.remote_id is None or self.sync_status != SyncStatus.SYNCED

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_id": self.local_id,
            "remote_id": self.remote_id,
            "remote_url": self.remote_url,
            "title": self.title,
            "body": self.body,
            "state": self.state,
            "labels": list(self.labels),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "sync_status": self.sync_status.value,
            "last_synced_at": format_timestamp(self.last_synced_at),
            "sync_baseline": copy.deepcopy(self.sync_baseline),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Issue:
        created = parse_timestamp(raw.get("created_at")) or utcnow()
        remote_id = raw.get("remote_id")
        baseline = raw.get("sync_baseline")
        return cls(
            local_id=int(raw["local_id"]),
            title=str(raw.get("title") or ""),
            body=str(raw.get("body") or ""),
            state=str(raw.get("state") or STATE_OPEN),
            labels=normalize_labels(raw.get("labels")),
            created_at=created,
            updated_at=parse_timestamp(raw.get("updated_at")) or created,
            sync_status=SyncStatus.parse(raw.get("sync_status") or SyncStatus.SYNCED),
            remote_id=int(remote_id) if remote_id is not None else None,
            remote_url=str(raw.get("remote_url") or ""),
            last_synced_at=parse_timestamp(raw.get("last_synced_at")),
            sync_baseline=dict(baseline) if isinstance(baseline, dict) else None,
        )


def _label_names(raw_labels: Any) -> list[str]:
    names: list[str] = []
    if isinstance(raw_labels, list):
        for lbl in raw_labels:
            if isinstance(lbl, dict):
                name = lbl.get("name")
                if isinstance(name, str):
                    names.append(name)
            elif isinstance(lbl, str):
                names.append(lbl)
    return names


@dataclass
class RemoteIssue:
    """An issue as reported by the remote tracker."""

    number: int
    title: str
    body: str = ""
    state: str = STATE_OPEN
    labels: list[str] = field(default_factory=list)
    url: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_at: datetime | None = None

    @classmethod
    def from_payload(cls, entry: dict[str, Any]) -> RemoteIssue:
        """Build from a REST API object or a ``gh ... --json`` object.

        Raises ValueError when the payload carries no usable issue number.
        """
        number = entry.get("number")
        if isinstance(number, bool) or not isinstance(number, int):
            raise ValueError(f"invalid issue number {number!r}")

        def _pick(*keys: str) -> Any:
            for key in keys:
                if entry.get(key) is not None:
                    return entry.get(key)
            return None

        return cls(
            number=number,
            title=str(entry.get("title") or ""),
            body=str(entry.get("body") or ""),
            state=str(entry.get("state") or STATE_OPEN).lower(),
            labels=_label_names(entry.get("labels")),
            url=str(_pick("html_url", "url") or ""),
            created_at=parse_timestamp(_pick("created_at", "createdAt")),
            updated_at=parse_timestamp(_pick("updated_at", "updatedAt")),
            closed_at=parse_timestamp(_pick("closed_at", "closedAt")),
        )


@dataclass
class SyncResult:
    """Outcome of one sync phase (or several combined)."""

    success: bool = True
    created_local: int = 0
    created_remote: int = 0
    updated_local: int = 0
    updated_remote: int = 0
    conflicts_found: int = 0
    skipped: int = 0
    processed: int = 0
    errors: list[str] = field(default_factory=list)
    fatal_error: str | None = None
    cancelled: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def changed(self) -> int:
        return self.created_local + self.created_remote + self.updated_local + self.updated_remote

    def fail(self, message: str) -> SyncResult:
        self.success = False
        self.fatal_error = message
        self.errors.append(message)
        return self

    def combine(self, other: SyncResult) -> SyncResult:
        return SyncResult(
            success=self.success and other.success,
            created_local=self.created_local + other.created_local,
            created_remote=self.created_remote + other.created_remote,
            updated_local=self.updated_local + other.updated_local,
            updated_remote=self.updated_remote + other.updated_remote,
            conflicts_found=self.conflicts_found + other.conflicts_found,
            skipped=self.skipped + other.skipped,
            processed=self.processed + other.processed,
            errors=[*self.errors, *other.errors],
            fatal_error=self.fatal_error or other.fatal_error,
            cancelled=self.cancelled or other.cancelled,
            started_at=min(self.started_at, other.started_at),
            finished_at=other.finished_at or self.finished_at,
        )

    def summary_line(self) -> str:
        if self.fatal_error:
            return f"sync failed: {self.fatal_error}"
        failed = len(self.errors)
        ok = max(self.processed - failed, 0)
        line = f"{ok} of {self.processed} synced"
        if failed:
            line += f", {failed} error" + ("s" if failed != 1 else "")
        if self.cancelled:
            line += " (cancelled)"
        return line

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "totals": {
                "created_local": self.created_local,
                "created_remote": self.created_remote,
                "updated_local": self.updated_local,
                "updated_remote": self.updated_remote,
                "conflicts_found": self.conflicts_found,
                "skipped": self.skipped,
                "processed": self.processed,
            },
            "errors": list(self.errors),
            "fatal_error": self.fatal_error,
            "cancelled": self.cancelled,
            "started_at": format_timestamp(self.started_at),
            "finished_at": format_timestamp(self.finished_at),
        }


__all__ = [
    "Issue",
    "RemoteIssue",
    "SyncResult",
    "SyncStatus",
    "STATE_OPEN",
    "STATE_CLOSED",
    "VALID_STATES",
    "MAX_TITLE_LENGTH",
    "SYNC_FIELDS",
    "utcnow",
    "parse_timestamp",
    "format_timestamp",
    "normalize_labels",
]
