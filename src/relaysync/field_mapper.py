"""Translation between local and remote issue vocabularies.

All functions are pure and total: unknown input passes through unchanged
instead of raising, so a label or state introduced on one side never gets
dropped by the other.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from .models import STATE_CLOSED, STATE_OPEN, Issue, RemoteIssue, normalize_labels

# local label -> remote label
_LOCAL_TO_REMOTE_LABELS = {
    "bug": "bug",
    "enhancement": "enhancement",
}

# lower-cased remote label -> local label
_REMOTE_TO_LOCAL_LABELS = {
    "bug": "bug",
    "enhancement": "enhancement",
    "feature": "enhancement",
}


def local_state_to_remote(state: str | None) -> str:
    """The remote side only knows open/closed; everything not closed is open."""
    if (state or "").strip().lower() == STATE_CLOSED:
        return STATE_CLOSED
    return STATE_OPEN


def remote_state_to_local(remote_state: str | None) -> str:
    text = remote_state or ""
    lowered = text.strip().lower()
    if lowered in (STATE_OPEN, STATE_CLOSED):
        return lowered
    return text


def _dedupe(labels: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for label in labels:
        if label not in seen:
            seen.add(label)
            out.append(label)
    return out


def local_labels_to_remote(labels: Iterable[str] | None) -> list[str]:
    return _dedupe(_LOCAL_TO_REMOTE_LABELS.get(label, label) for label in labels or ())


def remote_labels_to_local(labels: Iterable[str] | None) -> list[str]:
    return _dedupe(_REMOTE_TO_LOCAL_LABELS.get(label.lower(), label) for label in labels or ())


def local_snapshot(issue: Issue) -> dict[str, Any]:
    """Comparable view of the synced fields of a local issue."""
    return {
        "title": issue.title,
        "state": issue.state,
        "labels": normalize_labels(issue.labels),
        "body": issue.body or "",
    }


def remote_snapshot(remote: RemoteIssue) -> dict[str, Any]:
    """The remote issue expressed in local vocabulary."""
    return {
        "title": (remote.title or "").strip(),
        "state": remote_state_to_local(remote.state),
        "labels": normalize_labels(remote_labels_to_local(remote.labels)),
        "body": remote.body or "",
    }


__all__ = [
    "local_state_to_remote",
    "remote_state_to_local",
    "local_labels_to_remote",
    "remote_labels_to_local",
    "local_snapshot",
    "remote_snapshot",
]
