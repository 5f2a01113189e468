"""Error taxonomy & redaction.

Every failure the sync core raises derives from ``RelaySyncError`` so callers
can catch the family in one place. The engine decides per category whether a
failure is recorded against a single issue (validation, persistence, remote
API) or aborts the whole run (configuration).

Public API:
- exception classes (ValidationError, NotFoundError, PersistenceError,
  RemoteAPIError, ConfigurationError)
- classify_error(exc) -> ErrorInfo
- redact(text) -> str
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any


class RelaySyncError(Exception):
    """Base class for relaysync failures."""


class ValidationError(RelaySyncError, ValueError):
    """Issue content rejected (empty title, too long, bad state, ...)."""


class NotFoundError(RelaySyncError, LookupError):
    """Unknown local or remote issue id."""


class PersistenceError(RelaySyncError):
    """Durable write or read of the issue store failed."""


class ConfigurationError(RelaySyncError):
    """Missing or invalid configuration (e.g. no repository set)."""


class RemoteAPIError(RelaySyncError):
    """Raised when the remote tracker rejects or fails a request."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        response_text: str | None = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.status = status
        self.response_text = response_text
        self.transient = transient


_SENSITIVE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"ghp_[A-Za-z0-9]{20,40}"),  # GitHub classic tokens
    re.compile(r"gh[osu]_[A-Za-z0-9]{20,40}"),  # OAuth / server / user-to-server tokens
    re.compile(r"github_pat_\w{20,}"),  # GitHub fine-grained tokens
    re.compile(r"(?i)(authorization:\s*(?:bearer|token)\s+)\S+"),
]

_REDACTION_PLACEHOLDER = "<redacted>"


@dataclass
class ErrorInfo:
    category: str
    message: str
    original_type: str
    transient: bool = False
    details: dict[str, Any] | None = None


def redact(text: str) -> str:
    """Replace token-looking substrings with a placeholder."""
    if not text:
        return text
    redacted = text
    for pat in _SENSITIVE_PATTERNS:
        if pat.groups:
            redacted = pat.sub(lambda m: m.group(1) + _REDACTION_PLACEHOLDER, redacted)
        else:
            redacted = pat.sub(_REDACTION_PLACEHOLDER, redacted)
    return redacted


def classify_error(exc: BaseException) -> ErrorInfo:
    """Best-effort classification of an exception.

    Typed errors win; otherwise fall back to keyword sniffing of the message
    (rate limits and network trouble are transient).
    """
    msg = str(exc) if exc else ""
    low = msg.lower()
    name = exc.__class__.__name__

    if isinstance(exc, ValidationError):
        return ErrorInfo("validation", redact(msg), name)
    if isinstance(exc, NotFoundError):
        return ErrorInfo("not_found", redact(msg), name)
    if isinstance(exc, PersistenceError):
        return ErrorInfo("persistence", redact(msg), name)
    if isinstance(exc, ConfigurationError):
        return ErrorInfo("configuration", redact(msg), name)
    if "rate limit" in low or "secondary rate" in low:
        return ErrorInfo("remote.rate_limit", redact(msg), name, transient=True)
    if "abuse" in low:
        return ErrorInfo("remote.abuse", redact(msg), name, transient=True)
    if any(k in low for k in ("timeout", "timed out", "connection reset", "temporarily unavailable")):
        return ErrorInfo("network", redact(msg), name, transient=True)
    if isinstance(exc, RemoteAPIError):
        details = {"status": exc.status} if exc.status is not None else None
        return ErrorInfo("remote", redact(msg), name, transient=exc.transient, details=details)
    return ErrorInfo("generic", redact(msg), name)


__all__ = [
    "RelaySyncError",
    "ValidationError",
    "NotFoundError",
    "PersistenceError",
    "ConfigurationError",
    "RemoteAPIError",
    "ErrorInfo",
    "classify_error",
    "redact",
]
