"""Centralized retry / backoff helpers.

``run_with_retries`` wraps a thunk with exponential backoff plus jitter.
Only transient remote failures are retried: a ``RemoteAPIError`` flagged
``transient`` (HTTP 429/5xx, rate limits) or a ``gh`` CLI failure whose output
mentions a rate limit. Everything else propagates immediately.

Environment overrides:
  RELAYSYNC_RETRY_ATTEMPTS (default 3)
  RELAYSYNC_RETRY_BASE (seconds base, default 0.5)
  RELAYSYNC_RETRY_MAX_SLEEP (cap per sleep, unset = no cap)
"""

from __future__ import annotations

import os
import random
import re
import subprocess  # nosec B404 - inspected for gh CLI failures only
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import RemoteAPIError
from .logging import get_logger

T = TypeVar("T")

TRANSIENT_TOKENS = (
    "rate limit",
    "abuse detection",
    "secondary rate",
)

_RE_RETRY_AFTER = re.compile(r"retry[-\s]after:?\s*(\d+)", re.IGNORECASE)
_RE_SECONDS_HINT = re.compile(r"wait\s*(\d+)\s*seconds", re.IGNORECASE)
_JITTER = random.SystemRandom()


def _extract_explicit_backoff(text: str) -> float | None:
    """Extract an explicit backoff (seconds) from error output.

    Supports ``Retry-After: 12``, ``retry after 12`` and ``wait 30 seconds``.
    """
    if not text:
        return None
    for pattern in (_RE_RETRY_AFTER, _RE_SECONDS_HINT):
        m = pattern.search(text)
        if m:
            val = float(m.group(1))
            return val if val > 0 else None
    return None


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except ValueError:
        return default


@dataclass
class RetryConfig:
    attempts: int = field(default_factory=lambda: _env_int("RELAYSYNC_RETRY_ATTEMPTS", 3))
    base_sleep: float = field(default_factory=lambda: _env_float("RELAYSYNC_RETRY_BASE", 0.5))


def is_transient(output: str) -> bool:
    out_lower = output.lower()
    return any(tok in out_lower for tok in TRANSIENT_TOKENS)


def _compute_sleep(attempt: int, cfg: RetryConfig, out: str) -> float:
    explicit = _extract_explicit_backoff(out)
    backoff = cfg.base_sleep * (2 ** (attempt - 1)) + _JITTER.uniform(0, 0.25)
    sleep_for: float = explicit if explicit is not None else backoff
    max_cap_env = os.environ.get("RELAYSYNC_RETRY_MAX_SLEEP")
    if max_cap_env:
        try:
            cap = float(max_cap_env)
        except ValueError:
            return sleep_for
        if cap >= 0:
            sleep_for = min(sleep_for, cap)
    return sleep_for


def _retry_text(exc: BaseException) -> str | None:
    """Text to inspect for a retryable failure, or None when not retryable."""
    if isinstance(exc, RemoteAPIError):
        text = exc.response_text or str(exc)
        if exc.transient or is_transient(text):
            return text
        return None
    if isinstance(exc, subprocess.CalledProcessError):
        out = exc.output or ""
        if isinstance(out, bytes):
            out = out.decode("utf-8", errors="replace")
        return out if is_transient(out) else None
    return None


def run_with_retries(fn: Callable[[], T], *, cfg: RetryConfig | None = None) -> T:
    cfg = cfg or RetryConfig()
    attempts = max(1, cfg.attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except (RemoteAPIError, subprocess.CalledProcessError) as exc:
            text = _retry_text(exc)
            if attempt >= attempts or text is None:
                raise
            sleep_for = _compute_sleep(attempt, cfg, text)
            get_logger().warning(
                f"[retry] transient error, attempt {attempt}/{attempts}, sleeping {sleep_for:.2f}s",
                attempt=attempt,
            )
            time.sleep(sleep_for)
    raise RuntimeError("retry logic exited unexpectedly")  # pragma: no cover


__all__ = ["RetryConfig", "run_with_retries", "is_transient"]
