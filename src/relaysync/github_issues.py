"""GitHub CLI (``gh``) implementation of the remote provider contract.

All command construction and output parsing for ``gh`` lives here so the sync
engine only ever sees ``RemoteIssue`` objects and ``RemoteAPIError``.

Listing mirrors what a user sees in the tracker: every open issue plus the
issues closed within ``closed_lookback_hours`` (default 24h). Older closed
issues are never fetched, so closing an issue remotely long before the next
sync goes unnoticed locally.

``build_provider`` picks the REST client when a token is available in the
environment and falls back to ``gh`` otherwise.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import subprocess  # nosec B404 - subprocess is required for GitHub CLI invocation
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from .errors import RemoteAPIError
from .github_rest import DEFAULT_API_URL, GitHubRestClient
from .logging import get_logger
from .models import STATE_CLOSED, STATE_OPEN, RemoteIssue, utcnow
from .retry import is_transient, run_with_retries

NUMBER_PATTERN = re.compile(r"/issues/(\d+)")
LIST_FIELDS = "number,title,body,state,labels,url,createdAt,updatedAt,closedAt"
LIST_LIMIT = "1000"
TOKEN_ENV_VARS = ("RELAYSYNC_GITHUB_TOKEN", "GITHUB_TOKEN", "GH_TOKEN")


class GhCliClient:
    """Thin wrapper around ``gh issue`` subcommands.

    Every failure surfaces as ``RemoteAPIError``; rate-limit output is retried
    through ``run_with_retries`` first.
    """

    def __init__(
        self,
        *,
        closed_lookback_hours: int = 24,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.closed_lookback_hours = closed_lookback_hours
        self._clock = clock or utcnow
        self._gh_path = shutil.which("gh")

    # --- internal helpers -------------------------------------------------
    def _base_cmd(self, repository: str | None, *parts: str) -> list[str]:
        cmd: list[str] = [self._gh_path or "gh", *parts]
        if repository:
            cmd.extend(["-R", repository])
        return cmd

    def _run(self, cmd: list[str]) -> str:
        get_logger().debug("gh command", command=" ".join(cmd[1:3]))
        try:
            return run_with_retries(
                lambda: subprocess.check_output(  # nosec B603 B607 - command uses controlled arguments
                    cmd, text=True, stderr=subprocess.STDOUT
                )
            )
        except FileNotFoundError as exc:
            raise RemoteAPIError("gh CLI not found; install it or set GITHUB_TOKEN") from exc
        except subprocess.CalledProcessError as exc:
            output = (exc.output or "").strip()
            raise RemoteAPIError(
                f"gh {' '.join(cmd[1:3])} failed: {output}",
                response_text=output,
                transient=is_transient(output),
            ) from exc

    @staticmethod
    def _parse_issue_list(payload: str) -> list[RemoteIssue]:
        if not payload.strip():
            return []
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise RemoteAPIError(f"unparseable gh issue list output: {exc}") from exc
        if not isinstance(data, list):
            raise RemoteAPIError("gh issue list did not return a JSON array")
        issues: list[RemoteIssue] = []
        for entry in data:
            if not isinstance(entry, dict):
                continue
            try:
                issues.append(RemoteIssue.from_payload(entry))
            except ValueError as exc:
                get_logger().warning(f"skipping malformed remote issue: {exc}")
        return issues

    def _list(self, repository: str, *extra: str) -> list[RemoteIssue]:
        cmd = self._base_cmd(
            repository, "issue", "list", *extra, "--limit", LIST_LIMIT, "--json", LIST_FIELDS
        )
        return self._parse_issue_list(self._run(cmd))

    def _view(self, repository: str, remote_id: int) -> dict[str, Any]:
        out = self._run(self._base_cmd(repository, "issue", "view", str(remote_id), "--json", "state,labels"))
        try:
            data = json.loads(out or "{}")
        except json.JSONDecodeError as exc:
            raise RemoteAPIError(f"unparseable gh issue view output: {exc}") from exc
        return data if isinstance(data, dict) else {}

    # --- provider contract ------------------------------------------------
    def fetch_all(self, repository: str) -> list[RemoteIssue]:
        issues = self._list(repository, "--state", STATE_OPEN)
        since = self._clock() - timedelta(hours=self.closed_lookback_hours)
        issues.extend(
            self._list(
                repository,
                "--state",
                STATE_CLOSED,
                "--search",
                f"closed:>{since.strftime('%Y-%m-%dT%H:%M:%SZ')}",
            )
        )
        return issues

    def create(
        self, repository: str, title: str, body: str, labels: Sequence[str]
    ) -> RemoteIssue:
        cmd = self._base_cmd(repository, "issue", "create", "--title", title, "--body", body)
        if labels:
            cmd.extend(["--label", ",".join(labels)])
        out = self._run(cmd)
        match = NUMBER_PATTERN.search(out)
        if not match:
            raise RemoteAPIError(f"could not parse issue number from gh output: {out.strip()}")
        url = out.strip().splitlines()[-1] if out.strip() else ""
        return RemoteIssue(
            number=int(match.group(1)),
            title=title,
            body=body,
            state=STATE_OPEN,
            labels=list(labels),
            url=url,
        )

    def update(
        self,
        repository: str,
        remote_id: int,
        title: str,
        body: str,
        state: str,
        labels: Sequence[str],
    ) -> None:
        current = self._view(repository, remote_id)
        current_labels = [
            lbl.get("name") for lbl in current.get("labels") or [] if isinstance(lbl, dict)
        ]
        wanted = list(labels)
        to_remove = [name for name in current_labels if isinstance(name, str) and name not in wanted]
        to_add = [name for name in wanted if name not in current_labels]

        cmd = self._base_cmd(
            repository, "issue", "edit", str(remote_id), "--title", title, "--body", body
        )
        if to_remove:
            cmd.extend(["--remove-label", ",".join(to_remove)])
        if to_add:
            cmd.extend(["--add-label", ",".join(to_add)])
        self._run(cmd)

        current_state = str(current.get("state") or "").lower()
        if state == STATE_CLOSED and current_state != STATE_CLOSED:
            self._run(self._base_cmd(repository, "issue", "close", str(remote_id)))
        elif state != STATE_CLOSED and current_state == STATE_CLOSED:
            self._run(self._base_cmd(repository, "issue", "reopen", str(remote_id)))

    def is_authenticated(self) -> bool:
        try:
            self._run(self._base_cmd(None, "auth", "status"))
        except RemoteAPIError:
            return False
        return True


def _select_token() -> str | None:
    for name in TOKEN_ENV_VARS:
        raw = os.environ.get(name)
        if raw is None:
            continue
        token = raw.strip()
        if token:
            return token
    return None


def _env_flag(name: str) -> bool:
    value = os.environ.get(name)
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def build_provider(
    repository: str | None, *, closed_lookback_hours: int = 24
) -> GitHubRestClient | GhCliClient:
    """REST client when a token is configured, ``gh`` CLI otherwise.

    ``RELAYSYNC_REST_DISABLED=1`` forces the CLI path.
    """
    token = None if _env_flag("RELAYSYNC_REST_DISABLED") else _select_token()
    if token:
        base_url = (os.environ.get("RELAYSYNC_GITHUB_API") or "").strip() or DEFAULT_API_URL
        get_logger().debug("using REST provider", base_url=base_url)
        return GitHubRestClient(token=token, repository=repository, base_url=base_url)
    get_logger().debug("using gh CLI provider")
    return GhCliClient(closed_lookback_hours=closed_lookback_hours)


__all__ = ["GhCliClient", "build_provider", "NUMBER_PATTERN", "TOKEN_ENV_VARS"]
