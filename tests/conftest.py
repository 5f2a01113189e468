"""Pytest configuration for relaysync tests.

Ensures the in-repo ``src`` directory is on ``sys.path`` so the package can be
imported without an editable install, and provides an in-memory remote
provider plus a deterministic clock shared by store, engine and provider.
"""

from __future__ import annotations

import copy
import sys
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from relaysync.errors import RemoteAPIError  # noqa: E402
from relaysync.issue_store import IssueStore  # noqa: E402
from relaysync.models import RemoteIssue  # noqa: E402

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TickClock:
    """Each call advances by one second, so every event is strictly ordered."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current

    def advance(self, seconds: int) -> None:
        self.current += timedelta(seconds=seconds)


class FakeProvider:
    """In-memory remote tracker honouring the provider contract."""

    def __init__(self, clock: TickClock) -> None:
        self.clock = clock
        self.issues: dict[int, RemoteIssue] = {}
        self.next_number = 100
        self.authenticated = True
        self.fetch_error: Exception | None = None
        self.fail_titles: set[str] = set()
        self.update_failures = 0
        self.on_update: Callable[[], object] | None = None
        self.calls: list[tuple[str, object]] = []

    def seed(self, number: int, title: str, **fields: object) -> RemoteIssue:
        now = self.clock()
        remote = RemoteIssue(
            number=number,
            title=title,
            url=f"https://github.com/acme/widgets/issues/{number}",
            created_at=now,
            updated_at=now,
            **fields,  # type: ignore[arg-type]
        )
        self.issues[number] = remote
        return remote

    def edit(self, number: int, **fields: object) -> None:
        remote = self.issues[number]
        for name, value in fields.items():
            setattr(remote, name, value)
        remote.updated_at = self.clock()

    def is_authenticated(self) -> bool:
        return self.authenticated

    def fetch_all(self, repository: str) -> list[RemoteIssue]:
        self.calls.append(("fetch_all", repository))
        if self.fetch_error is not None:
            raise self.fetch_error
        return [copy.deepcopy(remote) for remote in self.issues.values()]

    def create(self, repository: str, title: str, body: str, labels: Sequence[str]) -> RemoteIssue:
        self.calls.append(("create", title))
        if title in self.fail_titles:
            raise RemoteAPIError(f"validation failed for {title!r}", status=422)
        self.next_number += 1
        now = self.clock()
        remote = RemoteIssue(
            number=self.next_number,
            title=title,
            body=body,
            labels=list(labels),
            url=f"https://github.com/{repository}/issues/{self.next_number}",
            created_at=now,
            updated_at=now,
        )
        self.issues[remote.number] = remote
        return copy.deepcopy(remote)

    def update(
        self,
        repository: str,
        remote_id: int,
        title: str,
        body: str,
        state: str,
        labels: Sequence[str],
    ) -> None:
        self.calls.append(("update", remote_id))
        if self.on_update is not None:
            self.on_update()
        if self.update_failures:
            self.update_failures -= 1
            raise RemoteAPIError("bad gateway", status=502)
        if title in self.fail_titles:
            raise RemoteAPIError(f"validation failed for {title!r}", status=422)
        if remote_id not in self.issues:
            raise RemoteAPIError(f"issue #{remote_id} not found", status=404)
        remote = self.issues[remote_id]
        remote.title = title
        remote.body = body
        remote.state = state
        remote.labels = list(labels)
        remote.updated_at = self.clock()


@pytest.fixture
def clock() -> TickClock:
    return TickClock()


@pytest.fixture
def provider(clock: TickClock) -> FakeProvider:
    return FakeProvider(clock)


@pytest.fixture
def store(tmp_path: Path, clock: TickClock) -> IssueStore:
    return IssueStore.for_project(tmp_path, clock=clock)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "RELAYSYNC_GITHUB_TOKEN",
        "GITHUB_TOKEN",
        "GH_TOKEN",
        "RELAYSYNC_REPOSITORY",
        "RELAYSYNC_QUIET",
        "RELAYSYNC_REST_DISABLED",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RELAYSYNC_RETRY_BASE", "0")
    monkeypatch.setenv("RELAYSYNC_RETRY_MAX_SLEEP", "0")
