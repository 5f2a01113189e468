import json
import subprocess
from datetime import datetime, timezone

import pytest

from relaysync import github_issues
from relaysync.errors import RemoteAPIError
from relaysync.github_issues import GhCliClient, build_provider
from relaysync.github_rest import GitHubRestClient

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class _FakeGh:
    def __init__(self, outputs: dict[tuple[str, str], object]):
        self.outputs = outputs
        self.commands: list[list[str]] = []

    def __call__(self, cmd, text=True, stderr=None):
        args = list(cmd[1:])
        self.commands.append(args)
        out = self.outputs.get((args[0], args[1]), "")
        if callable(out):
            out = out(args)
        if isinstance(out, Exception):
            raise out
        return out


@pytest.fixture
def fake_gh(monkeypatch):
    def _install(outputs):
        fake = _FakeGh(outputs)
        monkeypatch.setattr(github_issues.subprocess, "check_output", fake)
        return fake

    return _install


def _client():
    return GhCliClient(closed_lookback_hours=24, clock=lambda: NOW)


def test_fetch_all_lists_open_and_recently_closed(fake_gh):
    def _list(args):
        if "open" in args:
            return json.dumps([{"number": 1, "title": "Open", "state": "OPEN", "labels": [{"name": "bug"}],
                                "url": "https://github.com/acme/widgets/issues/1",
                                "updatedAt": "2024-03-09T00:00:00Z"}])
        return json.dumps([{"number": 2, "title": "Closed", "state": "CLOSED", "labels": [],
                            "closedAt": "2024-03-10T01:00:00Z"}])

    fake = fake_gh({("issue", "list"): _list})
    issues = _client().fetch_all("acme/widgets")

    assert [(i.number, i.state) for i in issues] == [(1, "open"), (2, "closed")]
    assert issues[0].url.endswith("/issues/1")
    closed_cmd = fake.commands[1]
    assert closed_cmd[closed_cmd.index("--search") + 1] == "closed:>2024-03-09T12:00:00Z"
    assert closed_cmd[closed_cmd.index("-R") + 1] == "acme/widgets"


def test_create_parses_issue_number_from_url(fake_gh):
    fake = fake_gh({("issue", "create"): "Creating issue\nhttps://github.com/acme/widgets/issues/57\n"})

    created = _client().create("acme/widgets", "Title", "Body", ["bug", "ui"])

    assert created.number == 57
    assert created.url == "https://github.com/acme/widgets/issues/57"
    cmd = fake.commands[0]
    assert cmd[cmd.index("--label") + 1] == "bug,ui"


def test_create_without_number_raises(fake_gh):
    fake_gh({("issue", "create"): "something unexpected"})
    with pytest.raises(RemoteAPIError):
        _client().create("acme/widgets", "Title", "", [])


def test_update_reconciles_labels_and_state(fake_gh):
    view = json.dumps({"state": "OPEN", "labels": [{"name": "bug"}, {"name": "old"}]})
    fake = fake_gh({("issue", "view"): view})

    _client().update("acme/widgets", 9, "T", "B", "closed", ["bug", "new"])

    verbs = [cmd[1] for cmd in fake.commands]
    assert verbs == ["view", "edit", "close"]
    edit = fake.commands[1]
    assert edit[edit.index("--remove-label") + 1] == "old"
    assert edit[edit.index("--add-label") + 1] == "new"
    assert edit[edit.index("--title") + 1] == "T"


def test_update_reopens_closed_issue(fake_gh):
    fake = fake_gh({("issue", "view"): json.dumps({"state": "CLOSED", "labels": []})})
    _client().update("acme/widgets", 9, "T", "B", "open", [])
    assert [cmd[1] for cmd in fake.commands] == ["view", "edit", "reopen"]


def test_command_failure_becomes_remote_error(fake_gh):
    error = subprocess.CalledProcessError(1, ["gh"], output="HTTP 404: Not Found")
    fake_gh({("issue", "view"): error})
    with pytest.raises(RemoteAPIError) as excinfo:
        _client().update("acme/widgets", 9, "T", "B", "open", [])
    assert "404" in str(excinfo.value)
    assert excinfo.value.transient is False


def test_auth_status(fake_gh):
    fake_gh({("auth", "status"): "Logged in"})
    assert _client().is_authenticated() is True
    fake_gh({("auth", "status"): subprocess.CalledProcessError(1, ["gh"], output="not logged in")})
    assert _client().is_authenticated() is False


def test_build_provider_prefers_rest_with_token(monkeypatch):
    monkeypatch.setenv("GH_TOKEN", "tkn")
    provider = build_provider("acme/widgets")
    assert isinstance(provider, GitHubRestClient)
    assert provider.repository == "acme/widgets"

    monkeypatch.setenv("RELAYSYNC_REST_DISABLED", "1")
    assert isinstance(build_provider("acme/widgets"), GhCliClient)


def test_build_provider_falls_back_to_cli():
    provider = build_provider("acme/widgets", closed_lookback_hours=6)
    assert isinstance(provider, GhCliClient)
    assert provider.closed_lookback_hours == 6
