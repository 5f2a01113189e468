from __future__ import annotations

import json

import pytest

from relaysync import cli
from relaysync.config import load_config
from relaysync.issue_store import IssueStore
from relaysync.models import SyncStatus


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    return tmp_path


def _run(project, *args):
    return cli.main(["--project", str(project), *args])


def test_add_list_show_edit_remove(project, capsys):
    assert _run(project, "add", "App crashes on save", "--body", "trace") == 0
    assert _run(project, "add", "Dark mode", "--label", "ui") == 0
    capsys.readouterr()

    assert _run(project, "list", "--json") == 0
    listed = json.loads(capsys.readouterr().out)
    assert [i["title"] for i in listed] == ["Dark mode", "App crashes on save"]
    assert listed[1]["labels"] == ["bug"]
    assert listed[0]["labels"] == ["ui"]

    assert _run(project, "edit", "1", "--state", "closed", "--label", "bug", "--label", "p1") == 0
    assert _run(project, "show", "1", "--json") == 0
    shown = json.loads(_last_json(capsys))
    assert shown["state"] == "closed"
    assert shown["labels"] == ["bug", "p1"]

    assert _run(project, "remove", "2") == 0
    assert [i.local_id for i in IssueStore.for_project(project).list_issues()] == [1]


def _last_json(capsys):
    out = capsys.readouterr().out
    return out[out.index("{"):]


def test_unknown_issue_exits_one(project, capsys):
    assert _run(project, "show", "42") == 1
    assert "not found" in capsys.readouterr().err


def test_edit_requires_a_change(project):
    _run(project, "add", "thing")
    assert _run(project, "edit", "1") == 2


def test_edit_with_an_invalid_field_changes_nothing(project, capsys):
    _run(project, "add", "thing")
    assert _run(project, "edit", "1", "--state", "closed", "--title", "   ") == 1
    assert "title cannot be empty" in capsys.readouterr().err
    unchanged = IssueStore.for_project(project).get(1)
    assert (unchanged.title, unchanged.state) == ("thing", "open")


def test_empty_title_is_rejected(project, capsys):
    assert _run(project, "add", "  ") == 1
    assert "empty" in capsys.readouterr().err


def test_status_summary(project, capsys):
    _run(project, "add", "Broken build")
    capsys.readouterr()
    assert _run(project, "status") == 0
    out = capsys.readouterr().out
    assert "Total" in out
    assert "(not configured)" in out
    assert SyncStatus.SYNCED.value in out


def test_sync_without_repository_is_fatal(project, monkeypatch, capsys):
    def _no_repo(project_dir):
        from relaysync.errors import ConfigurationError

        raise ConfigurationError("no git remote")

    monkeypatch.setattr(cli, "detect_repository", _no_repo)
    assert _run(project, "--quiet", "sync") == 2
    assert "sync failed" in capsys.readouterr().out
    assert load_config(project).last_synced_at is None


def test_sync_records_last_synced(project, monkeypatch, provider, capsys):
    provider.seed(1, "Remote issue")
    monkeypatch.setattr(cli, "build_provider", lambda repo, **kw: provider)
    monkeypatch.setenv("RELAYSYNC_REPOSITORY", "acme/widgets")
    _run(project, "add", "Local issue")
    capsys.readouterr()

    assert _run(project, "sync", "--json") == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["totals"]["created_local"] == 1
    assert payload["totals"]["created_remote"] == 1
    assert load_config(project).last_synced_at is not None


def test_sync_reports_partial_errors(project, monkeypatch, provider, capsys):
    provider.fail_titles.add("bad one")
    monkeypatch.setattr(cli, "build_provider", lambda repo, **kw: provider)
    _run(project, "add", "good one")
    _run(project, "add", "bad one")
    capsys.readouterr()

    assert _run(project, "--quiet", "sync", "--repo", "acme/widgets", "--direction", "push") == 1
    assert "1 of 2 synced, 1 error" in capsys.readouterr().out


def test_sync_dry_run_does_not_touch_remote(project, monkeypatch, provider, capsys):
    monkeypatch.setattr(cli, "build_provider", lambda repo, **kw: provider)
    _run(project, "add", "pending")
    capsys.readouterr()

    assert _run(project, "sync", "--repo", "acme/widgets", "--dry-run") == 0
    assert "create local #1" in capsys.readouterr().out
    assert provider.calls == []


def test_watch_requires_auto_sync(project, monkeypatch, provider):
    monkeypatch.setattr(cli, "build_provider", lambda repo, **kw: provider)
    assert _run(project, "sync", "--repo", "acme/widgets", "--watch") == 2
