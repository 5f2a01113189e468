import json
import os
import threading

import pytest

from relaysync.errors import NotFoundError, PersistenceError, ValidationError
from relaysync.issue_store import IssueStore, suggest_labels
from relaysync.models import SyncStatus


def test_persistence_round_trip(tmp_path, clock):
    store = IssueStore.for_project(tmp_path, clock=clock)
    first = store.add("Crash on startup", body="stack trace", labels=["bug", "urgent"])
    second = store.add("Dark mode", labels=["enhancement"], state="closed")
    store.link_remote(second.local_id, 42, remote_url="https://x/issues/42", last_synced_at=clock())

    reloaded = IssueStore.for_project(tmp_path)
    assert [i.to_dict() for i in reloaded.list_issues()] == [i.to_dict() for i in store.list_issues()]
    assert reloaded.get(first.local_id).labels == ["bug", "urgent"]
    assert reloaded.get(second.local_id).remote_id == 42

    raw = json.loads(store.path.read_text())
    assert isinstance(raw, list) and len(raw) == 2
    assert raw[0]["remote_id"] is None
    assert raw[1]["last_synced_at"] is not None


def test_failed_write_leaves_file_and_cache_unchanged(store, monkeypatch):
    store.add("Existing issue")
    before = store.path.read_bytes()

    def _boom(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", _boom)
    with pytest.raises(PersistenceError):
        store.add("Never persisted")
    with pytest.raises(PersistenceError):
        store.update_title(1, "Renamed")
    monkeypatch.undo()

    assert store.path.read_bytes() == before
    assert not list(store.path.parent.glob("*.tmp"))
    assert [i.title for i in store.list_issues()] == ["Existing issue"]
    assert len(store) == 1


def test_ids_are_never_reused(store, tmp_path):
    a = store.add("one")
    b = store.add("two")
    store.remove(b.local_id)
    c = store.add("three")
    assert (a.local_id, b.local_id, c.local_id) == (1, 2, 3)

    store.remove(c.local_id)
    reopened = IssueStore.for_project(tmp_path)
    assert reopened.add("four").local_id == 4


def test_title_validation(store):
    with pytest.raises(ValidationError):
        store.add("   ")
    with pytest.raises(ValidationError):
        store.add("x" * 1001)
    assert store.add("  padded  ").title == "padded"
    with pytest.raises(ValidationError):
        store.update_title(1, "")


def test_state_validation(store):
    issue = store.add("thing")
    with pytest.raises(ValidationError):
        store.update_state(issue.local_id, "in-progress")
    assert store.update_state(issue.local_id, "CLOSED").state == "closed"


def test_unknown_id_raises_not_found(store):
    with pytest.raises(NotFoundError):
        store.get(99)
    with pytest.raises(NotFoundError):
        store.remove(99)


def test_list_filters_and_order(store):
    store.add("old bug", labels=["bug"])
    store.add("new feature", labels=["enhancement"])
    store.add("closed bug", labels=["bug"], state="closed")

    assert [i.title for i in store.list_issues()] == ["closed bug", "new feature", "old bug"]
    assert [i.title for i in store.list_issues(state="open")] == ["new feature", "old bug"]
    assert [i.title for i in store.list_issues(label="bug")] == ["closed bug", "old bug"]


def test_content_edit_marks_linked_issue_pending(store):
    issue = store.add("linked")
    store.link_remote(issue.local_id, 5, sync_status=SyncStatus.SYNCED)
    unlinked = store.add("unlinked")

    edited = store.update_labels(issue.local_id, ["bug", "bug", " ui "])
    assert edited.labels == ["bug", "ui"]
    assert edited.sync_status is SyncStatus.SYNCING
    assert edited.updated_at > issue.updated_at

    assert store.update_body(unlinked.local_id, "text").sync_status is SyncStatus.SYNCED
    assert {i.local_id for i in store.list_unsynced()} == {issue.local_id, unlinked.local_id}


def test_status_update_does_not_touch_updated_at(store):
    issue = store.add("quiet")
    updated = store.update_sync_status(issue.local_id, "Sync Error")
    assert updated.sync_status is SyncStatus.ERROR
    assert updated.updated_at == issue.updated_at
    with pytest.raises(ValidationError):
        store.update_sync_status(issue.local_id, "bogus")


def test_remote_id_is_unique(store):
    a = store.add("a")
    b = store.add("b")
    store.link_remote(a.local_id, 7)
    with pytest.raises(ValidationError):
        store.link_remote(b.local_id, 7)
    assert store.find_by_remote_id(7).local_id == a.local_id
    assert store.find_by_remote_id(8) is None


def test_corrupt_file_raises_persistence_error(tmp_path):
    store_path = tmp_path / ".relay" / "issues.json"
    store_path.parent.mkdir()
    store_path.write_text("{not json")
    with pytest.raises(PersistenceError):
        IssueStore(store_path)


def test_stats_and_overall_status(store):
    store.add("Crash when saving", labels=suggest_labels("Crash when saving"))
    b = store.add("Add export", labels=suggest_labels("Add export"), state="closed")
    stats = store.stats()
    assert stats["total"] == 2
    assert stats["open"] == 1 and stats["closed"] == 1
    assert stats["label:bug"] == 1 and stats["label:enhancement"] == 1

    assert store.overall_sync_status() is SyncStatus.SYNCED
    store.update_sync_status(b.local_id, SyncStatus.ERROR)
    assert store.overall_sync_status() is SyncStatus.ERROR


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("App crashes on login", ["bug"]),
        ("Fix typo in README", ["bug"]),
        ("Support dark mode", ["enhancement"]),
    ],
)
def test_suggest_labels(title, expected):
    assert suggest_labels(title) == expected


def test_failed_sequence_write_rolls_back_main_file(store, monkeypatch):
    store.add("Existing issue")
    before = store.path.read_bytes()
    seq_path = store.path.with_name(store.path.name + ".seq")
    seq_before = seq_path.read_text()
    real_replace = os.replace

    def _fail_seq(src, dst):
        if str(dst).endswith(".seq"):
            raise OSError("disk full")
        return real_replace(src, dst)

    monkeypatch.setattr(os, "replace", _fail_seq)
    with pytest.raises(PersistenceError):
        store.add("Never persisted")
    monkeypatch.undo()

    assert store.path.read_bytes() == before
    assert seq_path.read_text() == seq_before
    assert not list(store.path.parent.glob("*.tmp"))
    assert [i.title for i in store.list_issues()] == ["Existing issue"]
    assert store.add("next").local_id == 2


def test_concurrent_writers_all_persist(tmp_path):
    store = IssueStore.for_project(tmp_path)
    seeded = [store.add(f"seed {n}") for n in range(4)]
    errors: list[Exception] = []

    def _worker(n: int) -> None:
        try:
            for i in range(10):
                store.add(f"worker {n} issue {i}")
                store.update_body(seeded[n].local_id, f"worker {n} pass {i}")
        except Exception as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)

    threads = [threading.Thread(target=_worker, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    reloaded = IssueStore.for_project(tmp_path)
    ids = sorted(i.local_id for i in reloaded.list_issues())
    assert ids == list(range(1, 45))
    titles = {i.title for i in reloaded.list_issues()}
    assert {f"worker {n} issue {i}" for n in range(4) for i in range(10)} <= titles
    for n, issue in enumerate(seeded):
        assert reloaded.get(issue.local_id).body == f"worker {n} pass 9"


def test_update_fields_is_one_all_or_nothing_write(store):
    issue = store.add("original", body="text")
    store.link_remote(issue.local_id, 3, sync_status=SyncStatus.SYNCED)

    with pytest.raises(ValidationError):
        store.update_fields(issue.local_id, title="renamed", state="in-progress")
    unchanged = store.get(issue.local_id)
    assert unchanged.title == "original"
    assert unchanged.sync_status is SyncStatus.SYNCED

    edited = store.update_fields(issue.local_id, title="renamed", labels=["bug"], state="closed")
    assert (edited.title, edited.body, edited.state, edited.labels) == ("renamed", "text", "closed", ["bug"])
    assert edited.sync_status is SyncStatus.SYNCING
    with pytest.raises(ValidationError):
        store.update_fields(issue.local_id)


def test_link_remote_compare_and_set_keeps_concurrent_edit_pending(store, clock):
    issue = store.add("linked")
    store.link_remote(issue.local_id, 5, sync_status=SyncStatus.SYNCED)
    seen = store.update_title(issue.local_id, "first edit")

    clean = store.link_remote(
        issue.local_id,
        5,
        last_synced_at=clock(),
        sync_status=SyncStatus.SYNCED,
        expected_updated_at=seen.updated_at,
    )
    assert clean.sync_status is SyncStatus.SYNCED

    store.update_body(issue.local_id, "second edit")
    raced = store.link_remote(
        issue.local_id,
        5,
        last_synced_at=clock(),
        baseline={"title": "first edit", "state": "open", "labels": [], "body": ""},
        sync_status=SyncStatus.SYNCED,
        expected_updated_at=seen.updated_at,
    )
    assert raced.sync_status is SyncStatus.SYNCING
    assert raced.body == "second edit"
    assert raced.sync_baseline["title"] == "first edit"
