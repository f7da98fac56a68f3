# tests/test_task_sync.py

from datetime import timedelta

import pytest
from sqlmodel import select

from mindmate.models import Task
from mindmate.services.remote_tasks import to_rfc3339
from mindmate.services.task_sync import (
    NOT_CONNECTED,
    TaskSyncService,
    sort_parent_child,
)
from mindmate.utils.dates import as_utc, utcnow

from conftest import USER
from fakes import FakeRemoteClient, remote


def _task(session, title, **fields) -> Task:
    t = Task(user_email=USER, title=title, **fields)
    session.add(t)
    session.commit()
    session.refresh(t)
    return t


def _all_tasks(session):
    return list(session.exec(select(Task).where(Task.user_email == USER)).all())


# ---- full sync: linking and creation


def test_unlinked_local_task_links_to_matching_remote_instead_of_creating(session, connected, fake_remote, sync_service):
    fake_remote.tasks["r-1"] = remote("r-1", "Buy milk", updated=utcnow() - timedelta(hours=1))
    t = _task(session, "Buy milk")

    result = sync_service.sync_user_tasks(USER)

    assert result["success"] is True
    assert result["synced"] == 1
    assert t.remote_task_id == "r-1"
    assert t.remote_sync_status == "synced"
    assert fake_remote.mutations("create") == []
    assert len(_all_tasks(session)) == 1


def test_unlinked_local_task_is_created_remotely(session, connected, fake_remote, sync_service):
    t = _task(session, "Write report", description="Q3 numbers")

    result = sync_service.sync_user_tasks(USER)

    assert result["synced"] == 1
    assert len(fake_remote.mutations("create")) == 1
    assert t.remote_task_id in fake_remote.tasks
    assert fake_remote.tasks[t.remote_task_id]["notes"] == "Q3 numbers"


def test_remote_only_task_is_imported(session, connected, fake_remote, sync_service):
    fake_remote.tasks["r-9"] = remote(
        "r-9", "Call mom", status="completed", completed="2026-03-01T10:00:00.000Z", notes="about sunday",
    )

    result = sync_service.sync_user_tasks(USER)

    assert result["synced"] == 1
    (imported,) = _all_tasks(session)
    assert imported.remote_task_id == "r-9"
    assert imported.category == "Uncategorized"
    assert imported.description == "about sunday"
    assert imported.completed_at is not None


def test_remote_to_app_links_local_duplicate(session, connected, fake_remote, sync_service):
    connected.sync_direction = "remote-to-app"
    session.add(connected)
    session.commit()
    fake_remote.tasks["r-2"] = remote("r-2", "Pay rent")
    t = _task(session, "Pay rent")

    result = sync_service.sync_user_tasks(USER)

    assert result["synced"] == 1
    assert t.remote_task_id == "r-2"
    assert len(_all_tasks(session)) == 1


def test_app_to_remote_direction_never_imports(session, connected, fake_remote, sync_service):
    connected.sync_direction = "app-to-remote"
    session.add(connected)
    session.commit()
    fake_remote.tasks["r-3"] = remote("r-3", "Only on phone")

    result = sync_service.sync_user_tasks(USER)

    assert result["synced"] == 0
    assert _all_tasks(session) == []


def test_tasks_excluded_from_sync_are_left_alone(session, connected, fake_remote, sync_service):
    _task(session, "Private", sync_to_remote=False)

    sync_service.sync_user_tasks(USER)

    assert fake_remote.mutations("create") == []


# ---- deleted remote counterpart


def test_deleted_remote_task_is_unlinked_when_action_is_skip(session, connected, fake_remote, sync_service):
    t = _task(session, "Gone", remote_task_id="gone", remote_sync_status="synced")

    result = sync_service.sync_user_tasks(USER)

    assert result["synced"] == 0
    assert t.remote_task_id is None
    assert t.remote_sync_status == "pending"
    assert fake_remote.mutations("create") == []


def test_deleted_remote_task_is_recreated_when_action_is_recreate(session, connected, fake_remote, sync_service):
    connected.on_deleted_tasks_action = "recreate"
    session.add(connected)
    session.commit()
    t = _task(session, "Gone", remote_task_id="gone", remote_sync_status="synced")

    result = sync_service.sync_user_tasks(USER)

    assert result["synced"] == 1
    assert t.remote_task_id not in (None, "gone")
    assert t.remote_task_id in fake_remote.tasks


# ---- linked pairs: newest side wins


def test_newer_local_edit_is_pushed(session, connected, fake_remote, sync_service):
    now = utcnow()
    fake_remote.tasks["r-1"] = remote("r-1", "Old title", updated=now - timedelta(hours=2))
    _task(session, "New title", remote_task_id="r-1",
          updated_at=now, remote_last_sync=now - timedelta(hours=1))

    result = sync_service.sync_user_tasks(USER)

    assert result["synced"] == 1
    assert fake_remote.mutations("update") == [("update", "r-1", None)]
    assert fake_remote.tasks["r-1"]["title"] == "New title"
    assert result["conflicts"] == []


def test_newer_remote_edit_is_pulled(session, connected, fake_remote, sync_service):
    now = utcnow()
    fake_remote.tasks["r-1"] = remote(
        "r-1", "Remote title", updated=now - timedelta(hours=1), status="completed",
    )
    t = _task(session, "Local title", remote_task_id="r-1",
              updated_at=now - timedelta(hours=2), remote_last_sync=now - timedelta(hours=2))

    result = sync_service.sync_user_tasks(USER)

    assert result["synced"] == 1
    assert fake_remote.mutations("update") == []
    assert t.title == "Remote title"
    assert t.completed_at is not None


def test_unchanged_pair_is_left_alone(session, connected, fake_remote, sync_service):
    now = utcnow()
    fake_remote.tasks["r-1"] = remote("r-1", "Same", updated=now - timedelta(hours=3))
    _task(session, "Same", remote_task_id="r-1",
          updated_at=now - timedelta(hours=3), remote_last_sync=now - timedelta(hours=1))

    result = sync_service.sync_user_tasks(USER)

    assert result["synced"] == 0
    assert fake_remote.mutations("update") == []


def test_pair_modified_on_both_sides_is_reported_and_local_wins(session, connected, fake_remote, sync_service):
    now = utcnow()
    fake_remote.tasks["r-1"] = remote("r-1", "Phone edit", updated=now - timedelta(hours=1))
    _task(session, "Laptop edit", remote_task_id="r-1",
          updated_at=now, remote_last_sync=now - timedelta(hours=2))

    result = sync_service.sync_user_tasks(USER)

    assert len(result["conflicts"]) == 1
    assert result["conflicts"][0]["resolution"] == "app"
    assert fake_remote.tasks["r-1"]["title"] == "Laptop edit"


# ---- failure handling


def test_one_failing_task_does_not_stop_the_rest(session, connected, fake_remote, sync_service):
    fake_remote.fail_on.add("boom")
    _task(session, "boom")
    ok = _task(session, "fine")

    result = sync_service.sync_user_tasks(USER)

    assert result["success"] is False
    assert result["synced"] == 1
    assert len(result["errors"]) == 1
    assert "boom" in result["errors"][0]
    assert ok.remote_task_id is not None
    assert connected.sync_status == "error"


def test_sync_without_connection_reports_error(session, sync_service):
    result = sync_service.sync_user_tasks(USER)

    assert result["success"] is False
    assert result["errors"] == [NOT_CONNECTED]


def test_client_failure_marks_settings_as_error(session, connected):
    def broken(s, st):
        raise RuntimeError("token revoked")

    svc = TaskSyncService(session, client_factory=broken, throttle_seconds=0)
    result = svc.sync_user_tasks(USER)

    assert result["success"] is False
    assert connected.sync_status == "error"
    assert connected.last_error == "token revoked"


def test_successful_sync_stamps_settings(session, connected, sync_service):
    sync_service.sync_user_tasks(USER)

    assert connected.sync_status == "success"
    assert connected.last_sync_at is not None
    assert connected.last_error is None


# ---- ordering


def test_sort_parent_child_places_children_after_their_parent():
    a = Task(id="a", user_email=USER, title="A")
    b = Task(id="b", user_email=USER, title="B")
    a1 = Task(id="a1", user_email=USER, title="A1", parent_id="a")
    orphan = Task(id="o", user_email=USER, title="O", parent_id="missing")
    b1 = Task(id="b1", user_email=USER, title="B1", parent_id="b")

    ordered = sort_parent_child([a1, orphan, b1, a, b])

    assert [t.id for t in ordered] == ["a", "a1", "b", "b1", "o"]


# ---- single task push


def test_push_task_change_pushes_unsynced_parent_first(session, connected, fake_remote, sync_service):
    parent = _task(session, "Move house")
    child = _task(session, "Pack books", parent_id=parent.id)

    sync_service.push_task_change(USER, child.id)

    session.refresh(parent)
    session.refresh(child)
    creates = fake_remote.mutations("create")
    assert [c[2] for c in creates] == [None, parent.remote_task_id]
    assert child.remote_task_id == creates[1][1]


def test_push_task_change_links_duplicate_with_close_due_date(session, connected, fake_remote, sync_service):
    due = utcnow() + timedelta(days=2)
    fake_remote.tasks["r-5"] = remote("r-5", "Dentist", due=to_rfc3339(due + timedelta(hours=3)))
    t = _task(session, "Dentist", reminder_at=due)

    sync_service.push_task_change(USER, t.id)

    assert t.remote_task_id == "r-5"
    assert fake_remote.mutations("create") == []


def test_push_task_change_updates_linked_task(session, connected, fake_remote, sync_service):
    fake_remote.tasks["r-1"] = remote("r-1", "Before")
    t = _task(session, "After", remote_task_id="r-1")

    sync_service.push_task_change(USER, t.id)

    assert fake_remote.tasks["r-1"]["title"] == "After"
    assert t.remote_sync_status == "synced"


def test_push_task_change_failure_marks_task(session, connected, fake_remote, sync_service):
    fake_remote.fail_on.add("Bad")
    t = _task(session, "Bad")

    with pytest.raises(RuntimeError):
        sync_service.push_task_change(USER, t.id)

    stored = session.get(Task, t.id)
    assert stored.remote_sync_status == "error"
    assert "Bad" in stored.remote_sync_error


def test_push_task_change_is_noop_when_not_connected(session, fake_remote, sync_service):
    t = _task(session, "Offline")

    sync_service.push_task_change(USER, t.id)

    assert fake_remote.calls == []
    assert t.remote_task_id is None


# ---- bulk push / deletion / conflicts


def test_sync_all_incomplete_skips_linked_and_completed(session, connected, fake_remote, sync_service):
    _task(session, "New one")
    _task(session, "Linked", remote_task_id="r-1")
    _task(session, "Done", completed_at=utcnow())

    result = sync_service.sync_all_incomplete(USER)

    assert result == {"success": True, "synced_count": 1, "skipped_count": 1, "errors": []}


def test_sync_task_deletion(session, connected, fake_remote, sync_service):
    fake_remote.tasks["r-1"] = remote("r-1", "Bye")

    assert sync_service.sync_task_deletion(USER, "r-1") is True
    assert "r-1" not in fake_remote.tasks
    # remote already gone: reported, not raised
    assert sync_service.sync_task_deletion(USER, "r-1") is False
    assert sync_service.sync_task_deletion(USER, None) is False


def test_resolve_conflict_merge_keeps_local_title_and_takes_remote_notes(session, connected, fake_remote, sync_service):
    fake_remote.tasks["r-1"] = remote("r-1", "Remote")
    t = _task(session, "App title", description="app notes")
    rt = remote("r-1", "Remote", notes="remote notes", status="completed", due="2026-01-01T00:00:00.000Z")

    sync_service.resolve_conflict(USER, "merge", t, rt)

    assert t.title == "App title"
    assert t.description == "remote notes"
    assert t.completed_at is not None
    assert as_utc(t.reminder_at).year == 2026
    assert t.remote_task_id == "r-1"
    assert fake_remote.mutations("update") == [("update", "r-1", None)]


def test_resolve_conflict_keep_remote(session, connected, fake_remote, sync_service):
    t = _task(session, "Mine", remote_task_id="r-1")

    sync_service.resolve_conflict(USER, "keep_remote", t, remote("r-1", "Theirs"))

    assert t.title == "Theirs"
    assert fake_remote.mutations("update") == []


def test_resolve_conflict_rejects_unknown_strategy(session, connected, sync_service):
    t = _task(session, "Mine")
    with pytest.raises(ValueError, match="coin_flip"):
        sync_service.resolve_conflict(USER, "coin_flip", t, {})


# ---- interval sync


def test_interval_sync_skips_when_not_due(session, connected, sync_service):
    now = utcnow()
    connected.last_sync_at = now - timedelta(minutes=10)
    session.add(connected)
    session.commit()

    result = sync_service.perform_interval_sync(USER, now)

    assert result["skipped"] is True
    assert result["success"] is True
    assert "not due" in result["reason"]


def test_interval_sync_runs_when_due(session, connected, sync_service):
    now = utcnow()
    connected.last_sync_at = now - timedelta(minutes=45)
    session.add(connected)
    session.commit()

    result = sync_service.perform_interval_sync(USER, now)

    assert result["skipped"] is False
    assert result["success"] is True


def test_interval_sync_always_runs_with_auto_sync(session, connected, sync_service):
    now = utcnow()
    connected.auto_sync = True
    connected.last_sync_at = now - timedelta(minutes=1)
    session.add(connected)
    session.commit()

    assert sync_service.perform_interval_sync(USER, now)["skipped"] is False


def test_interval_sync_skips_app_to_remote_direction(session, connected, sync_service):
    connected.sync_direction = "app-to-remote"
    session.add(connected)
    session.commit()

    result = sync_service.perform_interval_sync(USER)

    assert result["skipped"] is True
    assert result["success"] is True


def test_interval_sync_reports_missing_connection(session):
    svc = TaskSyncService(session, client_factory=lambda s, st: FakeRemoteClient(), throttle_seconds=0)

    result = svc.perform_interval_sync(USER)

    assert result["skipped"] is True
    assert result["success"] is False
