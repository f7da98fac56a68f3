# tests/test_notifications.py

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session, select

from mindmate.models import (
    EmailPreferences,
    Milestone,
    Notification,
    NotificationPreferences,
    PushSubscription,
    RemoteTaskSettings,
    Task,
)
from mindmate.services import notifications
from mindmate.services.notifications import (
    NotificationLoop,
    daily_stats,
    execute_notification_check,
    is_daily_digest_due,
    is_in_quiet_hours,
    is_weekly_digest_due,
    process_email_digests,
    process_push_notifications,
    week_start,
    weekly_stats,
)
from mindmate.services.task_sync import TaskSyncService

from conftest import USER
from fakes import FakePushSender

# a Sunday afternoon
NOW = datetime(2026, 10, 18, 15, 0, tzinfo=timezone.utc)


def _at(hh, mm=0):
    return NOW.replace(hour=hh, minute=mm)


def _task(session, title, **fields) -> Task:
    t = Task(user_email=USER, title=title, **fields)
    session.add(t)
    session.commit()
    session.refresh(t)
    return t


def _notifications(session, type_=None):
    q = select(Notification).where(Notification.user_email == USER)
    if type_:
        q = q.where(Notification.type == type_)
    return list(session.exec(q).all())


# ---- quiet hours


@pytest.mark.parametrize("hhmm, expected", [
    ((21, 59), False),
    ((22, 0), True),
    ((23, 30), True),
    ((0, 0), True),
    ((8, 0), True),
    ((8, 1), False),
    ((12, 0), False),
])
def test_quiet_hours_spanning_midnight(hhmm, expected):
    assert is_in_quiet_hours(True, "22:00", "08:00", _at(*hhmm)) is expected


def test_quiet_hours_same_day_window_is_inclusive():
    assert is_in_quiet_hours(True, "13:00", "15:00", _at(13)) is True
    assert is_in_quiet_hours(True, "13:00", "15:00", _at(15)) is True
    assert is_in_quiet_hours(True, "13:00", "15:00", _at(15, 1)) is False


def test_quiet_hours_disabled_or_malformed_never_match():
    assert is_in_quiet_hours(False, "00:00", "23:59", _at(12)) is False
    assert is_in_quiet_hours(True, "late", "08:00", _at(23)) is False


# ---- digest schedule


def test_week_starts_on_sunday():
    assert week_start(NOW.date()) == NOW.date()
    assert week_start((NOW + timedelta(days=3)).date()) == NOW.date()
    assert week_start((NOW - timedelta(days=1)).date()) == (NOW - timedelta(days=7)).date()


def test_daily_digest_due_after_configured_time_once_per_day():
    prefs = EmailPreferences(user_email=USER, daily_digest=True, daily_digest_time="16:00")
    assert is_daily_digest_due(prefs, _at(15, 59)) is False
    assert is_daily_digest_due(prefs, _at(16)) is True

    prefs.last_daily_sent = _at(16, 5)
    assert is_daily_digest_due(prefs, _at(20)) is False

    prefs.last_daily_sent = _at(16) - timedelta(days=1)
    assert is_daily_digest_due(prefs, _at(20)) is True


def test_daily_digest_not_due_when_disabled():
    prefs = EmailPreferences(user_email=USER, daily_digest=False)
    assert is_daily_digest_due(prefs, _at(23)) is False


def test_weekly_digest_on_chosen_day_after_nine():
    prefs = EmailPreferences(user_email=USER, weekly_digest=True, digest_day="sunday")
    assert is_weekly_digest_due(prefs, _at(8, 59)) is False
    assert is_weekly_digest_due(prefs, _at(9)) is True
    assert is_weekly_digest_due(prefs, _at(9) + timedelta(days=1)) is False


def test_weekly_digest_once_per_week():
    prefs = EmailPreferences(user_email=USER, weekly_digest=True, digest_day="sunday")
    prefs.last_weekly_sent = NOW - timedelta(days=7)
    assert is_weekly_digest_due(prefs, NOW) is True

    prefs.last_weekly_sent = _at(9, 30)
    assert is_weekly_digest_due(prefs, NOW) is False


# ---- push pass


def test_overdue_task_notifies_once_per_day(session, push_user, push_sender):
    task = _task(session, "File taxes", reminder_at=NOW - timedelta(hours=1))

    res = process_push_notifications(session, NOW, sender=push_sender)

    assert res["overdue_notifications"] == 1
    assert res["total_notifications_sent"] == 1
    (n,) = _notifications(session, "overdue-task")
    assert n.related_task_id == task.id
    assert n.sent_at is not None
    assert push_sender.sent[0][1]["data"]["notification_id"] == n.id

    again = process_push_notifications(session, NOW + timedelta(hours=2), sender=push_sender)
    assert again["overdue_notifications"] == 0


def test_unread_overdue_notification_suppresses_repeat(session, push_user, push_sender):
    _task(session, "File taxes", reminder_at=NOW - timedelta(days=3))
    process_push_notifications(session, NOW, sender=push_sender)

    later = NOW + timedelta(hours=25)
    assert process_push_notifications(session, later, sender=push_sender)["overdue_notifications"] == 0

    (n,) = _notifications(session, "overdue-task")
    n.is_read = True
    session.add(n)
    session.commit()
    assert process_push_notifications(session, later, sender=push_sender)["overdue_notifications"] == 1


def test_upcoming_task_gets_due_soon_reminder(session, push_user, push_sender):
    _task(session, "Standup", reminder_at=NOW + timedelta(minutes=60))

    res = process_push_notifications(session, NOW, sender=push_sender)

    assert res["reminder_notifications"] == 1
    (n,) = _notifications(session, "task-reminder")
    assert n.body == '"Standup" is due in 60 minutes'

    n.is_read = True
    session.add(n)
    session.commit()
    soon = process_push_notifications(session, NOW + timedelta(minutes=10), sender=push_sender)
    assert soon["reminder_notifications"] == 0


def test_far_future_and_reminder_only_tasks_are_not_reminded(session, push_user, push_sender):
    _task(session, "Next week", reminder_at=NOW + timedelta(days=7))
    _task(session, "Only at time", reminder_at=NOW + timedelta(minutes=30), only_notify_at_reminder=True)

    res = process_push_notifications(session, NOW, sender=push_sender)

    assert res["reminder_notifications"] == 0
    assert push_sender.sent == []


def test_muted_and_completed_tasks_are_ignored(session, push_user, push_sender):
    _task(session, "Muted", reminder_at=NOW - timedelta(hours=1), is_muted=True)
    _task(session, "Done", reminder_at=NOW - timedelta(hours=1), completed_at=NOW)

    res = process_push_notifications(session, NOW, sender=push_sender)

    assert res["overdue_notifications"] == 0


def test_gone_subscription_is_deactivated(session, push_user):
    _task(session, "File taxes", reminder_at=NOW - timedelta(hours=1))
    sender = FakePushSender(ok=False, status=410)

    res = process_push_notifications(session, NOW, sender=sender)

    assert res["total_notifications_sent"] == 0
    sub = session.exec(select(PushSubscription)).one()
    assert sub.is_active is False


def test_device_raising_mid_pass_still_stamps_task(session, push_user):
    session.add(PushSubscription(user_email=USER, endpoint="https://push.example/ada-phone", p256dh="k", auth="a"))
    session.commit()
    task = _task(session, "File taxes", reminder_at=NOW - timedelta(hours=1))

    def sender(sub, payload):
        if sub.endpoint.endswith("/ada"):
            raise ConnectionError("connection reset")
        return True, None

    res = process_push_notifications(session, NOW, sender=sender)

    assert res["overdue_notifications"] == 1
    assert res["total_notifications_sent"] == 1
    assert session.get(Task, task.id).notified_at is not None


def test_quiet_hours_skip_push_for_user(session, push_user, push_sender):
    prefs = session.get(NotificationPreferences, USER)
    prefs.quiet_hours_enabled = True
    prefs.quiet_hours_start = "14:00"
    prefs.quiet_hours_end = "16:00"
    session.add(prefs)
    session.commit()
    _task(session, "File taxes", reminder_at=NOW - timedelta(hours=1))

    res = process_push_notifications(session, NOW, sender=push_sender)

    assert res["users_checked"] == 1
    assert res["users_processed"] == 0
    assert push_sender.sent == []


def test_quiet_hours_follow_user_timezone(session, push_user, push_sender):
    prefs = session.get(NotificationPreferences, USER)
    prefs.quiet_hours_enabled = True
    prefs.timezone = "Asia/Tokyo"  # 15:00 UTC is 00:00 in Tokyo
    session.add(prefs)
    session.commit()

    res = process_push_notifications(session, NOW, sender=push_sender)

    assert res["users_processed"] == 0


def test_push_pass_needs_vapid_keys_with_real_sender(session, push_user):
    res = process_push_notifications(session, NOW)

    assert res["users_checked"] == 0
    assert "VAPID" in res["errors"][0]


def test_milestone_reminder_sent_once_per_day(session, push_user, push_sender):
    session.add(Milestone(
        user_email=USER, title="Wedding", type="anniversary",
        original_date=datetime(2020, 10, 18, tzinfo=timezone.utc),
    ))
    session.commit()

    res = process_push_notifications(session, NOW, sender=push_sender)

    assert res["milestone_notifications"] == 1
    (n,) = _notifications(session, "milestone-reminder")
    assert n.body == "Today marks 6 years since Wedding!"
    assert n.data["notification_type"] == "on-the-day"

    later = process_push_notifications(session, NOW + timedelta(hours=3), sender=push_sender)
    assert later["milestone_notifications"] == 0


def test_inactive_or_unflagged_milestones_are_skipped(session, push_user, push_sender):
    session.add(Milestone(user_email=USER, title="Old job", is_active=False,
                          original_date=datetime(2019, 10, 18, tzinfo=timezone.utc)))
    session.add(Milestone(user_email=USER, title="Quiet", notify_three_days_before=False,
                          original_date=datetime(2019, 10, 21, tzinfo=timezone.utc)))
    session.commit()

    res = process_push_notifications(session, NOW, sender=push_sender)

    assert res["milestone_notifications"] == 0


# ---- email digests


def test_digest_stats(session):
    _task(session, "Done today", completed_at=_at(10))
    _task(session, "Later today", reminder_at=_at(20))
    _task(session, "Tomorrow", reminder_at=_at(10) + timedelta(days=1))
    _task(session, "Late", reminder_at=_at(10) - timedelta(days=2))

    stats = daily_stats(session, USER, NOW)

    assert [t["title"] for t in stats["completed_today"]] == ["Done today"]
    assert [t["title"] for t in stats["pending_today"]] == ["Later today"]
    assert [t["title"] for t in stats["tomorrow"]] == ["Tomorrow"]
    assert [t["title"] for t in stats["overdue"]] == ["Late"]

    weekly = weekly_stats(session, USER, NOW)
    assert weekly["created_count"] == 4
    assert weekly["completed_count"] == 1
    assert weekly["completion_rate"] == 25


def test_digests_sent_and_stamped(session, monkeypatch):
    sent = []
    monkeypatch.setattr(notifications.mailer, "send_daily_digest",
                        lambda to, name, stats, tz: sent.append(("daily", to)) or True)
    monkeypatch.setattr(notifications.mailer, "send_weekly_digest",
                        lambda to, name, stats, tz: sent.append(("weekly", to)) or True)
    session.add(EmailPreferences(user_email=USER, daily_digest=True, daily_digest_time="09:00",
                                 weekly_digest=True, digest_day="sunday"))
    session.commit()

    res = process_email_digests(session, NOW)

    assert res["daily_digests_sent"] == 1
    assert res["weekly_digests_sent"] == 1
    assert sent == [("daily", USER), ("weekly", USER)]
    prefs = session.get(EmailPreferences, USER)
    assert prefs.last_daily_sent is not None
    assert prefs.last_weekly_sent is not None

    again = process_email_digests(session, NOW + timedelta(hours=1))
    assert again["daily_digests_sent"] == 0
    assert again["weekly_digests_sent"] == 0


def test_failed_digest_is_counted_and_retried(session, monkeypatch):
    monkeypatch.setattr(notifications.mailer, "send_daily_digest", lambda *a: False)
    session.add(EmailPreferences(user_email=USER, daily_digest=True))
    session.commit()

    res = process_email_digests(session, NOW)

    assert res["email_errors"] == 1
    assert session.get(EmailPreferences, USER).last_daily_sent is None


# ---- combined check and loop


def test_execute_notification_check_combines_passes(session, push_user, push_sender, fake_remote):
    _task(session, "File taxes", reminder_at=NOW - timedelta(hours=1))
    session.add(RemoteTaskSettings(user_email=USER, is_connected=True))
    session.commit()

    summary = execute_notification_check(
        session, NOW, sender=push_sender,
        sync_factory=lambda s: TaskSyncService(s, client_factory=lambda ss, st: fake_remote, throttle_seconds=0),
    )

    assert summary["push"]["overdue_notifications"] == 1
    assert summary["remote_sync"]["users_checked"] == 1
    assert summary["remote_sync"]["synced"] == 1
    assert summary["errors"] == []
    assert summary["execution_ms"] >= 0


def test_loop_refuses_second_start(engine):
    ran = []
    loop = NotificationLoop(
        session_factory=lambda: Session(engine),
        interval_seconds=3600,
        max_hours=1,
        check=lambda s: ran.append(1) or {"errors": []},
    )

    assert loop.start() is True
    assert loop.start() is False
    assert loop.stop() is True
    loop._thread.join(timeout=5)

    assert loop.is_running is False
    assert loop.stop() is False
    assert loop.status()["is_running"] is False


def test_loop_cycle_failure_is_recorded(engine):
    def broken(session):
        raise RuntimeError("db down")

    loop = NotificationLoop(session_factory=lambda: Session(engine), interval_seconds=1, max_hours=1, check=broken)

    assert loop.run_once() is None
    assert loop.cycles == 0
    assert "db down" in loop.errors[0]


def test_restart_while_old_cycle_is_busy_leaves_one_loop(engine):
    entered = threading.Event()
    release = threading.Event()
    calls = []

    def slow_check(session):
        calls.append(threading.current_thread())
        if len(calls) == 1:
            entered.set()
            release.wait(5)
        return {"errors": []}

    loop = NotificationLoop(session_factory=lambda: Session(engine), interval_seconds=3600, max_hours=1,
                            check=slow_check)
    loop.start()
    first = loop._thread
    assert entered.wait(5)

    loop.stop()
    assert loop.start() is True
    second = loop._thread
    release.set()
    first.join(timeout=5)

    assert not first.is_alive()
    assert second.is_alive()
    # the finished run must not switch off its successor
    assert loop.is_running is True

    loop.stop()
    second.join(timeout=5)
    assert loop.is_running is False
    assert not second.is_alive()
