"""
Periodic notification check.

One check runs three passes over every user:

* push: overdue tasks, tasks due within the next 2 hours, milestone reminders
  (each stored as an in-app Notification, then pushed to every active device);
* email: daily / weekly digests on the user's local schedule;
* remote sync: interval sync for users with Google Tasks connected.

Per-user failures are logged and counted; a check never raises because of a
single user.

NotificationLoop repeats the check on a background thread until stopped or
until NOTIFICATION_LOOP_MAX_HOURS have passed.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlmodel import Session, select

from mindmate import config, db
from mindmate.models import (
    EmailPreferences,
    Milestone,
    Notification,
    NotificationPreferences,
    RemoteTaskSettings,
    Task,
    User,
)
from mindmate.services import email as mailer
from mindmate.services import milestones as ms
from mindmate.services import push
from mindmate.services.task_sync import TaskSyncService
from mindmate.utils.dates import as_utc, parse_hhmm, user_zone, utcnow

log = logging.getLogger(__name__)

OVERDUE_REPEAT = timedelta(hours=24)
REMINDER_LOOKAHEAD = timedelta(hours=2)
REMINDER_REPEAT = timedelta(minutes=30)
WEEKLY_DIGEST_HOUR = 9
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ---- schedule helpers -------------------------------------------------------


def is_in_quiet_hours(enabled: bool, start: str, end: str, now_local: datetime) -> bool:
    """Inclusive at both ends; start > end means the window spans midnight."""
    if not enabled or not start or not end:
        return False
    try:
        s, e = parse_hhmm(start), parse_hhmm(end)
    except ValueError:
        log.warning("Ignoring malformed quiet hours %r-%r", start, end)
        return False
    cur = now_local.hour * 60 + now_local.minute
    if s <= e:
        return s <= cur <= e
    return cur >= s or cur <= e


def _local_now(now: datetime, tz_name: Optional[str]) -> datetime:
    return as_utc(now).astimezone(user_zone(tz_name))


def _local_day_start(day: date, tz_name: Optional[str]) -> datetime:
    return datetime.combine(day, dtime.min, tzinfo=user_zone(tz_name)).astimezone(timezone.utc)


def week_start(day: date) -> date:
    # weeks start on Sunday
    return day - timedelta(days=(day.weekday() + 1) % 7)


def is_daily_digest_due(prefs: EmailPreferences, now_local: datetime) -> bool:
    if not prefs.daily_digest:
        return False
    try:
        send_at = parse_hhmm(prefs.daily_digest_time or "09:00")
    except ValueError:
        send_at = 9 * 60
    if now_local.hour * 60 + now_local.minute < send_at:
        return False
    last = as_utc(prefs.last_daily_sent)
    return last is None or last.astimezone(now_local.tzinfo).date() != now_local.date()


def is_weekly_digest_due(prefs: EmailPreferences, now_local: datetime) -> bool:
    if not prefs.weekly_digest:
        return False
    if WEEKDAYS[now_local.weekday()] != (prefs.digest_day or "monday").lower():
        return False
    if now_local.hour < WEEKLY_DIGEST_HOUR:
        return False
    last = as_utc(prefs.last_weekly_sent)
    return last is None or last.astimezone(now_local.tzinfo).date() < week_start(now_local.date())


# ---- in-app notifications ---------------------------------------------------


def has_unread(session: Session, user_email: str, type_: str, task_id: str) -> bool:
    return session.exec(
        select(Notification)
        .where(Notification.user_email == user_email)
        .where(Notification.type == type_)
        .where(Notification.related_task_id == task_id)
        .where(Notification.is_read == False)  # noqa: E712
    ).first() is not None


def create_notification(session: Session, user_email: str, title: str, body: str, type_: str, **refs) -> Notification:
    data = refs.pop("data", None) or {}
    n = Notification(
        user_email=user_email,
        title=title,
        body=body,
        type=type_,
        related_task_id=refs.get("task_id"),
        related_milestone_id=refs.get("milestone_id"),
        data={"type": type_, **data},
    )
    session.add(n)
    session.commit()
    session.refresh(n)
    return n


def deliver(session: Session, n: Notification, payload: dict, sender=push.send_push) -> int:
    payload.setdefault("data", {})["notification_id"] = n.id
    sent = push.send_to_user(session, n.user_email, payload, sender=sender)
    if sent:
        n.sent_at = utcnow()
        session.add(n)
        session.commit()
    return sent


# ---- push pass ---------------------------------------------------------------


def _open_tasks(session: Session, user_email: str) -> List[Task]:
    rows = session.exec(
        select(Task)
        .where(Task.user_email == user_email)
        .where(Task.deleted_at == None)  # noqa: E711
        .where(Task.completed_at == None)  # noqa: E711
        .where(Task.reminder_at != None)  # noqa: E711
    ).all()
    return [t for t in rows if not t.is_muted]


def _overdue_pass(session, user_email, tasks, now, sender, res) -> None:
    for task in tasks:
        if as_utc(task.reminder_at) >= now:
            continue
        notified = as_utc(task.notified_at)
        if notified is not None and notified >= now - OVERDUE_REPEAT:
            continue
        if has_unread(session, user_email, "overdue-task", task.id):
            continue

        title, body = "Task Overdue", f'"{task.title}" is overdue!'
        url = f"/task/{task.id}"
        n = create_notification(session, user_email, title, body, "overdue-task",
                                task_id=task.id, data={"task_id": task.id, "url": url})
        res["total_notifications_sent"] += deliver(
            session, n, push.build_payload(title, body, url=url, tag=f"overdue-task-{task.id}",
                                           type="overdue-task", task_id=task.id),
            sender,
        )
        task.notified_at = now
        session.add(task)
        session.commit()
        res["overdue_notifications"] += 1


def _reminder_pass(session, user_email, tasks, now, sender, res) -> None:
    for task in tasks:
        due = as_utc(task.reminder_at)
        if not (now < due <= now + REMINDER_LOOKAHEAD):
            continue
        if task.only_notify_at_reminder:
            continue
        reminded = as_utc(task.last_reminded_at)
        if reminded is not None and reminded >= now - REMINDER_REPEAT:
            continue
        if has_unread(session, user_email, "task-reminder", task.id):
            continue

        minutes = round((due - now).total_seconds() / 60)
        title, body = "Task Reminder", f'"{task.title}" is due in {minutes} minutes'
        url = f"/task/{task.id}"
        n = create_notification(session, user_email, title, body, "task-reminder",
                                task_id=task.id, data={"task_id": task.id, "url": url, "minutes": minutes})
        res["total_notifications_sent"] += deliver(
            session, n, push.build_payload(title, body, url=url, tag=f"task-reminder-{task.id}",
                                           type="task-reminder", task_id=task.id),
            sender,
        )
        task.last_reminded_at = now
        session.add(task)
        session.commit()
        res["reminder_notifications"] += 1


def _milestone_pass(session, user_email, tz_name, now, sender, res) -> None:
    today = _local_now(now, tz_name).date()
    day_start = _local_day_start(today, tz_name)
    rows = session.exec(
        select(Milestone)
        .where(Milestone.user_email == user_email)
        .where(Milestone.is_active == True)  # noqa: E712
    ).all()

    for m in rows:
        days = ms.days_until(m, today, tz_name)
        rule = ms.matching_rule(m, days)
        if rule is None:
            continue
        sent_today = session.exec(
            select(Notification)
            .where(Notification.related_milestone_id == m.id)
            .where(Notification.type == "milestone-reminder")
        ).all()
        if any(as_utc(n.created_at) >= day_start for n in sent_today):
            continue

        title, body = ms.reminder_text(m, days, today, tz_name)
        n = create_notification(session, user_email, title, body, "milestone-reminder",
                                milestone_id=m.id,
                                data={"milestone_id": m.id, "notification_type": rule, "days_until": days})
        res["total_notifications_sent"] += deliver(
            session, n, push.build_payload(title, body, url="/milestones", tag=f"milestone-{m.id}-{rule}",
                                           type="milestone-reminder", milestone_id=m.id),
            sender,
        )
        m.last_notified_at = now
        session.add(m)
        session.commit()
        res["milestone_notifications"] += 1


def process_push_notifications(session: Session, now: Optional[datetime] = None, sender=push.send_push) -> dict:
    now = as_utc(now) or utcnow()
    res: Dict = {
        "users_checked": 0,
        "users_processed": 0,
        "overdue_notifications": 0,
        "reminder_notifications": 0,
        "milestone_notifications": 0,
        "total_notifications_sent": 0,
        "errors": [],
    }
    if sender is push.send_push and not push.is_configured():
        res["errors"].append("VAPID keys not configured; push pass skipped")
        return res

    for prefs in session.exec(select(NotificationPreferences)).all():
        user_email = prefs.user_email
        res["users_checked"] += 1
        if not prefs.enabled:
            continue
        if is_in_quiet_hours(prefs.quiet_hours_enabled, prefs.quiet_hours_start, prefs.quiet_hours_end,
                             _local_now(now, prefs.timezone)):
            log.debug("Quiet hours for %s, skipping push", user_email)
            continue
        if not push.active_subscriptions(session, user_email):
            continue

        res["users_processed"] += 1
        try:
            tasks = _open_tasks(session, user_email)
            if prefs.overdue_alerts:
                _overdue_pass(session, user_email, tasks, now, sender, res)
            if prefs.task_reminders:
                _reminder_pass(session, user_email, tasks, now, sender, res)
            if prefs.milestone_alerts:
                _milestone_pass(session, user_email, prefs.timezone, now, sender, res)
        except Exception as e:
            log.exception("Push pass failed for %s", user_email)
            session.rollback()
            res["errors"].append(f"{user_email}: {e}")

    return res


# ---- email digests -----------------------------------------------------------


def _task_dict(t: Task) -> dict:
    return {"id": t.id, "title": t.title, "description": t.description, "reminder_at": t.reminder_at}


def _user_tasks(session: Session, user_email: str) -> List[Task]:
    return list(session.exec(
        select(Task).where(Task.user_email == user_email).where(Task.deleted_at == None)  # noqa: E711
    ).all())


def daily_stats(session: Session, user_email: str, now_local: datetime) -> dict:
    tz = now_local.tzinfo
    today = now_local.date()
    tomorrow = today + timedelta(days=1)
    now = as_utc(now_local)

    def local_day(dt):
        return as_utc(dt).astimezone(tz).date() if dt else None

    out = {"completed_today": [], "pending_today": [], "overdue": [], "tomorrow": []}
    for t in _user_tasks(session, user_email):
        if t.completed_at:
            if local_day(t.completed_at) == today:
                out["completed_today"].append(_task_dict(t))
            continue
        due_day = local_day(t.reminder_at)
        if due_day == today:
            out["pending_today"].append(_task_dict(t))
        elif due_day == tomorrow:
            out["tomorrow"].append(_task_dict(t))
        elif t.reminder_at is not None and as_utc(t.reminder_at) < now:
            out["overdue"].append(_task_dict(t))
    return out


def weekly_stats(session: Session, user_email: str, now_local: datetime) -> dict:
    now = as_utc(now_local)
    since = now - timedelta(days=7)
    until = now + timedelta(days=7)
    tasks = _user_tasks(session, user_email)

    created = [t for t in tasks if as_utc(t.created_at) >= since]
    completed = [t for t in tasks if t.completed_at and as_utc(t.completed_at) >= since]
    open_ = [t for t in tasks if not t.completed_at and t.reminder_at is not None]
    rate = round(100 * len(completed) / len(created)) if created else 0
    return {
        "created_count": len(created),
        "completed_count": len(completed),
        "completion_rate": min(rate, 100),
        "overdue": [_task_dict(t) for t in open_ if as_utc(t.reminder_at) < now],
        "upcoming": [_task_dict(t) for t in open_ if now <= as_utc(t.reminder_at) <= until],
    }


def process_email_digests(session: Session, now: Optional[datetime] = None) -> dict:
    now = as_utc(now) or utcnow()
    res: Dict = {
        "users_checked": 0,
        "users_processed": 0,
        "daily_digests_sent": 0,
        "weekly_digests_sent": 0,
        "email_errors": 0,
        "errors": [],
    }

    rows = session.exec(
        select(EmailPreferences).where(
            (EmailPreferences.daily_digest == True) | (EmailPreferences.weekly_digest == True)  # noqa: E712
        )
    ).all()
    for prefs in rows:
        user_email = prefs.user_email
        res["users_checked"] += 1
        local = _local_now(now, prefs.timezone)
        if is_in_quiet_hours(prefs.quiet_hours_enabled, prefs.quiet_hours_start, prefs.quiet_hours_end, local):
            continue

        daily, weekly = is_daily_digest_due(prefs, local), is_weekly_digest_due(prefs, local)
        if not (daily or weekly):
            continue
        res["users_processed"] += 1
        user = session.get(User, user_email)
        first_name = user.first_name if user else ""

        try:
            if daily:
                if mailer.send_daily_digest(user_email, first_name, daily_stats(session, user_email, local), prefs.timezone):
                    prefs.last_daily_sent = now
                    res["daily_digests_sent"] += 1
                else:
                    res["email_errors"] += 1
                    res["errors"].append(f"{user_email}: daily digest send failed")
            if weekly:
                if mailer.send_weekly_digest(user_email, first_name, weekly_stats(session, user_email, local), prefs.timezone):
                    prefs.last_weekly_sent = now
                    res["weekly_digests_sent"] += 1
                else:
                    res["email_errors"] += 1
                    res["errors"].append(f"{user_email}: weekly digest send failed")
            session.add(prefs)
            session.commit()
        except Exception as e:
            log.exception("Digest failed for %s", user_email)
            session.rollback()
            res["email_errors"] += 1
            res["errors"].append(f"{user_email}: {e}")

    return res


# ---- combined check ----------------------------------------------------------


def process_remote_sync(session: Session, now: Optional[datetime] = None, sync_factory=TaskSyncService) -> dict:
    res: Dict = {"users_checked": 0, "synced": 0, "skipped": 0, "errors": []}
    rows = session.exec(
        select(RemoteTaskSettings)
        .where(RemoteTaskSettings.is_connected == True)  # noqa: E712
        .where(RemoteTaskSettings.sync_enabled == True)  # noqa: E712
    ).all()
    service = sync_factory(session)
    for s in rows:
        res["users_checked"] += 1
        out = service.perform_interval_sync(s.user_email, now)
        if out.get("skipped"):
            res["skipped"] += 1
        elif out.get("success"):
            res["synced"] += 1
        else:
            res["errors"].extend(f"{s.user_email}: {e}" for e in out.get("errors", []))
    return res


def execute_notification_check(
    session: Session,
    now: Optional[datetime] = None,
    sender=push.send_push,
    sync_factory=TaskSyncService,
) -> dict:
    started = time.monotonic()
    now = as_utc(now) or utcnow()

    push_res = process_push_notifications(session, now, sender=sender)
    email_res = process_email_digests(session, now)
    sync_res = process_remote_sync(session, now, sync_factory=sync_factory)

    errors = push_res["errors"] + email_res["errors"] + sync_res["errors"]
    summary = {
        "push": push_res,
        "email": email_res,
        "remote_sync": sync_res,
        "users_processed": push_res["users_processed"] + email_res["users_processed"],
        "total_notifications_sent": push_res["total_notifications_sent"],
        "errors": errors,
        "execution_ms": int((time.monotonic() - started) * 1000),
    }
    log.info(
        "Notification check: users=%s sent=%s daily=%s weekly=%s synced=%s errors=%s",
        summary["users_processed"], summary["total_notifications_sent"],
        email_res["daily_digests_sent"], email_res["weekly_digests_sent"],
        sync_res["synced"], len(errors),
    )
    return summary


# ---- loop --------------------------------------------------------------------


class NotificationLoop:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        interval_seconds: Optional[int] = None,
        max_hours: Optional[int] = None,
        check: Callable[[Session], dict] = execute_notification_check,
    ):
        self.session_factory = session_factory or (lambda: Session(db.engine))
        self.interval_seconds = interval_seconds if interval_seconds is not None else config.settings.NOTIFICATION_LOOP_SECONDS
        self.max_hours = max_hours if max_hours is not None else config.settings.NOTIFICATION_LOOP_MAX_HOURS
        self.check = check

        # best-effort guard, not a lock
        self.is_running = False
        self.started_at: Optional[datetime] = None
        self.cycles = 0
        self.last_result: Optional[dict] = None
        self.errors: List[str] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> bool:
        if self.is_running:
            log.info("Notification loop already running, skipping")
            return False
        self.is_running = True
        self.started_at = utcnow()
        self.cycles = 0
        self.errors = []
        # each run owns its stop event; a stopped run still finishing its cycle cannot revive
        stop_event = threading.Event()
        self._stop_event = stop_event
        thread = threading.Thread(target=self._run, args=(stop_event,), name="notification-loop", daemon=True)
        self._thread = thread
        thread.start()
        log.info("Notification loop started (every %ss, max %sh)", self.interval_seconds, self.max_hours)
        return True

    def stop(self) -> bool:
        was_running = self.is_running
        self.is_running = False
        self._stop_event.set()
        return was_running

    def run_once(self) -> Optional[dict]:
        try:
            with self.session_factory() as session:
                result = self.check(session)
        except Exception as e:
            log.exception("Notification cycle %s failed", self.cycles + 1)
            self.errors.append(f"cycle {self.cycles + 1}: {e}")
            return None
        self.cycles += 1
        self.last_result = result
        self.errors.extend(result.get("errors", [])[-20:])
        return result

    def _run(self, stop_event: threading.Event) -> None:
        deadline = time.monotonic() + self.max_hours * 3600
        try:
            while not stop_event.is_set() and time.monotonic() < deadline:
                self.run_once()
                if stop_event.wait(self.interval_seconds):
                    break
        finally:
            if self._thread is threading.current_thread():
                self.is_running = False
            log.info("Notification loop stopped after %s cycles", self.cycles)

    def status(self) -> dict:
        return {
            "is_running": self.is_running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "cycles": self.cycles,
            "interval_seconds": self.interval_seconds,
            "recent_errors": self.errors[-10:],
            "last_result": self.last_result,
        }


loop = NotificationLoop()
