# mindmate/models.py
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import SQLModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------- Accounts ----------


class User(SQLModel, table=True):
    __tablename__ = "user_account"

    email: str = Field(primary_key=True)
    first_name: str = Field(default="", max_length=120)
    last_name: str = Field(default="", max_length=120)
    phone: Optional[str] = Field(default=None, max_length=50)
    password_hash: str = Field(default="")
    created_at: datetime = Field(default_factory=_now, index=True)

    # password reset (single outstanding token)
    reset_token_hash: Optional[str] = Field(default=None, index=True)
    reset_token_expires_at: Optional[datetime] = None


# ---------- Core content ----------


class Task(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    user_email: str = Field(index=True)
    title: str
    description: Optional[str] = None
    category: str = Field(default="Personal", max_length=60)
    priority: str = Field(default="Medium", max_length=20)
    duration: int = Field(default=30)  # minutes
    time_of_day: str = Field(default="Morning", max_length=20)

    created_at: datetime = Field(default_factory=_now, index=True)
    updated_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = Field(default=None, index=True)
    deleted_at: Optional[datetime] = Field(default=None, index=True)

    parent_id: Optional[str] = Field(default=None, index=True)
    team_id: Optional[str] = Field(default=None, index=True)
    assignee_email: Optional[str] = None

    # reminders
    reminder_at: Optional[datetime] = Field(default=None, index=True)
    notified_at: Optional[datetime] = None       # last overdue alert
    last_reminded_at: Optional[datetime] = None  # last "due soon" alert
    only_notify_at_reminder: bool = Field(default=False)
    is_muted: bool = Field(default=False)
    rejection_count: int = Field(default=0)
    last_rejected_at: Optional[datetime] = None

    recurrence_frequency: str = Field(default="none", max_length=20)
    recurrence_end: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    scheduled_end_at: Optional[datetime] = None

    # external task-list sync
    sync_to_remote: bool = Field(default=True)
    remote_task_id: Optional[str] = Field(default=None, index=True)
    remote_task_url: Optional[str] = None
    remote_sync_status: Optional[str] = Field(default=None, max_length=20)
    remote_last_sync: Optional[datetime] = None
    remote_sync_error: Optional[str] = None


class Note(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    user_email: str = Field(index=True)
    title: str = ""
    content: str = ""  # rich text (HTML)
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=20)
    font_size: Optional[int] = None
    created_at: datetime = Field(default_factory=_now, index=True)
    updated_at: datetime = Field(default_factory=_now)
    deleted_at: Optional[datetime] = Field(default=None, index=True)


# ---------- Teams ----------


class Team(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    description: Optional[str] = None
    owner_email: str = Field(index=True)
    created_at: datetime = Field(default_factory=_now, index=True)
    updated_at: datetime = Field(default_factory=_now)


class TeamMember(SQLModel, table=True):
    __tablename__ = "team_member"
    __table_args__ = (UniqueConstraint("team_id", "email", name="uq_team_member"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: str = Field(index=True)
    email: str = Field(index=True)
    role: str = Field(default="member", max_length=20)       # owner | admin | member | viewer
    status: str = Field(default="invited", max_length=20)    # invited | active
    invited_by: Optional[str] = None
    invited_at: datetime = Field(default_factory=_now)
    joined_at: Optional[datetime] = None


# ---------- Milestones ----------


class Milestone(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    user_email: str = Field(index=True)
    title: str
    description: Optional[str] = None
    type: str = Field(default="milestone", max_length=30)
    icon: Optional[str] = None
    original_date: datetime
    is_recurring: bool = Field(default=True)
    recurring_frequency: str = Field(default="yearly", max_length=20)  # yearly | monthly
    is_active: bool = Field(default=True, index=True)

    notify_on_the_day: bool = Field(default=True)
    notify_one_day_before: bool = Field(default=True)
    notify_three_days_before: bool = Field(default=False)
    notify_one_week_before: bool = Field(default=False)
    notify_one_month_before: bool = Field(default=False)
    last_notified_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=_now, index=True)
    updated_at: datetime = Field(default_factory=_now)


# ---------- Notifications ----------


class Notification(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    user_email: str = Field(index=True)
    title: str
    body: str = ""
    type: str = Field(default="system", index=True, max_length=30)
    related_task_id: Optional[str] = Field(default=None, index=True)
    related_milestone_id: Optional[str] = Field(default=None, index=True)
    is_read: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=_now, index=True)
    sent_at: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


class PushSubscription(SQLModel, table=True):
    __tablename__ = "push_subscription"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_email: str = Field(index=True)
    endpoint: str = Field(index=True, unique=True)
    p256dh: str
    auth: str
    user_agent: Optional[str] = None
    device_type: Optional[str] = Field(default=None, max_length=20)  # desktop | mobile | tablet
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=_now)
    last_used_at: Optional[datetime] = None


class NotificationPreferences(SQLModel, table=True):
    __tablename__ = "notification_preferences"

    user_email: str = Field(primary_key=True)
    enabled: bool = Field(default=False)
    task_reminders: bool = Field(default=True)
    overdue_alerts: bool = Field(default=True)
    milestone_alerts: bool = Field(default=True)
    quiet_hours_enabled: bool = Field(default=False)
    quiet_hours_start: str = Field(default="22:00", max_length=5)
    quiet_hours_end: str = Field(default="08:00", max_length=5)
    timezone: Optional[str] = None
    updated_at: datetime = Field(default_factory=_now)


class EmailPreferences(SQLModel, table=True):
    __tablename__ = "email_preferences"

    user_email: str = Field(primary_key=True)
    daily_digest: bool = Field(default=False)
    daily_digest_time: str = Field(default="09:00", max_length=5)
    weekly_digest: bool = Field(default=False)
    digest_day: str = Field(default="monday", max_length=10)
    task_reminders: bool = Field(default=True)
    team_invitations: bool = Field(default=True)
    quiet_hours_enabled: bool = Field(default=False)
    quiet_hours_start: str = Field(default="22:00", max_length=5)
    quiet_hours_end: str = Field(default="08:00", max_length=5)
    timezone: Optional[str] = None
    last_daily_sent: Optional[datetime] = None
    last_weekly_sent: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_now)


# ---------- External task-list provider ----------


class RemoteTaskSettings(SQLModel, table=True):
    __tablename__ = "remote_task_settings"

    user_email: str = Field(primary_key=True)
    provider: str = Field(default="google", max_length=20)
    is_connected: bool = Field(default=False)
    sync_enabled: bool = Field(default=True)
    auto_sync: bool = Field(default=False)
    sync_direction: str = Field(default="bidirectional", max_length=20)
    on_deleted_tasks_action: str = Field(default="skip", max_length=20)  # skip | recreate
    default_task_list_id: Optional[str] = None

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    sync_status: str = Field(default="idle", max_length=20)
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
