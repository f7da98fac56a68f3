from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

from mindmate.utils.dates import as_utc

Priority = Literal["Low", "Medium", "High", "Critical"]
TimeOfDay = Literal["Morning", "Afternoon", "Evening"]
Recurrence = Literal["none", "daily", "weekly", "monthly"]


def dump(row, exclude: tuple = ()) -> Dict[str, Any]:
    """SQLModel row -> JSON-ready dict with UTC-aware timestamps."""
    out = {}
    for k, v in row.model_dump().items():
        if k in exclude:
            continue
        out[k] = as_utc(v).isoformat() if isinstance(v, datetime) else v
    return out


# ---------- tasks ----------


class TaskIn(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    description: Optional[str] = None
    category: str = "Personal"
    priority: Priority = "Medium"
    duration: int = Field(default=30, ge=0, le=24 * 60)
    time_of_day: TimeOfDay = "Morning"
    parent_id: Optional[str] = None
    reminder_at: Optional[datetime] = None
    only_notify_at_reminder: bool = False
    recurrence_frequency: Recurrence = "none"
    recurrence_end: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    scheduled_end_at: Optional[datetime] = None
    sync_to_remote: bool = True
    assignee_email: Optional[EmailStr] = None


class TaskPatch(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[Priority] = None
    duration: Optional[int] = Field(default=None, ge=0, le=24 * 60)
    time_of_day: Optional[TimeOfDay] = None
    reminder_at: Optional[datetime] = None
    only_notify_at_reminder: Optional[bool] = None
    is_muted: Optional[bool] = None
    completed: Optional[bool] = None
    recurrence_frequency: Optional[Recurrence] = None
    recurrence_end: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    scheduled_end_at: Optional[datetime] = None
    sync_to_remote: Optional[bool] = None
    assignee_email: Optional[EmailStr] = None


class TaskBatch(BaseModel):
    action: Literal["complete", "delete", "move_category", "set_priority"]
    ids: List[str] = Field(min_length=1)
    category: Optional[str] = None
    priority: Optional[Priority] = None


# ---------- notes ----------


class NoteIn(BaseModel):
    title: str = ""
    content: str = ""
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    color: Optional[str] = None
    font_size: Optional[int] = Field(default=None, ge=8, le=72)


class NotePatch(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    color: Optional[str] = None
    font_size: Optional[int] = Field(default=None, ge=8, le=72)


# ---------- teams ----------


class TeamIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None


class TeamPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None


class InviteIn(BaseModel):
    email: EmailStr
    role: Literal["admin", "member", "viewer"] = "member"


# ---------- milestones ----------

MilestoneType = Literal["anniversary", "birthday", "work_anniversary", "milestone", "custom"]


class MilestoneIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    type: MilestoneType = "milestone"
    icon: Optional[str] = None
    original_date: datetime
    is_recurring: bool = True
    recurring_frequency: Literal["yearly", "monthly"] = "yearly"
    is_active: bool = True
    notify_on_the_day: bool = True
    notify_one_day_before: bool = True
    notify_three_days_before: bool = False
    notify_one_week_before: bool = False
    notify_one_month_before: bool = False


class MilestonePatch(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    type: Optional[MilestoneType] = None
    icon: Optional[str] = None
    original_date: Optional[datetime] = None
    is_recurring: Optional[bool] = None
    recurring_frequency: Optional[Literal["yearly", "monthly"]] = None
    is_active: Optional[bool] = None
    notify_on_the_day: Optional[bool] = None
    notify_one_day_before: Optional[bool] = None
    notify_three_days_before: Optional[bool] = None
    notify_one_week_before: Optional[bool] = None
    notify_one_month_before: Optional[bool] = None


# ---------- preferences ----------

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class NotificationPrefsIn(BaseModel):
    enabled: Optional[bool] = None
    task_reminders: Optional[bool] = None
    overdue_alerts: Optional[bool] = None
    milestone_alerts: Optional[bool] = None
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[str] = Field(default=None, pattern=HHMM_PATTERN)
    quiet_hours_end: Optional[str] = Field(default=None, pattern=HHMM_PATTERN)
    timezone: Optional[str] = None


class EmailPrefsIn(BaseModel):
    daily_digest: Optional[bool] = None
    daily_digest_time: Optional[str] = Field(default=None, pattern=HHMM_PATTERN)
    weekly_digest: Optional[bool] = None
    digest_day: Optional[Literal["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]] = None
    task_reminders: Optional[bool] = None
    team_invitations: Optional[bool] = None
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[str] = Field(default=None, pattern=HHMM_PATTERN)
    quiet_hours_end: Optional[str] = Field(default=None, pattern=HHMM_PATTERN)
    timezone: Optional[str] = None


class SubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class SubscriptionIn(BaseModel):
    endpoint: str
    keys: SubscriptionKeys
    user_agent: Optional[str] = None
    device_type: Optional[Literal["desktop", "mobile", "tablet"]] = None


# ---------- google ----------


class RemoteSettingsIn(BaseModel):
    sync_enabled: Optional[bool] = None
    auto_sync: Optional[bool] = None
    sync_direction: Optional[Literal["app-to-remote", "remote-to-app", "bidirectional"]] = None
    on_deleted_tasks_action: Optional[Literal["skip", "recreate"]] = None
    default_task_list_id: Optional[str] = None


class SyncActionIn(BaseModel):
    action: Literal["fullSync", "intervalSync", "syncAllIncomplete"] = "fullSync"


class ConflictIn(BaseModel):
    task_id: str
    strategy: Literal["keep_app", "keep_remote", "merge"]
    remote_task: Dict[str, Any]
