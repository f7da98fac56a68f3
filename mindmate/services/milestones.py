"""
Milestone date math: next anniversary, countdown, elapsed time, and which
reminder rule (if any) fires today.

All calculations are on calendar dates in the user's timezone.
"""
from __future__ import annotations

import calendar
from datetime import date, datetime
from typing import Optional, Tuple

from mindmate.models import Milestone
from mindmate.utils.dates import as_utc, user_zone

TYPE_INFO = {
    "birthday": ("Birthday", "🎂"),
    "anniversary": ("Anniversary", "💖"),
    "work_anniversary": ("Work Anniversary", "💼"),
    "milestone": ("Milestone", "🎯"),
    "custom": ("Custom", "⭐"),
}

# (days before, rule name, milestone flag)
RULES = (
    (0, "on-the-day", "notify_on_the_day"),
    (1, "one-day-before", "notify_one_day_before"),
    (3, "three-days-before", "notify_three_days_before"),
    (7, "one-week-before", "notify_one_week_before"),
    (30, "one-month-before", "notify_one_month_before"),
)


def _clamped(year: int, month: int, day: int) -> date:
    # Feb 29 -> Feb 28, Jan 31 -> Apr 30, ...
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def local_date(dt: datetime, tz_name: Optional[str] = None) -> date:
    return as_utc(dt).astimezone(user_zone(tz_name)).date()


def next_anniversary(m: Milestone, today: date, tz_name: Optional[str] = None) -> Optional[date]:
    """First occurrence on or after `today`. One-off milestones count only if still ahead."""
    orig = local_date(m.original_date, tz_name)

    if not m.is_recurring:
        return orig if orig >= today else None

    if m.recurring_frequency == "monthly":
        this_month = _clamped(today.year, today.month, orig.day)
        if this_month >= today:
            return this_month
        year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
        return _clamped(year, month, orig.day)

    this_year = _clamped(today.year, orig.month, orig.day)
    if this_year >= today:
        return this_year
    return _clamped(today.year + 1, orig.month, orig.day)


def days_until(m: Milestone, today: date, tz_name: Optional[str] = None) -> Optional[int]:
    nxt = next_anniversary(m, today, tz_name)
    return (nxt - today).days if nxt else None


def time_since(m: Milestone, today: date, tz_name: Optional[str] = None) -> dict:
    orig = local_date(m.original_date, tz_name)
    months = (today.year - orig.year) * 12 + (today.month - orig.month)
    if today.day < orig.day:
        months -= 1
    months = max(months, 0)
    years, rem_months = divmod(months, 12)
    total_days = (today - orig).days

    if years:
        formatted = f"{years} year{'s' if years > 1 else ''}"
        if rem_months:
            formatted += f", {rem_months} month{'s' if rem_months > 1 else ''}"
    elif rem_months:
        formatted = f"{rem_months} month{'s' if rem_months > 1 else ''}"
    else:
        formatted = f"{total_days} day{'' if total_days == 1 else 's'}"
    return {"years": years, "months": rem_months, "total_days": total_days, "formatted": formatted}


def format_countdown(days: Optional[int]) -> Optional[str]:
    if days is None:
        return None
    if days == 0:
        return "Today"
    if days == 1:
        return "Tomorrow"
    if days <= 30:
        return f"In {days} days"
    months, rem = divmod(days, 30)
    out = f"In {months} month{'s' if months > 1 else ''}"
    if rem:
        out += f", {rem} day{'s' if rem > 1 else ''}"
    return out


def matching_rule(m: Milestone, days: Optional[int]) -> Optional[str]:
    if days is None:
        return None
    for offset, name, flag in RULES:
        if days == offset and getattr(m, flag):
            return name
    return None


def anniversary_number(m: Milestone, occurrence: date, tz_name: Optional[str] = None) -> int:
    orig = local_date(m.original_date, tz_name)
    if m.recurring_frequency == "monthly":
        return (occurrence.year - orig.year) * 12 + (occurrence.month - orig.month)
    return occurrence.year - orig.year


def reminder_text(m: Milestone, days: int, today: date, tz_name: Optional[str] = None) -> Tuple[str, str]:
    label, default_icon = TYPE_INFO.get(m.type, TYPE_INFO["custom"])
    icon = m.icon or default_icon
    occurrence = next_anniversary(m, today, tz_name) or today
    n = anniversary_number(m, occurrence, tz_name)
    unit = "month" if m.recurring_frequency == "monthly" else "year"
    count = f"{n} {unit}{'' if n == 1 else 's'}"

    if days == 0:
        title = f"{icon} {m.title}"
        body = f"Today marks {count} since {m.title}!" if m.is_recurring and n > 0 else f"{m.title} is today!"
        return title, body

    when = {1: "tomorrow", 7: "in 1 week", 30: "in 1 month"}.get(days, f"in {days} days")
    title = f"{icon} Upcoming {label}"
    body = f"{m.title} is {when} ({count})" if m.is_recurring and n > 0 else f"{m.title} is {when}"
    return title, body


def describe(m: Milestone, today: date, tz_name: Optional[str] = None) -> dict:
    """Computed fields for API responses."""
    nxt = next_anniversary(m, today, tz_name)
    days = (nxt - today).days if nxt else None
    return {
        "next_date": nxt.isoformat() if nxt else None,
        "days_until": days,
        "countdown": format_countdown(days),
        "time_since": time_since(m, today, tz_name),
    }
