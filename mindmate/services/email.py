# mindmate/services/email.py
from __future__ import annotations

import html as _html
import json
import logging
import smtplib
import ssl
import urllib.request
from datetime import datetime
from email.message import EmailMessage
from typing import Iterable, Optional
from urllib.error import HTTPError, URLError

from mindmate import config
from mindmate.utils.dates import as_utc, user_zone

log = logging.getLogger(__name__)

# ---- transport ---------------------------------------------------------------


def _as_list(v: str | Iterable[str] | None) -> list[str]:
    if not v:
        return []
    if isinstance(v, str):
        return [v]
    seen, out = set(), []
    for e in v:
        key = (e or "").strip().lower()
        if key and key not in seen:
            seen.add(key)
            out.append(e.strip())
    return out


def _detect_sendgrid_api_key() -> str | None:
    """
    Prefer explicit SENDGRID_API_KEY; otherwise accept SendGrid SMTP creds
    (host=smtp.sendgrid.net, username=apikey, SG.* password).
    """
    if config.SENDGRID_API_KEY:
        return config.SENDGRID_API_KEY
    host = (config.SMTP_HOST or "").lower().strip()
    if host == "smtp.sendgrid.net" and config.SMTP_USERNAME == "apikey" and (config.SMTP_PASSWORD or "").startswith("SG."):
        return config.SMTP_PASSWORD
    return None


def _send_via_sendgrid(to: list[str], subject: str, text: str, html: str | None, reply_to: str | None) -> bool:
    api_key = _detect_sendgrid_api_key()
    if not api_key:
        return False

    payload = {
        "personalizations": [{"to": [{"email": e} for e in to]}],
        "from": {"email": config.FROM_EMAIL, "name": config.FROM_NAME or config.FROM_EMAIL},
        "subject": subject,
        "content": [{"type": "text/plain", "value": text or ""}],
    }
    if html:
        payload["content"].append({"type": "text/html", "value": html})
    if reply_to:
        payload["reply_to"] = {"email": reply_to}

    req = urllib.request.Request(
        "https://api.sendgrid.com/v3/mail/send",
        data=json.dumps(payload).encode("utf-8"),
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=20):
            pass
        log.info("SendGrid send ok -> %s", to)
        return True
    except HTTPError as e:
        body = e.read().decode("utf-8", "ignore") if e.fp else "<no body>"
        log.error("SendGrid HTTP %s: %s", e.code, body)
        return False
    except URLError as e:
        log.error("SendGrid network error: %s", e)
        return False


def _send_via_smtp(to: list[str], subject: str, text: str, html: str | None, reply_to: str | None) -> bool:
    host, user, pwd = config.SMTP_HOST, config.SMTP_USERNAME, config.SMTP_PASSWORD
    if not (host and user and pwd):
        log.error("SMTP creds missing (host/user/pwd)")
        return False

    msg = EmailMessage()
    msg["From"] = f"{config.FROM_NAME or config.FROM_EMAIL} <{config.FROM_EMAIL}>"
    msg["To"] = ", ".join(to)
    msg["Subject"] = subject
    if reply_to:
        msg["Reply-To"] = reply_to
    msg.set_content(text or "")
    if html:
        msg.add_alternative(html, subtype="html")

    try:
        with smtplib.SMTP(host, int(config.SMTP_PORT or 587), timeout=20) as s:
            s.ehlo()
            s.starttls(context=ssl.create_default_context())
            s.ehlo()
            s.login(user, pwd)
            s.send_message(msg)
        log.info("SMTP send ok -> %s via %s", to, host)
        return True
    except (smtplib.SMTPException, OSError) as e:
        log.error("SMTP send failed: %s", e)
        return False


def send_email(
    to: str | Iterable[str],
    subject: str,
    text: str,
    html: str | None = None,
    reply_to: str | None = None,
) -> bool:
    """
    Send via SendGrid (HTTP API) if a key is available, otherwise SMTP.
    EMAIL_DRY_RUN logs the message and reports success without sending.
    """
    to_list = _as_list(to)
    if not to_list:
        log.error("send_email called with empty recipient list")
        return False

    if config.EMAIL_DRY_RUN:
        log.info("[EMAIL DRY RUN] to=%s subject=%s", to_list, subject)
        return True

    if _detect_sendgrid_api_key() and _send_via_sendgrid(to_list, subject, text, html, reply_to):
        return True
    return _send_via_smtp(to_list, subject, text, html, reply_to)


# ---- rendering helpers -------------------------------------------------------


def _esc(v) -> str:
    return _html.escape(str(v or ""))


def _local_time_str(dt: Optional[datetime], tz_name: Optional[str] = None) -> str:
    """e.g. '12/5 2:00 PM EST' (year added when not the current year)."""
    if dt is None:
        return ""
    tz = user_zone(tz_name)
    local = as_utc(dt).astimezone(tz)
    fmt = "%m/%d %I:%M %p %Z" if local.year == datetime.now(tz).year else "%m/%d/%Y %I:%M %p %Z"
    return local.strftime(fmt).replace("/0", "/").replace(" 0", " ").lstrip("0")


def _wrap(body_html: str) -> str:
    return f"""
    <div style="font-family:system-ui,-apple-system,Segoe UI,Roboto,Arial;max-width:600px">
      {body_html}
      <p style="color:#888;font-size:12px">- The {_esc(config.APP_NAME)} Team</p>
    </div>
    """.strip()


def _signoff() -> list[str]:
    return ["", f"- The {config.APP_NAME} Team"]


def _link(path: str) -> str:
    return f"{config.APP_BASE_URL}{path}"


def _task_lines(tasks: Iterable[dict], tz_name: Optional[str] = None) -> list[str]:
    out = []
    for t in tasks:
        due = _local_time_str(t.get("reminder_at"), tz_name)
        out.append(f"  - {t.get('title', '')}" + (f" (due {due})" if due else ""))
    return out


def _task_items_html(tasks: Iterable[dict], tz_name: Optional[str] = None) -> str:
    items = []
    for t in tasks:
        due = _local_time_str(t.get("reminder_at"), tz_name)
        items.append(f"<li>{_esc(t.get('title'))}" + (f" <i>(due {_esc(due)})</i>" if due else "") + "</li>")
    return "<ul>" + "".join(items) + "</ul>" if items else "<p><i>Nothing here.</i></p>"


# ---- templates ---------------------------------------------------------------


def send_welcome(to: str, first_name: str = "") -> bool:
    name = first_name or "there"
    subject = f"Welcome to {config.APP_NAME}!"
    text = "\n".join([
        f"Hi {name},",
        "",
        f"Welcome to {config.APP_NAME}. Add your first task, set a reminder, and we'll take it from there.",
        f"Get started: {_link('/')}",
        *_signoff(),
    ])
    html = _wrap(
        f"<p>Hi {_esc(name)},</p>"
        f"<p>Welcome to <b>{_esc(config.APP_NAME)}</b>. Add your first task, set a reminder, "
        f"and we'll take it from there.</p>"
        f'<p><a href="{_esc(_link("/"))}">Get started</a></p>'
    )
    return send_email(to, subject, text, html=html)


def send_password_reset(to: str, token: str, first_name: str = "") -> bool:
    url = _link(f"/reset-password?token={token}")
    minutes = config.settings.PASSWORD_RESET_MINUTES
    subject = f"Reset Your Password - {config.APP_NAME}"
    text = "\n".join([
        f"Hi {first_name or 'there'},",
        "",
        "We received a request to reset your password.",
        f"Reset it here (valid for {minutes} minutes): {url}",
        "",
        "If you didn't ask for this you can ignore this email.",
        *_signoff(),
    ])
    html = _wrap(
        f"<p>Hi {_esc(first_name or 'there')},</p>"
        "<p>We received a request to reset your password.</p>"
        f'<p><a href="{_esc(url)}">Reset your password</a> (valid for {minutes} minutes)</p>'
        "<p>If you didn't ask for this you can ignore this email.</p>"
    )
    return send_email(to, subject, text, html=html)


def send_task_reminder(to: str, task: dict, tz_name: Optional[str] = None) -> bool:
    title = task.get("title", "")
    due = _local_time_str(task.get("reminder_at"), tz_name)
    url = _link(f"/task/{task.get('id', '')}")
    subject = f"Task Reminder: {title}"
    lines = [f"Reminder: {title}"]
    if due:
        lines.append(f"Due:      {due}")
    if task.get("description"):
        lines += ["", task["description"]]
    lines += ["", f"Open task: {url}", *_signoff()]
    html = _wrap(
        f"<p>This is a friendly reminder about <b>{_esc(title)}</b>.</p>"
        + (f"<p><b>Due:</b> {_esc(due)}</p>" if due else "")
        + (f"<p>{_esc(task.get('description'))}</p>" if task.get("description") else "")
        + f'<p><a href="{_esc(url)}">View task</a></p>'
    )
    return send_email(to, subject, "\n".join(lines), html=html)


def send_daily_digest(to: str, first_name: str, stats: dict, tz_name: Optional[str] = None) -> bool:
    """
    stats: {completed_today, pending_today, overdue, tomorrow} lists of task dicts.
    """
    day = datetime.now(user_zone(tz_name)).strftime("%b %d, %Y")
    subject = f"Daily Summary - {day}"
    sections = [
        ("Completed today", stats.get("completed_today", [])),
        ("Still pending today", stats.get("pending_today", [])),
        ("Overdue", stats.get("overdue", [])),
        ("Tomorrow", stats.get("tomorrow", [])),
    ]
    lines = [f"Hi {first_name or 'there'}, here's your day in {config.APP_NAME}:"]
    parts = [f"<p>Hi {_esc(first_name or 'there')}, here's your day:</p>"]
    for label, tasks in sections:
        lines += ["", f"{label} ({len(tasks)}):", *_task_lines(tasks, tz_name)]
        parts.append(f"<h3>{label} ({len(tasks)})</h3>{_task_items_html(tasks, tz_name)}")
    lines += _signoff()
    return send_email(to, subject, "\n".join(lines), html=_wrap("".join(parts)))


def send_weekly_digest(to: str, first_name: str, stats: dict, tz_name: Optional[str] = None) -> bool:
    """
    stats: {completed_count, created_count, completion_rate, overdue, upcoming} -
    the last two are lists of task dicts.
    """
    subject = f"Your Weekly Summary - {config.APP_NAME}"
    rate = stats.get("completion_rate", 0)
    lines = [
        f"Hi {first_name or 'there'},",
        "",
        f"This week you completed {stats.get('completed_count', 0)} tasks "
        f"and created {stats.get('created_count', 0)} ({rate}% completion).",
        "",
        f"Overdue ({len(stats.get('overdue', []))}):",
        *_task_lines(stats.get("overdue", []), tz_name),
        "",
        f"Coming up ({len(stats.get('upcoming', []))}):",
        *_task_lines(stats.get("upcoming", []), tz_name),
        *_signoff(),
    ]
    html = _wrap(
        f"<p>Hi {_esc(first_name or 'there')},</p>"
        f"<p>This week you completed <b>{stats.get('completed_count', 0)}</b> tasks and created "
        f"<b>{stats.get('created_count', 0)}</b> ({rate}% completion).</p>"
        f"<h3>Overdue</h3>{_task_items_html(stats.get('overdue', []), tz_name)}"
        f"<h3>Coming up</h3>{_task_items_html(stats.get('upcoming', []), tz_name)}"
    )
    return send_email(to, subject, "\n".join(lines), html=html)


def send_team_invitation(to: str, team_name: str, inviter: str, team_id: str) -> bool:
    url = _link(f"/teams/{team_id}/accept")
    subject = f"You're invited to join {team_name} on {config.APP_NAME}"
    text = "\n".join([
        "Hi,",
        "",
        f"{inviter} invited you to join the team \"{team_name}\".",
        f"Accept the invitation: {url}",
        *_signoff(),
    ])
    html = _wrap(
        f"<p>{_esc(inviter)} invited you to join the team <b>{_esc(team_name)}</b>.</p>"
        f'<p><a href="{_esc(url)}">Accept the invitation</a></p>'
    )
    return send_email(to, subject, text, html=html, reply_to=inviter)


def send_share_notification(to: str, sharer: str, item_title: str, item_type: str = "task", url_path: str = "/") -> bool:
    url = _link(url_path)
    subject = f"{sharer} shared a {item_type} with you"
    text = "\n".join([
        "Hi,",
        "",
        f"{sharer} shared the {item_type} \"{item_title}\" with you.",
        f"Open it: {url}",
        *_signoff(),
    ])
    html = _wrap(
        f"<p>{_esc(sharer)} shared the {_esc(item_type)} <b>{_esc(item_title)}</b> with you.</p>"
        f'<p><a href="{_esc(url)}">Open it</a></p>'
    )
    return send_email(to, subject, text, html=html, reply_to=sharer)
