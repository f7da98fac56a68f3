from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

import requests
from dateutil import parser as dateparser
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from sqlmodel import Session

from mindmate import config
from mindmate.models import RemoteTaskSettings, Task

log = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"
DEFAULT_LIST = "@default"


class RemoteTasksNotConnected(RuntimeError):
    pass


# --- time helpers


def parse_remote_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = dateparser.isoparse(value)
    except (ValueError, OverflowError):
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def to_rfc3339(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    dt = dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


# --- conversions


def task_to_remote_body(task: Task) -> dict:
    # parent is not part of the body; it goes in as a separate insert/move parameter
    body = {
        "title": task.title,
        "status": "completed" if task.completed_at else "needsAction",
    }
    if task.description:
        body["notes"] = task.description
    due = to_rfc3339(task.reminder_at)
    if due:
        body["due"] = due
    if task.completed_at:
        body["completed"] = to_rfc3339(task.completed_at)
    return body


def remote_to_local(remote: dict, user_email: str) -> Task:
    now = datetime.now(timezone.utc)
    updated = parse_remote_time(remote.get("updated")) or now
    completed_at = None
    if remote.get("status") == "completed":
        completed_at = parse_remote_time(remote.get("completed")) or updated
    return Task(
        user_email=user_email,
        title=remote.get("title") or "Untitled Task",
        description=remote.get("notes") or "",
        reminder_at=parse_remote_time(remote.get("due")),
        completed_at=completed_at,
        created_at=updated,
        updated_at=updated,
        category="Uncategorized",
        priority="Medium",
        duration=30,
        sync_to_remote=True,
        remote_task_id=remote.get("id"),
        remote_task_url=remote.get("selfLink"),
        remote_sync_status="synced",
        remote_last_sync=now,
    )


# --- OAuth flow


def build_flow(state: Optional[str] = None) -> Flow:
    s = config.settings
    if not (s.GOOGLE_CLIENT_ID and s.GOOGLE_CLIENT_SECRET and s.GOOGLE_OAUTH_REDIRECT_URI):
        raise RuntimeError("Missing GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET/GOOGLE_OAUTH_REDIRECT_URI")
    cfg = {"web": {
        "client_id": s.GOOGLE_CLIENT_ID,
        "client_secret": s.GOOGLE_CLIENT_SECRET,
        "auth_uri": "https://accounts.google.com/o/oauth2/auth",
        "token_uri": TOKEN_URI,
    }}
    return Flow.from_client_config(cfg, scopes=s.GOOGLE_SCOPES, redirect_uri=s.GOOGLE_OAUTH_REDIRECT_URI, state=state)


def authorization_url(state: str) -> str:
    url, _ = build_flow(state=state).authorization_url(
        access_type="offline",
        include_granted_scopes="true",
        prompt="consent",
    )
    return url


def exchange_code(code: str) -> Credentials:
    flow = build_flow()
    flow.fetch_token(code=code)
    return flow.credentials


def store_credentials(settings_row: RemoteTaskSettings, creds: Credentials) -> None:
    settings_row.access_token = creds.token
    if creds.refresh_token:
        settings_row.refresh_token = creds.refresh_token
    # google-auth keeps expiry as naive UTC
    settings_row.token_expires_at = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None


def revoke_token(token: Optional[str]) -> bool:
    if not token:
        return False
    try:
        r = requests.post(
            REVOKE_URI,
            params={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=10,
        )
    except requests.RequestException as e:
        log.warning("Google token revoke failed: %s", e)
        return False
    if not r.ok:
        log.warning("Google token revoke HTTP %s: %s", r.status_code, r.text[:200])
    return r.ok


def load_credentials(session: Session, settings_row: RemoteTaskSettings) -> Credentials:
    if not settings_row or not settings_row.is_connected or not settings_row.refresh_token:
        raise RemoteTasksNotConnected("Google Tasks not connected for this user")

    expiry = settings_row.token_expires_at
    if expiry is not None and expiry.tzinfo is not None:
        expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)

    creds = Credentials(
        token=settings_row.access_token,
        refresh_token=settings_row.refresh_token,
        token_uri=TOKEN_URI,
        client_id=config.settings.GOOGLE_CLIENT_ID,
        client_secret=config.settings.GOOGLE_CLIENT_SECRET,
        scopes=config.settings.GOOGLE_SCOPES,
        expiry=expiry,
    )
    if not creds.token or creds.expired:
        try:
            creds.refresh(Request())
        except RefreshError:
            log.exception("Refreshing Google token failed for %s", settings_row.user_email)
            settings_row.sync_status = "error"
            settings_row.last_error = "Failed to refresh access token"
            session.add(settings_row)
            session.commit()
            raise
        store_credentials(settings_row, creds)
        settings_row.last_error = None
        session.add(settings_row)
        session.commit()
    return creds


# --- API client


class GoogleTasksClient:
    """
    Thin wrapper over the Tasks v1 discovery client for one user.

    Returns the API's plain dicts (id, title, notes, due, status, completed,
    updated, parent, selfLink).
    """

    def __init__(self, service, default_list_id: Optional[str] = None):
        self.svc = service
        self.default_list_id = default_list_id or DEFAULT_LIST

    @classmethod
    def for_user(cls, session: Session, settings_row: RemoteTaskSettings) -> "GoogleTasksClient":
        creds = load_credentials(session, settings_row)
        svc = build("tasks", "v1", credentials=creds, cache_discovery=False)
        return cls(svc, settings_row.default_task_list_id)

    @classmethod
    def with_credentials(cls, creds: Credentials) -> "GoogleTasksClient":
        # during the OAuth callback, before tokens are persisted
        return cls(build("tasks", "v1", credentials=creds, cache_discovery=False))

    def _list(self, list_id: Optional[str]) -> str:
        return list_id or self.default_list_id

    def list_task_lists(self) -> List[dict]:
        resp = self.svc.tasklists().list(maxResults=100).execute()
        return resp.get("items", []) or []

    def create_task_list(self, title: str) -> dict:
        created = self.svc.tasklists().insert(body={"title": title}).execute()
        if not created.get("id"):
            raise RuntimeError("Created task list is missing an id")
        log.info("Created task list: %s", title)
        return {"id": created["id"], "title": created.get("title", title)}

    def list_tasks(self, list_id: Optional[str] = None) -> List[dict]:
        out: List[dict] = []
        page_token = None
        while True:
            resp = self.svc.tasks().list(
                tasklist=self._list(list_id),
                showCompleted=True,
                showDeleted=False,
                showHidden=True,
                maxResults=100,
                pageToken=page_token,
            ).execute()
            out.extend(resp.get("items", []) or [])
            page_token = resp.get("nextPageToken")
            if not page_token:
                return out

    def create_task(self, task: Task, list_id: Optional[str] = None, parent: Optional[str] = None) -> dict:
        params = {"tasklist": self._list(list_id), "body": task_to_remote_body(task)}
        if parent:
            params["parent"] = parent
        created = self.svc.tasks().insert(**params).execute()
        log.info("Created Google task: %s%s", task.title, f" (subtask of {parent})" if parent else "")
        return created

    def update_task(
        self,
        remote_id: str,
        task: Task,
        list_id: Optional[str] = None,
        parent: Optional[str] = None,
    ) -> dict:
        body = task_to_remote_body(task)
        body["id"] = remote_id
        updated = self.svc.tasks().update(tasklist=self._list(list_id), task=remote_id, body=body).execute()
        if parent:
            self.svc.tasks().move(tasklist=self._list(list_id), task=remote_id, parent=parent).execute()
        return updated

    def delete_task(self, remote_id: str, list_id: Optional[str] = None) -> None:
        self.svc.tasks().delete(tasklist=self._list(list_id), task=remote_id).execute()
