# mindmate/routers/google.py
import logging
from datetime import timedelta
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError
from sqlmodel import Session

from mindmate import config
from mindmate.db import get_session
from mindmate.deps import get_current_user_email
from mindmate.models import RemoteTaskSettings, Task
from mindmate.schemas import ConflictIn, RemoteSettingsIn, SyncActionIn, dump
from mindmate.security import create_access_token, parse_token
from mindmate.services import remote_tasks
from mindmate.services.remote_tasks import GoogleTasksClient, RemoteTasksNotConnected
from mindmate.services.task_sync import SyncError, TaskSyncService
from mindmate.utils.dates import utcnow

log = logging.getLogger(__name__)

router = APIRouter(prefix="/google", tags=["google"])

STATE_PURPOSE = "google-oauth"
SECRET_FIELDS = ("access_token", "refresh_token")


def get_sync_service(session: Session = Depends(get_session)) -> TaskSyncService:
    return TaskSyncService(session)


def _settings_or_404(session: Session, email: str) -> RemoteTaskSettings:
    s = session.get(RemoteTaskSettings, email)
    if not s or not s.is_connected:
        raise HTTPException(status_code=404, detail="Google Tasks not connected")
    return s


def _settings_redirect(**params) -> RedirectResponse:
    qs = "&".join(f"{k}={quote(str(v))}" for k, v in params.items())
    return RedirectResponse(f"{config.settings.APP_BASE_URL}/settings?{qs}")


# ---------- OAuth ----------


@router.get("/oauth")
def oauth_start(email: str = Depends(get_current_user_email)):
    # state carries the user through Google's redirect
    state = create_access_token({"sub": email, "purpose": STATE_PURPOSE}, expires_delta=timedelta(minutes=10))
    try:
        url = remote_tasks.authorization_url(state)
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return RedirectResponse(url)


@router.get("/callback")
def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    session: Session = Depends(get_session),
):
    if error:
        return _settings_redirect(error="oauth_error", message=error)
    if not code or not state:
        return _settings_redirect(error="missing_code")

    try:
        payload = parse_token(state)
    except HTTPException:
        return _settings_redirect(error="invalid_state")
    if payload.get("purpose") != STATE_PURPOSE:
        return _settings_redirect(error="invalid_state")
    email = payload["sub"].lower()

    try:
        creds = remote_tasks.exchange_code(code)
        lists = GoogleTasksClient.with_credentials(creds).list_task_lists()
    except Exception as e:
        log.exception("Google OAuth callback failed for %s", email)
        return _settings_redirect(error="token_exchange_error", message=str(e))

    default = next((tl for tl in lists if tl.get("id") == "@default"), None) or (lists[0] if lists else None)

    s = session.get(RemoteTaskSettings, email) or RemoteTaskSettings(user_email=email)
    remote_tasks.store_credentials(s, creds)
    s.is_connected = True
    s.sync_enabled = True
    s.default_task_list_id = s.default_task_list_id or (default or {}).get("id") or remote_tasks.DEFAULT_LIST
    s.sync_status = "idle"
    s.last_error = None
    session.add(s)
    session.commit()
    log.info("Google Tasks connected for %s (list=%s)", email, s.default_task_list_id)
    return _settings_redirect(success="google_tasks_connected")


# ---------- sync ----------


@router.get("/sync")
def sync_status(email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    s = session.get(RemoteTaskSettings, email)
    if not s:
        return {"is_connected": False}
    return dump(s, exclude=SECRET_FIELDS)


@router.post("/sync")
def run_sync(
    payload: SyncActionIn,
    email: str = Depends(get_current_user_email),
    service: TaskSyncService = Depends(get_sync_service),
):
    _settings_or_404(service.session, email)
    if payload.action == "intervalSync":
        return service.perform_interval_sync(email)
    if payload.action == "syncAllIncomplete":
        return service.sync_all_incomplete(email)
    return service.sync_user_tasks(email)


@router.patch("/sync")
def sync_one_task(
    payload: dict,
    email: str = Depends(get_current_user_email),
    service: TaskSyncService = Depends(get_sync_service),
):
    """Body: { action: "syncTask", task_id }"""
    task_id = payload.get("task_id")
    if payload.get("action") != "syncTask" or not task_id:
        raise HTTPException(status_code=400, detail="Invalid request body")
    task = service.session.get(Task, task_id)
    if not task or task.user_email != email:
        raise HTTPException(status_code=404, detail="Task not found")
    try:
        service.push_task_change(email, task_id)
    except Exception as e:
        log.error("Sync of task %s failed: %s", task_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to sync task {task_id}")
    return {"success": True, "task_id": task_id}


@router.delete("/sync")
def disconnect_or_delete(
    payload: Optional[dict] = None,
    email: str = Depends(get_current_user_email),
    service: TaskSyncService = Depends(get_sync_service),
):
    """
    Body { action: "deleteTask", task_id, remote_task_id? } mirrors one deletion;
    an empty body disconnects Google Tasks and revokes the token.
    """
    session = service.session
    payload = payload or {}

    if payload.get("action") == "deleteTask" and payload.get("task_id"):
        remote_id = payload.get("remote_task_id")
        if not remote_id:
            task = session.get(Task, payload["task_id"])
            remote_id = task.remote_task_id if task and task.user_email == email else None
        if not service.sync_task_deletion(email, remote_id):
            raise HTTPException(status_code=500, detail=f"Failed to sync task deletion {payload['task_id']}")
        return {"success": True, "task_id": payload["task_id"]}

    s = session.get(RemoteTaskSettings, email)
    if s:
        remote_tasks.revoke_token(s.refresh_token or s.access_token)
        s.is_connected = False
        s.access_token = None
        s.refresh_token = None
        s.token_expires_at = None
        s.sync_status = "idle"
        session.add(s)
        session.commit()
        log.info("Google Tasks disconnected for %s", email)
    return {"success": True}


# ---------- settings / lists ----------


@router.put("/settings")
def update_settings(
    payload: RemoteSettingsIn,
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    s = _settings_or_404(session, email)
    fields = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")
    for k, v in fields.items():
        setattr(s, k, v)
    session.add(s)
    session.commit()
    return {"success": True, **fields}


@router.get("/tasklists")
def task_lists(email: str = Depends(get_current_user_email), service: TaskSyncService = Depends(get_sync_service)):
    s = _settings_or_404(service.session, email)
    try:
        client = service.client_factory(service.session, s)
        lists = client.list_task_lists()
    except (RemoteTasksNotConnected, RefreshError) as e:
        raise HTTPException(status_code=401, detail=f"Google authorization failed: {e}")
    return {
        "default_task_list_id": s.default_task_list_id,
        "items": [{"id": tl.get("id"), "title": tl.get("title"), "updated": tl.get("updated")} for tl in lists],
    }


@router.post("/tasklists", status_code=201)
def create_task_list(
    payload: dict,
    email: str = Depends(get_current_user_email),
    service: TaskSyncService = Depends(get_sync_service),
):
    title = (payload.get("title") or "").strip()
    if not title:
        raise HTTPException(status_code=422, detail="title is required")
    s = _settings_or_404(service.session, email)
    try:
        created = service.client_factory(service.session, s).create_task_list(title)
    except (RemoteTasksNotConnected, RefreshError) as e:
        raise HTTPException(status_code=401, detail=f"Google authorization failed: {e}")
    return created


@router.post("/conflicts/resolve")
def resolve_conflict(
    payload: ConflictIn,
    email: str = Depends(get_current_user_email),
    service: TaskSyncService = Depends(get_sync_service),
):
    task = service.session.get(Task, payload.task_id)
    if not task or task.user_email != email or task.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Task not found")
    try:
        service.resolve_conflict(email, payload.strategy, task, payload.remote_task)
    except SyncError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (RemoteTasksNotConnected, RefreshError) as e:
        raise HTTPException(status_code=401, detail=f"Google authorization failed: {e}")
    except HttpError as e:
        log.error("Conflict resolution for task %s failed at Google: %s", task.id, e)
        raise HTTPException(status_code=502, detail=f"Google Tasks request failed: {e.reason or e.status_code}")
    service.session.refresh(task)
    return {"success": True, "task": dump(task), "resolved_at": utcnow().isoformat()}
