# mindmate/routers/tasks.py
import logging
from typing import List, Optional

from dateutil.relativedelta import relativedelta
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select

from mindmate.db import get_session
from mindmate.deps import get_current_user_email
from mindmate.models import Task, TeamMember
from mindmate.schemas import TaskBatch, TaskIn, TaskPatch, dump
from mindmate.services.task_sync import TaskSyncService
from mindmate.utils.dates import as_utc, utcnow

log = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])

RECURRENCE_STEP = {
    "daily": relativedelta(days=1),
    "weekly": relativedelta(weeks=1),
    "monthly": relativedelta(months=1),
}

# team roles allowed to change shared tasks
WRITE_ROLES = ("owner", "admin", "member")


# ------------------------------ helpers --------------------------------


def _active_membership(session: Session, team_id: str, email: str) -> Optional[TeamMember]:
    return session.exec(
        select(TeamMember)
        .where(TeamMember.team_id == team_id)
        .where(TeamMember.email == email)
        .where(TeamMember.status == "active")
    ).first()


def get_task_or_404(session: Session, email: str, task_id: str, write: bool = False) -> Task:
    """Load a task the caller may see. With ``write``, team viewers get 403."""
    task = session.get(Task, task_id)
    if not task or task.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Task not found")
    if task.user_email == email:
        return task
    m = _active_membership(session, task.team_id, email) if task.team_id else None
    if m is None:
        raise HTTPException(status_code=404, detail="Task not found")
    if write and m.role not in WRITE_ROLES:
        raise HTTPException(status_code=403, detail="Not allowed for your role")
    return task


def push_remote(session: Session, task: Task) -> None:
    """Mirror a local edit to the user's task list; failures are logged, not surfaced."""
    if not task.sync_to_remote:
        return
    try:
        TaskSyncService(session).push_task_change(task.user_email, task.id)
    except Exception as e:
        log.warning("Remote push failed for task %s: %s", task.id, e)


def _subtasks(session: Session, parent_id: str) -> List[Task]:
    return list(session.exec(
        select(Task).where(Task.parent_id == parent_id).where(Task.deleted_at == None)  # noqa: E711
    ).all())


def _apply(task: Task, fields: dict) -> None:
    for k in ("reminder_at", "recurrence_end", "scheduled_at", "scheduled_end_at"):
        if k in fields and fields[k] is not None:
            fields[k] = as_utc(fields[k])
    completed = fields.pop("completed", None)
    for k, v in fields.items():
        setattr(task, k, v)
    if completed is not None:
        task.completed_at = (task.completed_at or utcnow()) if completed else None
    task.updated_at = utcnow()


def next_occurrence(task: Task) -> Optional[Task]:
    step = RECURRENCE_STEP.get(task.recurrence_frequency or "none")
    if step is None or task.reminder_at is None:
        return None
    due = as_utc(task.reminder_at) + step
    end = as_utc(task.recurrence_end)
    if end is not None and due > end:
        return None
    clone = task.model_dump(exclude={
        "id", "created_at", "updated_at", "completed_at", "notified_at", "last_reminded_at",
        "remote_task_id", "remote_task_url", "remote_sync_status", "remote_last_sync", "remote_sync_error",
    })
    clone["reminder_at"] = due
    for k in ("scheduled_at", "scheduled_end_at"):
        if clone.get(k):
            clone[k] = as_utc(clone[k]) + step
    return Task(**clone)


def _complete(session: Session, task: Task) -> Optional[Task]:
    if task.completed_at:
        return None
    task.completed_at = utcnow()
    task.updated_at = task.completed_at
    session.add(task)
    nxt = next_occurrence(task)
    if nxt is not None:
        session.add(nxt)
    return nxt


# ------------------------------ routes --------------------------------


@router.get("")
def list_tasks(
    include_completed: bool = Query(True),
    category: Optional[str] = Query(None),
    parent_id: Optional[str] = Query(None),
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    q = (
        select(Task)
        .where(Task.user_email == email)
        .where(Task.deleted_at == None)  # noqa: E711
        .order_by(Task.created_at.desc())
    )
    if not include_completed:
        q = q.where(Task.completed_at == None)  # noqa: E711
    if category:
        q = q.where(Task.category == category)
    if parent_id:
        q = q.where(Task.parent_id == parent_id)
    items = [dump(t) for t in session.exec(q).all()]
    return {"count": len(items), "items": items}


@router.post("", status_code=201)
def create_task(payload: TaskIn, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    if payload.parent_id:
        get_task_or_404(session, email, payload.parent_id, write=True)
    task = Task(user_email=email, title=payload.title.strip())
    _apply(task, payload.model_dump(exclude={"title"}))
    session.add(task)
    session.commit()
    session.refresh(task)
    push_remote(session, task)
    session.refresh(task)
    return dump(task)


@router.get("/search")
def search_tasks(
    q: str = Query(..., min_length=1),
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    needle = q.strip().lower()
    rows = session.exec(
        select(Task).where(Task.user_email == email).where(Task.deleted_at == None)  # noqa: E711
    ).all()
    items = [
        dump(t) for t in rows
        if needle in (t.title or "").lower()
        or needle in (t.description or "").lower()
        or needle in (t.category or "").lower()
    ]
    return {"count": len(items), "items": items}


@router.post("/batch")
def batch_update(payload: TaskBatch, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    if payload.action == "move_category" and not payload.category:
        raise HTTPException(status_code=422, detail="category is required for move_category")
    if payload.action == "set_priority" and not payload.priority:
        raise HTTPException(status_code=422, detail="priority is required for set_priority")

    tasks = [get_task_or_404(session, email, tid, write=True) for tid in dict.fromkeys(payload.ids)]
    removed_remote = []
    now = utcnow()
    for task in tasks:
        if payload.action == "complete":
            _complete(session, task)
        elif payload.action == "delete":
            for t in [task, *_subtasks(session, task.id)]:
                t.deleted_at = now
                session.add(t)
                if t.remote_task_id:
                    removed_remote.append((t.user_email, t.remote_task_id))
        elif payload.action == "move_category":
            task.category = payload.category
            task.updated_at = now
            session.add(task)
        else:
            task.priority = payload.priority
            task.updated_at = now
            session.add(task)
    session.commit()

    sync = TaskSyncService(session)
    if payload.action == "delete":
        for owner, remote_id in removed_remote:
            sync.sync_task_deletion(owner, remote_id)
    elif payload.action == "complete":
        for task in tasks:
            push_remote(session, task)
    return {"ok": True, "updated": len(tasks)}


@router.get("/{task_id}")
def get_task(task_id: str, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    task = get_task_or_404(session, email, task_id)
    out = dump(task)
    out["subtasks"] = [dump(t) for t in _subtasks(session, task.id)]
    return out


@router.patch("/{task_id}")
def update_task(
    task_id: str,
    payload: TaskPatch,
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    task = get_task_or_404(session, email, task_id, write=True)
    fields = payload.model_dump(exclude_unset=True)
    if fields.get("title") is not None:
        fields["title"] = fields["title"].strip()
    _apply(task, fields)
    session.add(task)
    session.commit()
    push_remote(session, task)
    session.refresh(task)
    return dump(task)


@router.delete("/{task_id}")
def delete_task(task_id: str, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    task = get_task_or_404(session, email, task_id, write=True)
    now = utcnow()
    doomed = [task, *_subtasks(session, task.id)]
    for t in doomed:
        t.deleted_at = now
        session.add(t)
    session.commit()

    sync = TaskSyncService(session)
    for t in doomed:
        if t.remote_task_id:
            sync.sync_task_deletion(t.user_email, t.remote_task_id)
    return {"ok": True, "deleted": len(doomed)}


@router.post("/{task_id}/complete")
def complete_task(task_id: str, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    task = get_task_or_404(session, email, task_id, write=True)
    nxt = _complete(session, task)
    session.commit()
    push_remote(session, task)
    session.refresh(task)
    out = {"task": dump(task), "next": None}
    if nxt is not None:
        session.refresh(nxt)
        push_remote(session, nxt)
        out["next"] = dump(nxt)
    return out


@router.post("/{task_id}/subtasks", status_code=201)
def create_subtask(
    task_id: str,
    payload: TaskIn,
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    parent = get_task_or_404(session, email, task_id, write=True)
    if parent.parent_id:
        raise HTTPException(status_code=400, detail="Subtasks cannot have subtasks")
    task = Task(user_email=parent.user_email, title=payload.title.strip(), team_id=parent.team_id)
    _apply(task, payload.model_dump(exclude={"title", "parent_id"}))
    task.parent_id = parent.id
    session.add(task)
    session.commit()
    session.refresh(task)
    push_remote(session, task)
    session.refresh(task)
    return dump(task)
