# mindmate/routers/teams.py
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from mindmate.db import get_session
from mindmate.deps import get_current_user_email
from mindmate.models import EmailPreferences, Task, Team, TeamMember
from mindmate.routers.tasks import WRITE_ROLES, push_remote
from mindmate.schemas import InviteIn, TaskIn, TeamIn, TeamPatch, dump
from mindmate.services.email import send_share_notification, send_team_invitation
from mindmate.utils.dates import as_utc, utcnow

log = logging.getLogger(__name__)

router = APIRouter(prefix="/teams", tags=["teams"])

MANAGERS = ("owner", "admin")


# ------------------------------ helpers --------------------------------


def _membership(session: Session, team_id: str, email: str) -> TeamMember | None:
    return session.exec(
        select(TeamMember).where(TeamMember.team_id == team_id).where(TeamMember.email == email)
    ).first()


def _team_for(session: Session, team_id: str, email: str, roles=None) -> Team:
    team = session.get(Team, team_id)
    m = _membership(session, team_id, email) if team else None
    if not team or not m or m.status != "active":
        raise HTTPException(status_code=404, detail="Team not found")
    if roles and m.role not in roles:
        raise HTTPException(status_code=403, detail="Not allowed for your role")
    return team


def _members(session: Session, team_id: str) -> List[TeamMember]:
    return list(session.exec(select(TeamMember).where(TeamMember.team_id == team_id)).all())


def _team_out(session: Session, team: Team) -> dict:
    out = dump(team)
    out["members"] = [dump(m) for m in _members(session, team.id)]
    return out


# ------------------------------ routes --------------------------------


@router.get("")
def my_teams(email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    memberships = session.exec(select(TeamMember).where(TeamMember.email == email)).all()
    teams, invites = [], []
    for m in memberships:
        team = session.get(Team, m.team_id)
        if not team:
            continue
        if m.status == "active":
            teams.append({**_team_out(session, team), "my_role": m.role})
        else:
            invites.append({"team_id": team.id, "name": team.name, "invited_by": m.invited_by,
                            "invited_at": as_utc(m.invited_at).isoformat()})
    return {"teams": teams, "invitations": invites}


@router.post("", status_code=201)
def create_team(payload: TeamIn, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    team = Team(name=payload.name.strip(), description=payload.description, owner_email=email)
    session.add(team)
    session.add(TeamMember(team_id=team.id, email=email, role="owner", status="active", joined_at=utcnow()))
    session.commit()
    session.refresh(team)
    return _team_out(session, team)


@router.patch("/{team_id}")
def update_team(
    team_id: str,
    payload: TeamPatch,
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    team = _team_for(session, team_id, email, roles=MANAGERS)
    for k, v in payload.model_dump(exclude_unset=True).items():
        setattr(team, k, v)
    team.updated_at = utcnow()
    session.add(team)
    session.commit()
    session.refresh(team)
    return _team_out(session, team)


@router.delete("/{team_id}")
def delete_team(team_id: str, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    team = _team_for(session, team_id, email, roles=("owner",))
    for m in _members(session, team_id):
        session.delete(m)
    # team tasks go back to being personal tasks of their creators
    for t in session.exec(select(Task).where(Task.team_id == team_id)).all():
        t.team_id = None
        session.add(t)
    session.delete(team)
    session.commit()
    log.info("Team %s deleted by %s", team_id, email)
    return {"ok": True}


@router.post("/{team_id}/members", status_code=201)
def invite_member(
    team_id: str,
    payload: InviteIn,
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    team = _team_for(session, team_id, email, roles=MANAGERS)
    invitee = payload.email.strip().lower()
    if _membership(session, team_id, invitee):
        raise HTTPException(status_code=400, detail="Already a member or invited")

    m = TeamMember(team_id=team_id, email=invitee, role=payload.role, status="invited", invited_by=email)
    session.add(m)
    session.commit()
    session.refresh(m)

    prefs = session.get(EmailPreferences, invitee)
    email_sent = False
    if prefs is None or prefs.team_invitations:
        email_sent = send_team_invitation(invitee, team.name, email, team.id)
    return {"member": dump(m), "email_sent": email_sent}


@router.post("/{team_id}/accept")
def accept_invitation(team_id: str, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    m = _membership(session, team_id, email)
    if not m or not session.get(Team, team_id):
        raise HTTPException(status_code=404, detail="Invitation not found")
    if m.status != "active":
        m.status = "active"
        m.joined_at = utcnow()
        session.add(m)
        session.commit()
    return {"ok": True, "team_id": team_id, "role": m.role}


@router.delete("/{team_id}/members/{member_email}")
def remove_member(
    team_id: str,
    member_email: str,
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    target = member_email.strip().lower()
    # members may always leave; managers may remove others
    team = _team_for(session, team_id, email, roles=None if target == email else MANAGERS)
    if target == team.owner_email:
        raise HTTPException(status_code=400, detail="The owner cannot be removed")
    m = _membership(session, team_id, target)
    if not m:
        raise HTTPException(status_code=404, detail="Member not found")
    session.delete(m)
    session.commit()
    return {"ok": True}


@router.get("/{team_id}/tasks")
def team_tasks(team_id: str, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    _team_for(session, team_id, email)
    rows = session.exec(
        select(Task)
        .where(Task.team_id == team_id)
        .where(Task.deleted_at == None)  # noqa: E711
        .order_by(Task.created_at.desc())
    ).all()
    return {"count": len(rows), "items": [dump(t) for t in rows]}


@router.post("/{team_id}/tasks", status_code=201)
def create_team_task(
    team_id: str,
    payload: TaskIn,
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    _team_for(session, team_id, email, roles=WRITE_ROLES)
    if payload.assignee_email and not _membership(session, team_id, payload.assignee_email.lower()):
        raise HTTPException(status_code=400, detail="Assignee is not a team member")

    fields = payload.model_dump(exclude={"title", "parent_id"})
    for k in ("reminder_at", "recurrence_end", "scheduled_at", "scheduled_end_at"):
        fields[k] = as_utc(fields[k])
    task = Task(user_email=email, title=payload.title.strip(), team_id=team_id, **fields)
    session.add(task)
    session.commit()
    session.refresh(task)
    push_remote(session, task)
    session.refresh(task)

    assignee = (task.assignee_email or "").lower()
    if assignee and assignee != email:
        send_share_notification(assignee, email, task.title, "task", f"/task/{task.id}")
    return dump(task)
