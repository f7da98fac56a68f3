# mindmate/routers/milestones.py
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select

from mindmate.db import get_session
from mindmate.deps import get_current_user_email
from mindmate.models import Milestone, NotificationPreferences
from mindmate.schemas import MilestoneIn, MilestonePatch, dump
from mindmate.services import milestones as ms
from mindmate.utils.dates import as_utc, user_zone, utcnow

router = APIRouter(prefix="/milestones", tags=["milestones"])


def _tz_for(session: Session, email: str):
    prefs = session.get(NotificationPreferences, email)
    return prefs.timezone if prefs else None


def _out(m: Milestone, tz_name) -> dict:
    today = utcnow().astimezone(user_zone(tz_name)).date()
    return {**dump(m), **ms.describe(m, today, tz_name)}


def _milestone_or_404(session: Session, email: str, milestone_id: str) -> Milestone:
    m = session.get(Milestone, milestone_id)
    if not m or m.user_email != email:
        raise HTTPException(status_code=404, detail="Milestone not found")
    return m


@router.get("")
def list_milestones(
    include_inactive: bool = Query(False),
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    q = select(Milestone).where(Milestone.user_email == email)
    if not include_inactive:
        q = q.where(Milestone.is_active == True)  # noqa: E712
    tz_name = _tz_for(session, email)
    items = [_out(m, tz_name) for m in session.exec(q).all()]
    # soonest first, past one-offs last
    items.sort(key=lambda i: (i["days_until"] is None, i["days_until"] or 0))
    return {"count": len(items), "items": items}


@router.post("", status_code=201)
def create_milestone(payload: MilestoneIn, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    fields = payload.model_dump()
    fields["original_date"] = as_utc(fields["original_date"])
    m = Milestone(user_email=email, **fields)
    session.add(m)
    session.commit()
    session.refresh(m)
    return _out(m, _tz_for(session, email))


@router.patch("/{milestone_id}")
def update_milestone(
    milestone_id: str,
    payload: MilestonePatch,
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    m = _milestone_or_404(session, email, milestone_id)
    fields = payload.model_dump(exclude_unset=True)
    if fields.get("original_date") is not None:
        fields["original_date"] = as_utc(fields["original_date"])
    for k, v in fields.items():
        if v is not None:
            setattr(m, k, v)
    m.updated_at = utcnow()
    session.add(m)
    session.commit()
    session.refresh(m)
    return _out(m, _tz_for(session, email))


@router.delete("/{milestone_id}")
def delete_milestone(milestone_id: str, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    m = _milestone_or_404(session, email, milestone_id)
    session.delete(m)
    session.commit()
    return {"ok": True}
