# mindmate/routers/email_prefs.py
from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from mindmate.db import get_session
from mindmate.deps import get_current_user_email
from mindmate.models import EmailPreferences, User
from mindmate.schemas import EmailPrefsIn, dump
from mindmate.services import email as mailer
from mindmate.services.notifications import daily_stats, weekly_stats
from mindmate.utils.dates import user_zone, utcnow

router = APIRouter(prefix="/email", tags=["email"])


def get_email_prefs(session: Session, email: str) -> EmailPreferences:
    prefs = session.get(EmailPreferences, email)
    if prefs is None:
        prefs = EmailPreferences(user_email=email)
        session.add(prefs)
        session.commit()
        session.refresh(prefs)
    return prefs


@router.get("/preferences")
def read_preferences(email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    return dump(get_email_prefs(session, email))


@router.put("/preferences")
def write_preferences(payload: EmailPrefsIn, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    prefs = get_email_prefs(session, email)
    for k, v in payload.model_dump(exclude_unset=True).items():
        if v is not None:
            setattr(prefs, k, v)
    prefs.updated_at = utcnow()
    session.add(prefs)
    session.commit()
    session.refresh(prefs)
    return dump(prefs)


@router.post("/test")
def send_test(payload: dict | None = None, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    """
    Body: { kind?: "plain" | "welcome" | "daily" | "weekly" }  (default "plain")
    Sends to the signed-in user only.
    """
    kind = ((payload or {}).get("kind") or "plain").lower()
    user = session.get(User, email)
    first_name = user.first_name if user else ""
    prefs = get_email_prefs(session, email)
    local = utcnow().astimezone(user_zone(prefs.timezone))

    if kind == "plain":
        ok = mailer.send_email(email, "Test email", "If you can read this, email delivery works.")
    elif kind == "welcome":
        ok = mailer.send_welcome(email, first_name)
    elif kind == "daily":
        ok = mailer.send_daily_digest(email, first_name, daily_stats(session, email, local), prefs.timezone)
    elif kind == "weekly":
        ok = mailer.send_weekly_digest(email, first_name, weekly_stats(session, email, local), prefs.timezone)
    else:
        raise HTTPException(status_code=422, detail="kind must be plain, welcome, daily or weekly")

    if not ok:
        raise HTTPException(status_code=502, detail="Email delivery failed")
    return {"ok": True, "kind": kind}
