# mindmate/routers/notifications.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select

from mindmate import config
from mindmate.db import get_session
from mindmate.deps import get_current_user_email
from mindmate.models import Notification, NotificationPreferences, PushSubscription
from mindmate.schemas import NotificationPrefsIn, SubscriptionIn, dump
from mindmate.services import push
from mindmate.services.notifications import create_notification, deliver
from mindmate.utils.dates import utcnow

log = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


def get_prefs(session: Session, email: str) -> NotificationPreferences:
    prefs = session.get(NotificationPreferences, email)
    if prefs is None:
        prefs = NotificationPreferences(user_email=email)
        session.add(prefs)
        session.commit()
        session.refresh(prefs)
    return prefs


def _own(session: Session, email: str, notification_id: str) -> Notification:
    n = session.get(Notification, notification_id)
    if not n or n.user_email != email:
        raise HTTPException(status_code=404, detail="Notification not found")
    return n


# ---------- preferences ----------


@router.get("/preferences")
def read_preferences(email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    return dump(get_prefs(session, email))


@router.put("/preferences")
def write_preferences(
    payload: NotificationPrefsIn,
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    prefs = get_prefs(session, email)
    for k, v in payload.model_dump(exclude_unset=True).items():
        if v is not None:
            setattr(prefs, k, v)
    prefs.updated_at = utcnow()
    session.add(prefs)
    session.commit()
    session.refresh(prefs)
    return dump(prefs)


# ---------- history ----------


@router.get("")
def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    q = select(Notification).where(Notification.user_email == email)
    if unread_only:
        q = q.where(Notification.is_read == False)  # noqa: E712
    rows = session.exec(q.order_by(Notification.created_at.desc()).limit(limit)).all()
    unread = len(session.exec(
        select(Notification.id).where(Notification.user_email == email).where(Notification.is_read == False)  # noqa: E712
    ).all())
    return {"count": len(rows), "unread": unread, "items": [dump(n) for n in rows]}


@router.post("/read-all")
def mark_all_read(email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    rows = session.exec(
        select(Notification).where(Notification.user_email == email).where(Notification.is_read == False)  # noqa: E712
    ).all()
    for n in rows:
        n.is_read = True
        session.add(n)
    session.commit()
    return {"ok": True, "updated": len(rows)}


@router.post("/{notification_id}/read")
def mark_read(notification_id: str, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    n = _own(session, email, notification_id)
    n.is_read = True
    session.add(n)
    session.commit()
    return {"ok": True}


@router.delete("/{notification_id}")
def dismiss(notification_id: str, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    session.delete(_own(session, email, notification_id))
    session.commit()
    return {"ok": True}


# ---------- devices ----------


@router.get("/vapid-public-key")
def vapid_public_key():
    if not push.is_configured():
        raise HTTPException(status_code=503, detail="Push notifications are not configured")
    return {"public_key": config.settings.VAPID_PUBLIC_KEY}


@router.post("/subscribe", status_code=201)
def subscribe(payload: SubscriptionIn, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    sub = session.exec(select(PushSubscription).where(PushSubscription.endpoint == payload.endpoint)).first()
    if sub is None:
        sub = PushSubscription(user_email=email, endpoint=payload.endpoint, p256dh=payload.keys.p256dh, auth=payload.keys.auth)
    # an endpoint belongs to one browser; re-subscribing moves it to the current user
    sub.user_email = email
    sub.p256dh = payload.keys.p256dh
    sub.auth = payload.keys.auth
    sub.user_agent = payload.user_agent
    sub.device_type = payload.device_type
    sub.is_active = True
    session.add(sub)

    prefs = get_prefs(session, email)
    prefs.enabled = True
    session.add(prefs)
    session.commit()
    session.refresh(sub)
    log.info("Push subscription saved for %s (%s)", email, sub.device_type or "unknown")
    return {"ok": True, "id": sub.id}


@router.post("/unsubscribe")
def unsubscribe(payload: dict, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    """Body: { endpoint } or { id }."""
    q = select(PushSubscription).where(PushSubscription.user_email == email)
    if payload.get("id"):
        q = q.where(PushSubscription.id == payload["id"])
    elif payload.get("endpoint"):
        q = q.where(PushSubscription.endpoint == payload["endpoint"])
    else:
        raise HTTPException(status_code=422, detail="endpoint or id is required")
    sub = session.exec(q).first()
    if not sub:
        raise HTTPException(status_code=404, detail="Subscription not found")
    sub.is_active = False
    session.add(sub)
    session.commit()
    return {"ok": True}


@router.get("/devices")
def devices(email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    rows = session.exec(
        select(PushSubscription)
        .where(PushSubscription.user_email == email)
        .where(PushSubscription.is_active == True)  # noqa: E712
    ).all()
    return {"count": len(rows), "items": [dump(s, exclude=("p256dh", "auth")) for s in rows]}


@router.post("/test")
def send_test(email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    if not push.is_configured():
        raise HTTPException(status_code=503, detail="Push notifications are not configured")
    if not push.active_subscriptions(session, email):
        raise HTTPException(status_code=400, detail="No active devices")

    title, body = "Test Notification", f"Push notifications from {config.APP_NAME} are working."
    n = create_notification(session, email, title, body, "system", data={"test": True})
    sent = deliver(session, n, push.build_payload(title, body, tag="test"), sender=push.send_push)
    return {"ok": sent > 0, "sent": sent, "notification_id": n.id}
