# mindmate/services/push.py
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

import requests
from pywebpush import WebPushException, webpush
from sqlmodel import Session, select

from mindmate import config
from mindmate.models import PushSubscription

log = logging.getLogger(__name__)

GONE_STATUSES = (404, 410)


class PushNotConfigured(RuntimeError):
    pass


def is_configured() -> bool:
    return bool(config.settings.VAPID_PUBLIC_KEY and config.settings.VAPID_PRIVATE_KEY)


def build_payload(title: str, body: str = "", url: str = "/", tag: Optional[str] = None, **data) -> dict:
    payload = {
        "title": title,
        "body": body or "",
        "icon": "/icons/icon-192x192.png",
        "badge": "/icons/icon-72x72.png",
        "data": {"url": url or "/", **data},
    }
    if tag:
        payload["tag"] = tag
    return payload


def send_push(sub: PushSubscription, payload: dict) -> Tuple[bool, Optional[int]]:
    """
    Deliver one payload to one subscription.
    Returns (ok, status_code); status_code is set on HTTP failures so callers
    can prune 404/410 endpoints.
    """
    if not is_configured():
        raise PushNotConfigured("VAPID keys are not configured")

    subject = config.settings.VAPID_SUBJECT
    if not subject.startswith(("mailto:", "https://")):
        subject = f"mailto:{subject}"

    try:
        webpush(
            subscription_info={"endpoint": sub.endpoint, "keys": {"p256dh": sub.p256dh, "auth": sub.auth}},
            data=json.dumps(payload),
            vapid_private_key=config.settings.VAPID_PRIVATE_KEY,
            vapid_claims={"sub": subject},
            headers={"Urgency": "high"},
        )
        return True, None
    except WebPushException as e:
        status = e.response.status_code if e.response is not None else None
        log.warning("Push to %s failed (HTTP %s): %s", sub.endpoint[:60], status, e)
        return False, status
    except requests.RequestException as e:
        log.warning("Push to %s failed (network): %s", sub.endpoint[:60], e)
        return False, None


def active_subscriptions(session: Session, user_email: str) -> list[PushSubscription]:
    return list(session.exec(
        select(PushSubscription)
        .where(PushSubscription.user_email == user_email)
        .where(PushSubscription.is_active == True)  # noqa: E712
    ).all())


def send_to_user(session: Session, user_email: str, payload: dict, sender=send_push) -> int:
    """Push to every active subscription; deactivates gone endpoints. Returns success count."""
    sent = 0
    for sub in active_subscriptions(session, user_email):
        try:
            ok, status = sender(sub, payload)
        except Exception as e:
            log.warning("Push to subscription %s raised: %s", sub.id, e)
            ok, status = False, None
        if ok:
            sent += 1
            sub.last_used_at = datetime.now(timezone.utc)
        elif status in GONE_STATUSES:
            log.info("Deactivating expired push subscription %s", sub.id)
            sub.is_active = False
        session.add(sub)
    session.commit()
    return sent
