from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlmodel import Session

from mindmate import config
from mindmate.db import get_session
from mindmate.services import notifications, push

router = APIRouter(tags=["health"])


@router.get("/health")
def health(session: Session = Depends(get_session)):
    session.exec(text("SELECT 1"))
    return {
        "ok": True,
        "env": config.settings.ENV,
        "push_configured": push.is_configured(),
        "notification_loop": notifications.loop.is_running,
    }
