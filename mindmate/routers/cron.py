# mindmate/routers/cron.py
from fastapi import APIRouter, Depends
from sqlmodel import Session

from mindmate.db import get_session
from mindmate.deps import require_cron_secret
from mindmate.services import notifications

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/notifications/check")
def run_check(session: Session = Depends(get_session)):
    """One pass: push (overdue / reminders / milestones), email digests, interval sync."""
    return {"success": True, "results": notifications.execute_notification_check(session)}


@router.post("/notifications/loop/start")
def loop_start():
    started = notifications.loop.start()
    return {
        "success": True,
        "message": "Loop started" if started else "Loop already running",
        "status": notifications.loop.status(),
    }


@router.post("/notifications/loop/stop")
def loop_stop():
    was_running = notifications.loop.stop()
    return {"success": True, "message": "Loop stopping" if was_running else "Loop was not running"}


@router.get("/notifications/loop/status")
def loop_status():
    return notifications.loop.status()
