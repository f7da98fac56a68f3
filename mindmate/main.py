# mindmate/main.py
import logging
import time
from collections import defaultdict
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mindmate import config
from mindmate.db import create_db_and_tables
from mindmate.logging_config import setup_logging
from mindmate.services import notifications

# Routers
from mindmate.routers.auth import router as auth_router
from mindmate.routers.tasks import router as tasks_router
from mindmate.routers.notes import router as notes_router
from mindmate.routers.teams import router as teams_router
from mindmate.routers.milestones import router as milestones_router
from mindmate.routers.notifications import router as notifications_router
from mindmate.routers.email_prefs import router as email_router
from mindmate.routers.google import router as google_router
from mindmate.routers.cron import router as cron_router
from mindmate.routers.health import router as health_router

setup_logging()
log = logging.getLogger(__name__)

app = FastAPI(title=f"{config.settings.APP_NAME} API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.settings.APP_BASE_URL, *config.settings.CORS_ORIGINS],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Simple per-client rate limiting on auth endpoints ----------
RATE_LIMITS = {"login": 20, "signup": 10, "reset": 5}
_RATE_COUNTS = defaultdict(int)


def _bucket_for_path(path: str) -> Optional[str]:
    if path == "/auth/login":
        return "login"
    if path == "/auth/signup":
        return "signup"
    if path == "/auth/password-reset/request":
        return "reset"
    return None


@app.middleware("http")
async def per_client_rate_limit(request: Request, call_next):
    bucket = _bucket_for_path(request.url.path)
    if not bucket or request.method != "POST":
        return await call_next(request)

    client = request.client.host if request.client else "unknown"
    minute_window = int(time.time() // 60)
    for stale in [k for k in _RATE_COUNTS if k[2] < minute_window]:
        del _RATE_COUNTS[stale]
    key = (client, bucket, minute_window)
    _RATE_COUNTS[key] += 1
    if _RATE_COUNTS[key] > RATE_LIMITS[bucket]:
        log.warning("Rate limit hit: %s on %s", client, bucket)
        return JSONResponse({"detail": "Too many requests, try again in a minute"}, status_code=429)
    return await call_next(request)


@app.get("/")
def root():
    return {"ok": True, "msg": f"{config.settings.APP_NAME} API"}


# ---------- Routers ----------
app.include_router(health_router)
app.include_router(auth_router)
app.include_router(tasks_router)
app.include_router(notes_router)
app.include_router(teams_router)
app.include_router(milestones_router)
app.include_router(notifications_router)
app.include_router(email_router)
app.include_router(google_router)
app.include_router(cron_router)


# ---------- Startup / shutdown ----------
@app.on_event("startup")
def on_startup():
    create_db_and_tables()
    if config.settings.NOTIFICATION_LOOP_AUTOSTART:
        notifications.loop.start()


@app.on_event("shutdown")
def on_shutdown():
    notifications.loop.stop()
