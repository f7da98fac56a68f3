# tests/conftest.py

from __future__ import annotations

import os

# must be set before mindmate.config is imported
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["EMAIL_DRY_RUN"] = "1"
os.environ["TZ"] = "UTC"
os.environ["CRON_SECRET"] = ""
os.environ["VAPID_PUBLIC_KEY"] = ""
os.environ["VAPID_PRIVATE_KEY"] = ""

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from mindmate import main
from mindmate.db import get_session
from mindmate.models import NotificationPreferences, PushSubscription, RemoteTaskSettings
from mindmate.routers.google import get_sync_service
from mindmate.services.task_sync import TaskSyncService

from fakes import FakePushSender, FakeRemoteClient

USER = "ada@example.com"


@pytest.fixture()
def engine():
    """
    One in-memory SQLite database per test; StaticPool keeps the single
    connection alive across sessions and threads (TestClient).
    """
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture()
def fake_remote() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest.fixture()
def sync_service(session, fake_remote) -> TaskSyncService:
    return TaskSyncService(session, client_factory=lambda s, st: fake_remote, throttle_seconds=0)


@pytest.fixture()
def connected(session) -> RemoteTaskSettings:
    s = RemoteTaskSettings(user_email=USER, is_connected=True, default_task_list_id="@default")
    session.add(s)
    session.commit()
    session.refresh(s)
    return s


@pytest.fixture()
def push_sender() -> FakePushSender:
    return FakePushSender()


@pytest.fixture()
def push_user(session):
    """USER with notifications enabled and one active device."""
    session.add(NotificationPreferences(user_email=USER, enabled=True))
    session.add(PushSubscription(user_email=USER, endpoint="https://push.example/ada", p256dh="k", auth="a"))
    session.commit()
    return USER


@pytest.fixture()
def client(engine, fake_remote):
    def _session():
        with Session(engine) as s:
            yield s

    def _sync_service(session: Session = Depends(get_session)):
        return TaskSyncService(session, client_factory=lambda s, st: fake_remote, throttle_seconds=0)

    main.app.dependency_overrides[get_session] = _session
    main.app.dependency_overrides[get_sync_service] = _sync_service
    main._RATE_COUNTS.clear()
    # no context manager: startup hooks (real engine, loop autostart) stay off
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def signup(client: TestClient, email: str = USER, password: str = "correct-horse", **extra) -> dict:
    r = client.post("/auth/signup", json={"email": email, "password": password, **extra})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture()
def auth(client) -> dict:
    return signup(client)
