# tests/test_routes_auth.py

from mindmate import main
from mindmate.models import EmailPreferences, NotificationPreferences
from mindmate.routers import auth as auth_router

from conftest import USER, signup


def test_signup_creates_user_with_default_preferences(client, session):
    r = client.post("/auth/signup", json={
        "email": "Ada@Example.com", "password": "correct-horse", "first_name": "Ada", "phone": "(415) 555-2671",
    })
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["email"] == USER
    assert body["token_type"] == "bearer"

    assert session.get(NotificationPreferences, USER) is not None
    assert session.get(EmailPreferences, USER) is not None


def test_duplicate_signup_is_rejected(client):
    signup(client)
    r = client.post("/auth/signup", json={"email": USER, "password": "another-pass"})
    assert r.status_code == 400


def test_short_password_is_rejected(client):
    r = client.post("/auth/signup", json={"email": USER, "password": "short"})
    assert r.status_code == 422


def test_login_and_me_with_bearer(client):
    signup(client, first_name="Ada")
    r = client.post("/auth/login", json={"email": USER, "password": "correct-horse"})
    assert r.status_code == 200
    token = r.json()["access_token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["first_name"] == "Ada"


def test_me_accepts_session_cookie(client):
    signup(client)
    client.cookies.clear()
    client.post("/auth/login", json={"email": USER, "password": "correct-horse"})

    assert client.get("/auth/me").status_code == 200

    client.post("/auth/logout")
    client.cookies.clear()
    assert client.get("/auth/me").status_code == 401


def test_wrong_password(client):
    signup(client)
    r = client.post("/auth/login", json={"email": USER, "password": "wrong-horse"})
    assert r.status_code == 401


def test_garbage_token(client):
    r = client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_password_reset_flow(client, monkeypatch):
    signup(client)
    captured = {}

    def fake_send(to, token, first_name=""):
        captured["token"] = token
        return True

    monkeypatch.setattr(auth_router, "send_password_reset", fake_send)

    r = client.post("/auth/password-reset/request", json={"email": USER})
    assert r.status_code == 200
    assert "token" in captured

    r = client.post("/auth/password-reset/confirm", json={"token": captured["token"], "new_password": "new-horse-1"})
    assert r.status_code == 200

    # token is single use
    r = client.post("/auth/password-reset/confirm", json={"token": captured["token"], "new_password": "new-horse-2"})
    assert r.status_code == 400

    assert client.post("/auth/login", json={"email": USER, "password": "new-horse-1"}).status_code == 200


def test_password_reset_for_unknown_email_still_ok(client, monkeypatch):
    calls = []
    monkeypatch.setattr(auth_router, "send_password_reset", lambda *a, **k: calls.append(a) or True)

    r = client.post("/auth/password-reset/request", json={"email": "nobody@example.com"})

    assert r.status_code == 200
    assert calls == []


def test_login_is_rate_limited(client):
    signup(client)
    limit = main.RATE_LIMITS["login"]
    codes = [
        client.post("/auth/login", json={"email": USER, "password": "wrong-horse"}).status_code
        for _ in range(limit + 1)
    ]
    assert codes[:limit] == [401] * limit
    assert codes[-1] == 429


def test_rate_counts_from_past_minutes_are_dropped(client):
    main._RATE_COUNTS[("testclient", "login", 0)] = 5
    main._RATE_COUNTS[("10.0.0.9", "signup", 1)] = 3

    client.post("/auth/login", json={"email": USER, "password": "wrong-horse"})

    assert ("testclient", "login", 0) not in main._RATE_COUNTS
    assert ("10.0.0.9", "signup", 1) not in main._RATE_COUNTS
    assert list(main._RATE_COUNTS.values()) == [1]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["push_configured"] is False
