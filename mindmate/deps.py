# mindmate/deps.py
import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from mindmate import config
from mindmate.security import parse_token


def _bearer(authorization: Optional[str]) -> str:
    auth = (authorization or "").strip()
    return auth[7:].strip() if auth.lower().startswith("bearer ") else ""


def get_current_user_email(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> str:
    """
    Resolve the signed-in user from:
      1) Authorization: Bearer <jwt>
      2) the session cookie (same JWT, set by /auth/login)
    """
    token = _bearer(authorization) or (request.cookies.get(config.settings.SESSION_COOKIE_NAME) or "").strip()
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = parse_token(token)  # raises 401 if invalid
    email = (payload.get("sub") or "").strip().lower()
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return email


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    expected = (config.settings.CRON_SECRET or "").strip()
    if not expected:
        raise HTTPException(status_code=500, detail="Server misconfigured: CRON_SECRET not set")
    if not hmac.compare_digest(_bearer(authorization), expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
