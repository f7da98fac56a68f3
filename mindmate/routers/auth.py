# mindmate/routers/auth.py
import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, EmailStr, Field
from sqlmodel import Session, select

from mindmate import config
from mindmate.db import get_session
from mindmate.deps import get_current_user_email
from mindmate.models import EmailPreferences, NotificationPreferences, User
from mindmate.security import create_access_token, hash_password, hash_token, verify_password
from mindmate.services.email import send_password_reset, send_welcome
from mindmate.utils.dates import as_utc, utcnow
from mindmate.utils.phone import normalize_phone

log = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ----------------- Pydantic models -----------------


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    email: EmailStr


class MeResponse(BaseModel):
    email: EmailStr
    first_name: str
    last_name: str
    phone: Optional[str] = None


class ResetRequest(BaseModel):
    email: EmailStr


class ResetConfirm(BaseModel):
    token: str
    new_password: str = Field(min_length=8)


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=config.settings.SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=config.settings.ENV != "dev",
        samesite="lax",
        max_age=config.settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


# ----------------- Signup / login -----------------


@router.post("/signup", response_model=TokenResponse)
def signup(payload: SignupRequest, response: Response, session: Session = Depends(get_session)):
    email = payload.email.strip().lower()
    if session.get(User, email):
        raise HTTPException(status_code=400, detail="Email already registered")

    user = User(
        email=email,
        first_name=payload.first_name.strip(),
        last_name=payload.last_name.strip(),
        phone=normalize_phone(payload.phone),
        password_hash=hash_password(payload.password),
    )
    session.add(user)
    # default preference rows so the notification loop sees the user
    session.add(NotificationPreferences(user_email=email))
    session.add(EmailPreferences(user_email=email))
    session.commit()
    log.info("New signup: %s", email)

    try:
        send_welcome(email, user.first_name)
    except Exception:
        log.exception("Welcome email failed for %s", email)

    token = create_access_token({"sub": email})
    _set_session_cookie(response, token)
    return TokenResponse(access_token=token, email=email)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, response: Response, session: Session = Depends(get_session)):
    email = payload.email.strip().lower()
    user = session.get(User, email)
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    token = create_access_token({"sub": email})
    _set_session_cookie(response, token)
    return TokenResponse(access_token=token, email=email)


@router.post("/logout")
def logout(response: Response):
    response.delete_cookie(config.settings.SESSION_COOKIE_NAME)
    return {"ok": True}


@router.get("/me", response_model=MeResponse)
def me(email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    user = session.get(User, email)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return MeResponse(email=user.email, first_name=user.first_name, last_name=user.last_name, phone=user.phone)


# ----------------- Password reset -----------------


@router.post("/password-reset/request")
def password_reset_request(payload: ResetRequest, session: Session = Depends(get_session)):
    """
    Always answers ok so the endpoint can't be used to discover accounts.
    """
    email = payload.email.strip().lower()
    user = session.get(User, email)
    if user:
        token = secrets.token_urlsafe(32)
        user.reset_token_hash = hash_token(token)
        user.reset_token_expires_at = utcnow() + timedelta(minutes=config.settings.PASSWORD_RESET_MINUTES)
        session.add(user)
        session.commit()
        if not send_password_reset(email, token, user.first_name):
            log.error("Password reset email failed for %s", email)
    return {"ok": True}


@router.post("/password-reset/confirm")
def password_reset_confirm(payload: ResetConfirm, session: Session = Depends(get_session)):
    user = session.exec(select(User).where(User.reset_token_hash == hash_token(payload.token))).first()
    expires = as_utc(user.reset_token_expires_at) if user else None
    if not user or not expires or expires < utcnow():
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")

    user.password_hash = hash_password(payload.new_password)
    user.reset_token_hash = None
    user.reset_token_expires_at = None
    session.add(user)
    session.commit()
    log.info("Password reset for %s", user.email)
    return {"ok": True}
