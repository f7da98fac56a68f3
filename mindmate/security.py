# mindmate/security.py
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from fastapi import HTTPException, status
from jose import JWTError, jwt

from mindmate import config

ALGORITHM = "HS256"
PBKDF2_ROUNDS = 200_000


# ----------------- passwords -----------------


def hash_password(password: str, salt: Optional[str] = None) -> str:
    """
    Returns "pbkdf2$<rounds>$<salt>$<hexdigest>".
    """
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ROUNDS)
    return f"pbkdf2${PBKDF2_ROUNDS}${salt}${digest.hex()}"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    try:
        _, rounds, salt, expected = hashed_password.split("$", 3)
        digest = hashlib.pbkdf2_hmac(
            "sha256", plain_password.encode("utf-8"), salt.encode("utf-8"), int(rounds)
        )
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), expected)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ----------------- JWT -----------------


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    minutes = config.settings.ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.settings.JWT_SECRET, algorithm=ALGORITHM)


def parse_token(token: str) -> Dict[str, Any]:
    """
    Decodes a JWT and returns the payload dict or raises HTTPException(401).
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
    )
    try:
        payload = jwt.decode(token, config.settings.JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception
    if not isinstance(payload, dict) or not payload.get("sub"):
        raise credentials_exception
    return payload
