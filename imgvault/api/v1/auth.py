"""
Shared-password JWT authentication.

Tokens are HS256 JWTs whose subject is the user id. Backup and restore
handlers use that id as the channel for progress notifications.
"""
import base64
import hashlib
import hmac
import json
import os
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

router = APIRouter(prefix="/auth", tags=["auth"])

DEFAULT_SUBJECT = "admin"


# ── Minimal JWT (HS256) ────────────────────────────────────

def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s)


def _get_secret() -> str:
    return os.environ.get("JWT_SECRET", "change-me-in-production")


def _sign(signing_input: str) -> str:
    return _b64url_encode(hmac.new(
        _get_secret().encode(), signing_input.encode(), hashlib.sha256
    ).digest())


def create_token(subject: str = DEFAULT_SUBJECT, expires_hours: int = 720) -> str:
    """Issue a token for subject, valid for 30 days by default."""
    header = _b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
    payload = _b64url_encode(json.dumps({
        "sub": subject,
        "exp": int(time.time()) + expires_hours * 3600,
    }).encode())
    return f"{header}.{payload}.{_sign(f'{header}.{payload}')}"


def verify_token(token: str) -> dict:
    """Check signature and expiry, return the claims."""
    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("Invalid token format")
    header, payload, sig = parts
    if not hmac.compare_digest(sig, _sign(f"{header}.{payload}")):
        raise ValueError("Invalid signature")
    data = json.loads(_b64url_decode(payload))
    if data.get("exp", 0) < time.time():
        raise ValueError("Token expired")
    return data


# ── FastAPI dependencies ────────────────────────────────────

security = HTTPBearer(auto_error=False)


async def current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """Subject of the bearer token, or None when no valid token was sent.

    Access control itself is enforced by the AuthMiddleware in main.py.
    """
    if not credentials:
        return None
    try:
        return verify_token(credentials.credentials).get("sub")
    except ValueError:
        return None


# ── Routes ─────────────────────────────────────────────────

class LoginRequest(BaseModel):
    password: str


class TokenResponse(BaseModel):
    token: str


@router.post("/login", response_model=TokenResponse)
async def login(req: LoginRequest):
    expected = os.environ.get("AUTH_PASSWORD", "")
    if not expected:
        raise HTTPException(500, "AUTH_PASSWORD not configured")
    if not hmac.compare_digest(req.password, expected):
        raise HTTPException(401, "Invalid password")
    return TokenResponse(token=create_token())


@router.get("/verify")
async def verify(credentials: HTTPAuthorizationCredentials = Depends(security)):
    if not credentials:
        raise HTTPException(401, "No token provided")
    try:
        claims = verify_token(credentials.credentials)
        return {"valid": True, "sub": claims.get("sub")}
    except ValueError:
        raise HTTPException(401, "Invalid or expired token")
