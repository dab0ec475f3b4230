import base64
import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from fastapi import Depends, Header, HTTPException, status

from autocare.services.database import database

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_HOURS = 24
ROLES = {"customer", "provider", "admin"}


def _read_token_ttl(default: int = DEFAULT_TOKEN_TTL_HOURS) -> int:
    raw = os.getenv("AUTH_TOKEN_TTL_HOURS", str(default))
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid AUTH_TOKEN_TTL_HOURS=%r", raw)
        return default
    return value if value > 0 else default


TOKEN_TTL_HOURS = _read_token_ttl()
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "false").lower() in {"1", "true", "yes"}
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def epoch_millis(moment: Optional[datetime] = None) -> int:
    return int((moment or datetime.now(timezone.utc)).timestamp() * 1000)


def create_access_token(user_id: str, role: str) -> tuple[str, str]:
    issued_at = datetime.now(timezone.utc)
    expiry = issued_at + timedelta(hours=TOKEN_TTL_HOURS)
    # The nonce keeps two sign-ins in the same second from sharing a token, so one logout can't revoke both.
    payload = f"{user_id}|{role}|{epoch_millis(issued_at)}|{int(expiry.timestamp())}|{uuid4().hex[:8]}".encode(
        "utf-8"
    )
    payload_part = _b64url(payload)
    sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    token = f"{payload_part}.{_b64url(sig)}"
    return token, expiry.isoformat()


def _decode_claims(token: str) -> Optional[tuple[str, str, int]]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        expected_sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
        if not hmac.compare_digest(sent_sig, expected_sig):
            return None
        user_id, role, issued_ms, expiry_ts, _nonce = payload.decode("utf-8").split("|", 4)
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
        if role not in ROLES:
            return None
        return user_id, role, int(issued_ms)
    except (ValueError, UnicodeDecodeError):
        return None


def verify_access_token(token: str) -> Optional[tuple[str, str]]:
    """Return ``(user_id, role)`` for a well-signed, unexpired token."""
    claims = _decode_claims(token)
    if not claims:
        return None
    return claims[0], claims[1]


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def is_token_revoked(token: str, user_id: str, issued_ms: int) -> bool:
    """A token dies on sign-out, or when its account resets sessions after it was issued."""
    with database.read() as conn:
        if conn.execute("SELECT 1 FROM revoked_tokens WHERE token = ?", (token,)).fetchone():
            return True
        row = conn.execute("SELECT sessions_valid_after FROM accounts WHERE id = ?", (user_id,)).fetchone()
    return row is not None and issued_ms <= int(row["sessions_valid_after"] or 0)


@dataclass(frozen=True)
class SessionContext:
    user_id: str
    role: str
    token: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def resolve_session(authorization: Optional[str]) -> Optional[SessionContext]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    claims = _decode_claims(token)
    if not claims:
        return None
    user_id, role, issued_ms = claims
    if is_token_revoked(token, user_id, issued_ms):
        return None
    return SessionContext(user_id=user_id, role=role, token=token)


def optional_session(authorization: Optional[str] = Header(default=None)) -> Optional[SessionContext]:
    session = resolve_session(authorization)
    if session is None and AUTH_REQUIRED:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return session


def require_session(authorization: Optional[str] = Header(default=None)) -> SessionContext:
    session = resolve_session(authorization)
    if not session:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return session


def require_admin(session: SessionContext = Depends(require_session)) -> SessionContext:
    if not session.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return session
