import logging
import os
import re
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Set, Tuple
from uuid import uuid4

from passlib.context import CryptContext

from autocare.auth import create_access_token, epoch_millis, verify_access_token
from autocare.models import Account
from autocare.services.database import Database, database, utc_now_iso
from autocare.services.errors import (
    AuthenticationError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from autocare.services.events import SESSION_CHANGED, ChangeEvent, Subscription, SubscriptionManager, subscription_manager

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8
CONFIRMATION_TTL_HOURS = 48
RESET_TTL_MINUTES = 30
SIGNUP_ROLES = {"customer", "provider"}


def _read_admin_emails() -> Set[str]:
    raw = os.getenv("ADMIN_EMAILS", "")
    return {email.strip().lower() for email in raw.split(",") if email.strip()}


def _read_confirmation_flag() -> bool:
    return os.getenv("REQUIRE_EMAIL_CONFIRMATION", "false").lower() in {"1", "true", "yes"}


class IdentityService:
    """Accounts, bearer sessions and password resets backed by the marketplace store."""

    def __init__(
        self,
        db: Database,
        events: SubscriptionManager,
        admin_emails: Optional[Set[str]] = None,
        require_confirmation: bool = False,
    ) -> None:
        self.db = db
        self.events = events
        self.admin_emails = {email.lower() for email in (admin_emails or set())}
        self.require_confirmation = require_confirmation

    def _row_to_account(self, row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            full_name=row["full_name"],
            phone=row["phone"] or "",
            role=row["role"],
            email_confirmed=bool(row["email_confirmed"]),
            created_at=row["created_at"],
        )

    def _validate_password(self, password: str) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise MarketplaceValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    def _publish_session(self, user_id: str, role: str, state: str) -> None:
        self.events.publish(
            SESSION_CHANGED,
            "sessions",
            user_id,
            {"user_id": user_id, "role": role, "state": state},
        )

    def _issue_one_time_token(self, tx, user_id: str, purpose: str, ttl: timedelta) -> str:
        token = secrets.token_urlsafe(24)
        expires_at = (datetime.now(timezone.utc) + ttl).isoformat()
        tx.execute(
            "INSERT INTO auth_tokens (token, user_id, purpose, expires_at) VALUES (?, ?, ?, ?)",
            (token, user_id, purpose, expires_at),
        )
        return token

    def _consume_one_time_token(self, tx, token: str, purpose: str) -> str:
        row = tx.execute(
            "SELECT user_id, expires_at, used_at FROM auth_tokens WHERE token = ? AND purpose = ?",
            (token.strip(), purpose),
        ).fetchone()
        if not row or row["used_at"]:
            raise MarketplaceValidationError("Token is invalid or already used")
        if datetime.fromisoformat(row["expires_at"]) < datetime.now(timezone.utc):
            raise MarketplaceValidationError("Token has expired")
        tx.execute("UPDATE auth_tokens SET used_at = ? WHERE token = ?", (utc_now_iso(), token.strip()))
        return str(row["user_id"])

    def sign_up(
        self,
        email: str,
        password: str,
        full_name: str,
        phone: str = "",
        role: str = "customer",
    ) -> Tuple[Account, Optional[str], Optional[str], Optional[str]]:
        """Create an account.

        Returns ``(account, access_token, expires_at, confirmation_token)``; exactly one
        of the access token and the confirmation token is set.
        """
        cleaned_email = email.strip().lower()
        if not EMAIL_PATTERN.match(cleaned_email):
            raise MarketplaceValidationError("A valid email is required")
        if not full_name.strip():
            raise MarketplaceValidationError("Full name is required")
        if role not in SIGNUP_ROLES:
            raise MarketplaceValidationError("Role must be customer or provider")
        self._validate_password(password)
        effective_role = "admin" if cleaned_email in self.admin_emails else role

        user_id = f"usr_{uuid4().hex[:10]}"
        confirmation_token: Optional[str] = None
        with self.db.transaction() as tx:
            if tx.execute("SELECT 1 FROM accounts WHERE email = ?", (cleaned_email,)).fetchone():
                raise MarketplaceValidationError("An account with this email already exists")
            tx.execute(
                """
                INSERT INTO accounts (id, email, password_hash, full_name, phone, role, email_confirmed, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    cleaned_email,
                    pwd_context.hash(password),
                    full_name.strip(),
                    phone.strip(),
                    effective_role,
                    0 if self.require_confirmation else 1,
                    utc_now_iso(),
                ),
            )
            if self.require_confirmation:
                confirmation_token = self._issue_one_time_token(
                    tx, user_id, "confirm", timedelta(hours=CONFIRMATION_TTL_HOURS)
                )
            account = self._row_to_account(tx.execute("SELECT * FROM accounts WHERE id = ?", (user_id,)).fetchone())
        logger.info("Account %s signed up as %s", user_id, effective_role)
        if confirmation_token:
            logger.info("Confirmation token issued for %s", user_id)
            return account, None, None, confirmation_token
        token, expires_at = create_access_token(user_id, effective_role)
        self._publish_session(user_id, effective_role, "signed_in")
        return account, token, expires_at, None

    def confirm_email(self, token: str) -> Account:
        with self.db.transaction() as tx:
            user_id = self._consume_one_time_token(tx, token, "confirm")
            tx.execute("UPDATE accounts SET email_confirmed = 1 WHERE id = ?", (user_id,))
            account = self._row_to_account(tx.execute("SELECT * FROM accounts WHERE id = ?", (user_id,)).fetchone())
        logger.info("Account %s confirmed", user_id)
        return account

    def sign_in(self, email: str, password: str) -> Tuple[Account, str, str]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE email = ?", (email.strip().lower(),)).fetchone()
        if not row or not pwd_context.verify(password, row["password_hash"]):
            raise AuthenticationError("Invalid credentials")
        account = self._row_to_account(row)
        if not account.email_confirmed:
            raise MarketplacePermissionError("Email address is not confirmed yet")
        token, expires_at = create_access_token(account.id, account.role)
        self._publish_session(account.id, account.role, "signed_in")
        logger.info("Account %s signed in", account.id)
        return account, token, expires_at

    def sign_out(self, token: str) -> None:
        claims = verify_access_token(token)
        if not claims:
            raise AuthenticationError("Invalid or expired token")
        user_id, role = claims
        with self.db.transaction() as tx:
            tx.execute(
                "INSERT OR IGNORE INTO revoked_tokens (token, user_id, revoked_at) VALUES (?, ?, ?)",
                (token, user_id, utc_now_iso()),
            )
            tx.on_commit(lambda: self._publish_session(user_id, role, "signed_out"))
        logger.info("Account %s signed out", user_id)

    def request_password_reset(self, email: str) -> Optional[str]:
        """Always succeeds so callers can't probe which emails exist; returns the token for known emails."""
        with self.db.transaction() as tx:
            row = tx.execute("SELECT id FROM accounts WHERE email = ?", (email.strip().lower(),)).fetchone()
            if not row:
                logger.info("Password reset requested for unknown email")
                return
            token = self._issue_one_time_token(tx, str(row["id"]), "reset", timedelta(minutes=RESET_TTL_MINUTES))
        # Delivery is handled out of band by the mail integration.
        logger.info("Password reset token issued for %s", row["id"])
        return token

    def confirm_password_reset(self, token: str, new_password: str) -> Account:
        """Set a new password and end every session issued before it."""
        self._validate_password(new_password)
        password_hash = pwd_context.hash(new_password)
        with self.db.transaction() as tx:
            user_id = self._consume_one_time_token(tx, token, "reset")
            tx.execute(
                "UPDATE accounts SET password_hash = ?, sessions_valid_after = ? WHERE id = ?",
                (password_hash, epoch_millis(), user_id),
            )
            account = self._row_to_account(tx.execute("SELECT * FROM accounts WHERE id = ?", (user_id,)).fetchone())
            tx.on_commit(lambda: self._publish_session(account.id, account.role, "signed_out"))
        logger.info("Password reset for %s", user_id)
        return account

    def get_account(self, user_id: str) -> Account:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Account not found")
        return self._row_to_account(row)

    def on_session_change(
        self, callback: Callable[[ChangeEvent], None], user_id: Optional[str] = None
    ) -> Subscription:
        if user_id is None:
            return self.events.subscribe("sessions", callback)
        return self.events.subscribe("sessions", callback, column="user_id", value=user_id)


identity_service = IdentityService(
    database,
    events=subscription_manager,
    admin_emails=_read_admin_emails(),
    require_confirmation=_read_confirmation_flag(),
)
