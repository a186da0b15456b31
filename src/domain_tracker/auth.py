"""
Authentication — bcrypt password checks and opaque session tokens.

There is a single privileged account (the configured admin). Logging in
creates a session row holding a 256-bit URL-safe random token that expires
after a fixed TTL; the token travels in the `session` cookie.

Failure codes map straight onto HTTP statuses:
  AUTHENTICATION_ERROR (401)  no credentials, or no valid session
  AUTHORIZATION_ERROR  (403)  wrong credentials, or a non-admin session
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import bcrypt
import structlog

from domain_tracker.domain.models import Session, User
from domain_tracker.domain.ports import AccountRepository
from domain_tracker.railway import ErrorCode
from domain_tracker.railway.result import Result

log = structlog.get_logger()

SESSION_TOKEN_BYTES = 32


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def new_session_token() -> str:
    return secrets.token_urlsafe(SESSION_TOKEN_BYTES)


def ensure_admin(accounts: AccountRepository, username: str, password: str) -> Result[User]:
    """Create the admin account on first start; an existing account is left as is."""
    existing = accounts.find_user(username)
    if existing.is_success():
        return existing
    if existing.error().code is not ErrorCode.NOT_FOUND:
        return existing
    return accounts.create_user(username, hash_password(password)).peek(
        lambda user: log.info("auth.admin_created", username=user.username)
    )


class SessionAuthenticator:
    """Login and per-request session checks for the API."""

    def __init__(
        self,
        accounts: AccountRepository,
        admin_username: str,
        ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._accounts = accounts
        self._admin_username = admin_username
        self._ttl = ttl
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def login(self, username: str, password: str) -> Result[Session]:
        if not username or not password:
            return Result.failure(ErrorCode.AUTHENTICATION_ERROR, "Missing credentials")

        user = self._accounts.find_user(username)
        if user.is_failure():
            if user.error().code is ErrorCode.NOT_FOUND:
                log.warning("auth.login_rejected", reason="unknown user")
                return Result.failure(ErrorCode.AUTHORIZATION_ERROR, "Invalid username or password")
            return Result.failure_from(user.error())

        if not verify_password(password, user.value().password_hash):
            log.warning("auth.login_rejected", reason="bad password", username=username)
            return Result.failure(ErrorCode.AUTHORIZATION_ERROR, "Invalid username or password")

        expires = self._clock() + self._ttl
        return self._accounts.create_session(user.value().id, new_session_token(), expires).peek(
            lambda _: log.info("auth.login", username=username)
        )

    def authorize(self, token: str | None) -> Result[User]:
        """The admin user behind `token`, or a 401/403 failure."""
        if not token:
            return Result.failure(ErrorCode.AUTHENTICATION_ERROR, "Unauthorized")

        session = self._accounts.find_session(token)
        if session.is_failure():
            if session.error().code is ErrorCode.NOT_FOUND:
                return Result.failure(ErrorCode.AUTHENTICATION_ERROR, "Unauthorized")
            return Result.failure_from(session.error())
        if session.value().is_expired(self._clock()):
            return Result.failure(ErrorCode.AUTHENTICATION_ERROR, "Session expired")

        return self._check_admin(session.value().user_id)

    def _check_admin(self, user_id: int) -> Result[User]:
        user = self._accounts.get_user(user_id)
        if user.is_failure():
            if user.error().code is ErrorCode.NOT_FOUND:
                return Result.failure(ErrorCode.AUTHENTICATION_ERROR, "Unauthorized")
            return user
        if user.value().username != self._admin_username:
            return Result.failure(ErrorCode.AUTHORIZATION_ERROR, "Forbidden")
        return user
