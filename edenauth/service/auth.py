from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from edenauth.config import Settings
from edenauth.logging import get_logger
from edenauth.service.errors import (
    AccountLockedError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidOrExpiredRefreshTokenError,
    UnauthorizedError,
    UserNotFoundError,
)
from edenauth.service.passwords import PasswordHasher
from edenauth.service.tokens import (
    ACCESS_TOKEN_TYPE,
    REFRESH_TOKEN_TYPE,
    TokenService,
)
from edenauth.storage.errors import ConstraintViolation
from edenauth.storage.models import PublicUser, Session, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        is_email_verified: bool = False,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_login_outcome(
        self,
        user_id: str,
        failed_attempts: int,
        *,
        locked_until: Any = ...,
        last_login_at: Any = ...,
    ) -> None: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session_by_refresh_token(
        self, refresh_token: str, *, now: datetime | None = None
    ) -> Optional[Session]: ...

    def delete_session_by_refresh_token(self, refresh_token: str) -> int: ...

    def delete_expired_sessions(self, *, now: datetime | None = None) -> int: ...


@dataclass(frozen=True)
class AuthContext:
    """Identity attached to a request once its access token checks out."""

    user_id: str
    email: str


@dataclass(frozen=True)
class SignInResult:
    user: PublicUser
    access_token: str
    refresh_token: str
    session: Session


@dataclass(frozen=True)
class RefreshResult:
    user: PublicUser
    access_token: str


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Signup, signin with lockout, token refresh, logout and identity lookup.

    Store calls and password hashing run in worker threads so the event loop
    is never blocked by a database round-trip or an Argon2 computation.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        tokens: TokenService,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.hasher = hasher
        self.tokens = tokens
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    @staticmethod
    async def _run(fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    @staticmethod
    def _remaining_minutes(locked_until: datetime, now: datetime) -> int:
        return max(1, math.ceil((locked_until - now).total_seconds() / 60))

    async def sign_up(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
    ) -> PublicUser:
        email = normalize_email(email)
        if await self._run(self.store.get_user_by_email, email):
            self.logger.info("signup_duplicate_email")
            raise DuplicateEmailError()
        password_hash = await self._run(self.hasher.hash, password)
        try:
            user = await self._run(
                self.store.create_user,
                email,
                password_hash,
                first_name.strip(),
                last_name.strip(),
            )
        except ConstraintViolation as exc:
            # lost the race against a concurrent signup for the same address
            if exc.field == "email":
                self.logger.info("signup_duplicate_email", race=True)
                raise DuplicateEmailError() from exc
            raise
        self.logger.info("user_signed_up", user_id=user.id)
        return user.public()

    async def sign_in(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> SignInResult:
        email = normalize_email(email)
        user = await self._run(self.store.get_user_by_email, email)
        if not user:
            # same cost as a real mismatch so response timing reveals nothing
            await self._run(self.hasher.burn, password)
            self.logger.info("signin_failed", reason="invalid_credentials")
            raise InvalidCredentialsError()

        now = self._now()
        if user.is_locked(now):
            self.logger.info("signin_rejected_locked", user_id=user.id)
            raise AccountLockedError(self._remaining_minutes(user.locked_until, now))

        if not await self._run(self.hasher.verify, password, user.password_hash):
            await self._record_failure(user, now)

        if self.hasher.needs_rehash(user.password_hash):
            await self._rehash(user, password)

        await self._run(
            self.store.update_login_outcome,
            user.id,
            0,
            locked_until=None,
            last_login_at=now,
        )
        user = replace(
            user, failed_login_attempts=0, locked_until=None, last_login_at=now
        )

        access_token = self.tokens.issue_access_token(user.id)
        refresh_token = self.tokens.issue_refresh_token()
        session = Session.new(
            user.id,
            refresh_token,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            user_agent=user_agent,
            ip_address=ip_address,
            now=now,
        )
        await self._run(self.store.create_session, session)
        self.logger.info("user_signed_in", user_id=user.id, session_id=session.id)
        return SignInResult(
            user=user.public(),
            access_token=access_token,
            refresh_token=refresh_token,
            session=session,
        )

    async def _rehash(self, user: User, password: str) -> None:
        """Upgrade a hash made with older cost parameters; failure is not fatal."""
        try:
            new_hash = await self._run(self.hasher.hash, password)
            await self._run(self.store.update_password_hash, user.id, new_hash)
        except Exception as exc:
            self.logger.warning(
                "password_rehash_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        self.logger.info("password_rehashed", user_id=user.id)

    async def _record_failure(self, user: User, now: datetime) -> None:
        """Persist a failed attempt and raise the matching error."""
        failed = user.failed_login_attempts + 1
        if failed >= self.settings.max_failed_login_attempts:
            locked_until = now + timedelta(minutes=self.settings.lockout_minutes)
            await self._run(
                self.store.update_login_outcome,
                user.id,
                failed,
                locked_until=locked_until,
            )
            self.logger.warning(
                "account_locked",
                user_id=user.id,
                failed_attempts=failed,
                locked_until=locked_until.isoformat(),
            )
            raise AccountLockedError(self._remaining_minutes(locked_until, now))
        await self._run(self.store.update_login_outcome, user.id, failed)
        self.logger.info(
            "signin_failed",
            reason="invalid_credentials",
            user_id=user.id,
            failed_attempts=failed,
        )
        raise InvalidCredentialsError()

    async def refresh_access_token(self, refresh_token: Optional[str]) -> RefreshResult:
        verification = self.tokens.verify(refresh_token)
        if not verification.valid or verification.type != REFRESH_TOKEN_TYPE:
            raise InvalidOrExpiredRefreshTokenError()
        session = await self._run(
            self.store.get_session_by_refresh_token, refresh_token, now=self._now()
        )
        if not session:
            raise InvalidOrExpiredRefreshTokenError()
        user = await self._run(self.store.get_user, session.user_id)
        if not user:
            await self._run(self.store.delete_session_by_refresh_token, refresh_token)
            self.logger.warning(
                "orphaned_session_removed",
                session_id=session.id,
                user_id=session.user_id,
            )
            raise UserNotFoundError()
        access_token = self.tokens.issue_access_token(user.id)
        self.logger.info("access_token_refreshed", user_id=user.id, session_id=session.id)
        return RefreshResult(user=user.public(), access_token=access_token)

    async def logout(self, refresh_token: Optional[str]) -> None:
        """Delete the session for ``refresh_token``; never raises."""
        if not refresh_token:
            return
        try:
            removed = await self._run(
                self.store.delete_session_by_refresh_token, refresh_token
            )
        except Exception as exc:
            # access tokens expire on their own; the client is logged out regardless
            self.logger.warning(
                "logout_session_delete_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        self.logger.info("user_logged_out", sessions_removed=removed)

    async def get_user_by_id(self, user_id: Optional[str]) -> Optional[PublicUser]:
        if not user_id or not isinstance(user_id, str):
            return None
        user = await self._run(self.store.get_user, user_id)
        return user.public() if user else None

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        """Resolve an access token to the identity it was issued for.

        Raises ``UnauthorizedError`` for anything other than a valid access
        token with a user id, and ``UserNotFoundError`` when that user no
        longer exists. Nothing is written.
        """
        if not access_token:
            raise UnauthorizedError("access token not found")
        verification = self.tokens.verify(access_token)
        if (
            not verification.valid
            or verification.type != ACCESS_TOKEN_TYPE
            or not verification.user_id
        ):
            raise UnauthorizedError()
        user = await self.get_user_by_id(verification.user_id)
        if not user:
            raise UserNotFoundError()
        return AuthContext(user_id=user.id, email=user.email)

    async def cleanup_expired_sessions(self) -> int:
        """Remove expired sessions; failures are logged and reported as 0."""
        try:
            removed = await self._run(
                self.store.delete_expired_sessions, now=self._now()
            )
        except Exception as exc:
            self.logger.error(
                "session_cleanup_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return 0
        if removed:
            self.logger.info("expired_sessions_removed", count=removed)
        return removed
