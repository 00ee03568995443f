from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt

from edenauth.config import ConfigurationError
from edenauth.logging import get_logger

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
_TOKEN_TYPES = {ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE}


@dataclass(frozen=True)
class TokenVerification:
    """Outcome of ``TokenService.verify``; the failure cause is never exposed."""

    valid: bool
    type: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def invalid(cls) -> "TokenVerification":
        return cls(valid=False)


class TokenService:
    """Issues and verifies HS256-signed access and refresh tokens.

    Access tokens carry the user id. Refresh tokens carry only a random nonce;
    the binding to a user lives in the session store.
    """

    def __init__(
        self,
        secret: str | None,
        *,
        issuer: str,
        audience: str,
        access_ttl_minutes: int = 7 * 24 * 60,
        refresh_ttl_minutes: int = 30 * 24 * 60,
        algorithm: str = "HS256",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not secret:
            raise ConfigurationError("token signing secret is required")
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = timedelta(minutes=access_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=refresh_ttl_minutes)
        self.algorithm = algorithm
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger(__name__)

    def _encode(self, claims: dict, ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def issue_access_token(self, user_id: str) -> str:
        return self._encode(
            {
                "user_id": user_id,
                "type": ACCESS_TOKEN_TYPE,
                "jti": uuid.uuid4().hex,
            },
            self.access_ttl,
        )

    def issue_refresh_token(self) -> str:
        return self._encode(
            {"type": REFRESH_TOKEN_TYPE, "nonce": secrets.token_urlsafe(24)},
            self.refresh_ttl,
        )

    def verify(self, token: str | None) -> TokenVerification:
        if not token or not isinstance(token, str):
            return TokenVerification.invalid()
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except jwt.PyJWTError as exc:
            self.logger.debug("token_rejected", reason=type(exc).__name__)
            return TokenVerification.invalid()
        token_type = payload.get("type")
        if token_type not in _TOKEN_TYPES:
            return TokenVerification.invalid()
        user_id = payload.get("user_id")
        if user_id is not None and not isinstance(user_id, str):
            return TokenVerification.invalid()
        return TokenVerification(valid=True, type=token_type, user_id=user_id)
