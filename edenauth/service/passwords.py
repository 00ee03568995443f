from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError

from edenauth.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """Argon2id password hashing with fixed, configured cost parameters.

    Every ``hash`` call embeds a fresh random salt. ``verify`` never raises:
    a mismatch or an unparseable stored hash both return False.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: str | None = None

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: str | None) -> bool:
        if not isinstance(password, str) or not isinstance(password_hash, str):
            return False
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerificationError:
            return False
        except InvalidHashError:
            logger.warning("password_hash_malformed")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return True

    def burn(self, password: str) -> None:
        """Spend one verification worth of time without a real account."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash("not-a-real-password")
        self.verify(password, self._dummy_hash)
