from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from edenauth.logging import get_logger
from edenauth.storage.errors import ConstraintViolation
from edenauth.storage.models import UNSET, Session, User, utcnow


class MemoryStore:
    """In-process user and session store for tests and single-node development.

    When ``fs_root`` is given, every mutation is snapshotted to
    ``<fs_root>/state/memory_store.json`` and reloaded on construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        is_email_verified: bool = False,
    ) -> User:
        if not password_hash:
            raise ValueError("password_hash is required")
        with self._data_lock:
            key = email.lower()
            if any(existing.email.lower() == key for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
                is_email_verified=is_email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            key = email.lower()
            user = next(
                (u for u in self.users.values() if u.email.lower() == key), None
            )
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_login_outcome(
        self,
        user_id: str,
        failed_attempts: int,
        *,
        locked_until: Any = UNSET,
        last_login_at: Any = UNSET,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_attempts = failed_attempts
            if locked_until is not UNSET:
                user.locked_until = locked_until
            if last_login_at is not UNSET:
                user.last_login_at = last_login_at
            user.updated_at = utcnow()
            self._persist_state()

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        if not password_hash:
            raise ValueError("password_hash is required")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.password_hash = password_hash
            user.updated_at = utcnow()
            self._persist_state()

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            if any(
                s.refresh_token == session.refresh_token for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token"}
                )
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return session

    def get_session_by_refresh_token(
        self, refresh_token: str, *, now: datetime | None = None
    ) -> Optional[Session]:
        now = now or utcnow()
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.refresh_token == refresh_token:
                    return None if sess.is_expired(now) else replace(sess)
            return None

    def delete_session_by_refresh_token(self, refresh_token: str) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.refresh_token == refresh_token
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, *, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- lifecycle ---------------------------------------------------------

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            raise RuntimeError(f"corrupt memory store state at {path}") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "password_hash": user.password_hash,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "is_email_verified": user.is_email_verified,
            "failed_login_attempts": user.failed_login_attempts,
            "locked_until": self._serialize_datetime(user.locked_until),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            password_hash=data["password_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            is_email_verified=data.get("is_email_verified", False),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token": session.refresh_token,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token=data["refresh_token"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
        )
