from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import SessionRecord, User, utc_now


class MemoryStore:
    """In-memory user repository and session store for tests and local runs.

    Records are copied on the way in and out so callers never hold a
    reference to the stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        # Most recent first; index 0 is the current hash
        self.password_hashes: Dict[str, List[str]] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        name: Optional[str] = None,
        user_id: Optional[str] = None,
        **fields,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=user_id or str(uuid.uuid4()), email=normalized, name=name, **fields)
            if password_hash:
                self.password_hashes[user.id] = [password_hash]
                if user.password_changed_at is None:
                    user.password_changed_at = utc_now()
            self.users[user.id] = user
            return copy.copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return copy.copy(user)
            return None

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return user

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            history = self.password_hashes.get(user_id)
            return history[0] if history else None

    def get_password_history(self, user_id: str, limit: int) -> List[str]:
        with self._data_lock:
            return list(self.password_hashes.get(user_id, [])[: max(limit, 0)])

    def save_password_hash(self, user_id: str, password_hash: str, changed_at: datetime) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            self.password_hashes.setdefault(user_id, []).insert(0, password_hash)
            user.password_changed_at = changed_at

    def record_failed_login(self, user_id: str, lock_until: Optional[datetime] = None) -> int:
        with self._data_lock:
            user = self._require_user(user_id)
            user.failed_login_attempts += 1
            if lock_until is not None:
                user.locked_until = lock_until
            return user.failed_login_attempts

    def reset_failed_logins(self, user_id: str) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.failed_login_attempts = 0
            user.locked_until = None

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            self._require_user(user_id).last_login_at = at

    # sessions ----------------------------------------------------------

    def create_session(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            if record.token in self.sessions:
                raise ConstraintViolation("session token already exists", {"field": "token"})
            self.sessions[record.token] = copy.copy(record)
            return copy.copy(record)

    def get_session(self, token: str) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.sessions.get(token)
            return copy.copy(record) if record else None

    def list_active_sessions(self, user_id: str) -> List[SessionRecord]:
        with self._data_lock:
            return [
                copy.copy(s)
                for s in self.sessions.values()
                if s.user_id == user_id and not s.is_revoked
            ]

    def list_sessions_by_fingerprint(self, user_id: str, fingerprint: str) -> List[SessionRecord]:
        with self._data_lock:
            return [
                copy.copy(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.fingerprint == fingerprint and not s.is_revoked
            ]

    def list_all_active_sessions(self) -> List[SessionRecord]:
        with self._data_lock:
            return [copy.copy(s) for s in self.sessions.values() if not s.is_revoked]

    def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        """All sessions for ``user_id``, revoked ones included."""

        with self._data_lock:
            return [copy.copy(s) for s in self.sessions.values() if s.user_id == user_id]

    def touch_session(self, token: str, at: datetime) -> bool:
        with self._data_lock:
            record = self.sessions.get(token)
            if record is None or record.is_revoked:
                return False
            record.last_accessed_at = at
            return True

    def revoke_session(self, token: str, reason: str, at: datetime) -> bool:
        with self._data_lock:
            record = self.sessions.get(token)
            if record is None or record.is_revoked:
                return False
            record.revoked_at = at
            record.revoke_reason = reason
            self.logger.debug("session_marked_revoked", reason=reason)
            return True
