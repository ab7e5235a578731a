from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, Optional

from tenantidp.logging import get_logger
from tenantidp.storage.errors import ConstraintViolation
from tenantidp.storage.models import LoginSession, User


class MemoryStore:
    """In-memory data store for a single tenant.

    Every tenant gets its own instance from the TenantRouter, so users,
    credentials, and sessions of one tenant are never reachable through another
    tenant's store.
    """

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, LoginSession] = {}
        self._email_index: Dict[str, str] = {}
        # RLock so nested helpers can re-enter within the same thread
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(
                normalized,
                tenant_id=self.tenant_id,
                handle=handle,
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
            self._email_index[normalized] = user.id
            self.logger.info("user_created", tenant_id=self.tenant_id, user_id=user.id)
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(email.strip().lower())
            return self.users.get(user_id) if user_id else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def save_session(self, session: LoginSession) -> None:
        if session.tenant_id != self.tenant_id:
            raise ConstraintViolation(
                "session tenant does not match store",
                {"tenant_id": session.tenant_id},
            )
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = session

    def get_session(self, session_id: str) -> Optional[LoginSession]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in expired:
                self.sessions.pop(sid, None)
        if expired:
            self.logger.debug("sessions_purged", tenant_id=self.tenant_id, count=len(expired))
        return len(expired)
