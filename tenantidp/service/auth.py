from __future__ import annotations

import contextlib
import hashlib
import secrets
import threading
import time
from typing import Dict, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tenantidp.config import Settings
from tenantidp.logging import get_logger
from tenantidp.service.sessions import SessionStore
from tenantidp.storage.models import LoginSession, User
from tenantidp.storage.tenants import TenantRouter

logger = get_logger(__name__)


class AuthService:
    """Password signup/login, logout, and single-use bootstrap tokens."""

    def __init__(
        self,
        router: TenantRouter,
        sessions: SessionStore,
        cache,
        settings: Settings,
    ) -> None:
        self.router = router
        self.sessions = sessions
        self.cache = cache
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Equalizes login timing for unknown emails
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        # Guards the in-memory bootstrap token fallback when Redis is unavailable
        self._state_lock = threading.Lock()
        self._bootstrap_tokens: Dict[Tuple[str, str], Tuple[dict, float]] = {}
        self.logger = logger

    @contextlib.contextmanager
    def _with_state_lock(self):
        with self._state_lock:
            yield

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, tenant_id: str, user_id: str, password: str) -> bool:
        record = self.router.store_for(tenant_id).get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", tenant_id=tenant_id, user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            self.logger.warning("password_verification_failed", tenant_id=tenant_id, user_id=user_id)
            return False

    async def signup(
        self,
        email: str,
        password: str,
        *,
        tenant_id: str,
        handle: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> tuple[User, LoginSession]:
        store = self.router.store_for(tenant_id)
        user = store.create_user(
            email, handle, first_name=first_name, last_name=last_name
        )
        pwd_hash, algo = self._hash_password(password)
        store.save_password(user.id, pwd_hash, algo)
        session = await self.sessions.create(tenant_id, user.id)
        return user, session

    async def login(
        self, email: str, password: str, *, tenant_id: str
    ) -> tuple[Optional[User], Optional[LoginSession]]:
        user = self.router.store_for(tenant_id).get_user_by_email(email)
        if not user or not user.is_active:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except (InvalidHash, VerificationError):
                pass
            self.logger.warning("login_failed", tenant_id=tenant_id, reason="unknown_user")
            return None, None
        if not self.verify_password(tenant_id, user.id, password):
            self.logger.warning("login_failed", tenant_id=tenant_id, reason="bad_password")
            return None, None
        session = await self.sessions.create(tenant_id, user.id)
        self.logger.info("login_succeeded", tenant_id=tenant_id, user_id=user.id)
        return user, session

    async def logout(self, tenant_id: str, session_id: str) -> None:
        await self.sessions.revoke(tenant_id, session_id)
        self.logger.info("logout", tenant_id=tenant_id)

    async def resolve_session(
        self, tenant_id: Optional[str], session_id: Optional[str]
    ) -> Optional[LoginSession]:
        return await self.sessions.get(tenant_id, session_id)

    async def issue_bootstrap_token(self, session: LoginSession) -> str:
        """Mint a single-use token that stands in for ``session`` at /authorize."""
        token = secrets.token_urlsafe(32)
        ttl = self.settings.bootstrap_token_ttl_seconds
        record = {"user_id": session.user_id, "session_id": session.id}
        if self.cache:
            await self.cache.set_bootstrap_token(session.tenant_id, token, record, ttl)
        else:
            key = (session.tenant_id, hashlib.sha256(token.encode()).hexdigest())
            with self._with_state_lock():
                self._purge_bootstrap_tokens(time.time())
                self._bootstrap_tokens[key] = (record, time.time() + ttl)
        self.logger.info(
            "bootstrap_token_issued", tenant_id=session.tenant_id, user_id=session.user_id
        )
        return token

    async def consume_bootstrap_token(
        self, tenant_id: str, token: Optional[str]
    ) -> Optional[LoginSession]:
        """Redeem a bootstrap token at most once; returns its still-valid backing session."""
        if not token or len(token) > 128:
            return None
        if self.cache:
            record = await self.cache.pop_bootstrap_token(tenant_id, token)
        else:
            key = (tenant_id, hashlib.sha256(token.encode()).hexdigest())
            with self._with_state_lock():
                entry = self._bootstrap_tokens.pop(key, None)
            record = None
            if entry and entry[1] > time.time():
                record = entry[0]
        if not record:
            self.logger.warning("bootstrap_token_rejected", tenant_id=tenant_id)
            return None
        session = await self.sessions.get(tenant_id, record.get("session_id"))
        if session is None or session.user_id != record.get("user_id"):
            self.logger.warning("bootstrap_token_session_invalid", tenant_id=tenant_id)
            return None
        return session

    def _purge_bootstrap_tokens(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._bootstrap_tokens.items() if expires_at <= now]
        for key in expired:
            self._bootstrap_tokens.pop(key, None)
