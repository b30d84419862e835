"""
Authentication port and its in-memory implementation.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from receipt_portal.errors import AuthError
from receipt_portal.schemas import AuthResult, AuthSession, AuthUser

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
USER_UPDATED = "USER_UPDATED"

AuthStateCallback = Callable[[str, Optional[AuthSession]], None]


@dataclass
class Subscription:
    """Handle returned by ``on_auth_state_change``."""

    id: str
    _unsubscribe: Callable[[], None]

    def unsubscribe(self) -> None:
        self._unsubscribe()


class Authenticator(Protocol):
    """Interface for the hosted identity service."""

    async def sign_up(self, email: str, password: str, metadata: dict) -> AuthResult:
        ...

    async def sign_in(self, email: str, password: str) -> AuthResult:
        ...

    async def sign_out(self) -> None:
        ...

    async def get_user(self) -> Optional[AuthUser]:
        ...

    def on_auth_state_change(self, callback: AuthStateCallback) -> Subscription:
        ...


class InMemoryAuthenticator:
    """Simple in-memory identity service for development and tests."""

    MIN_PASSWORD_LENGTH = 6
    SESSION_TTL_SECONDS = 3600

    def __init__(self):
        self.users: Dict[str, tuple[str, AuthUser]] = {}
        self.session: Optional[AuthSession] = None
        self.listeners: Dict[str, AuthStateCallback] = {}

    def add_user(
        self,
        email: str,
        password: str,
        metadata: Optional[dict] = None,
        user_id: Optional[str] = None,
    ) -> AuthUser:
        """Register a user without signing in (useful in tests)."""
        user = AuthUser(
            id=user_id or str(uuid.uuid4()),
            email=email,
            user_metadata=dict(metadata or {}),
        )
        self.users[email.lower()] = (password, user)
        return user

    async def sign_up(self, email: str, password: str, metadata: dict) -> AuthResult:
        if email.lower() in self.users:
            raise AuthError("User already registered", code="user_already_exists")
        if len(password) < self.MIN_PASSWORD_LENGTH:
            raise AuthError(
                f"Password should be at least {self.MIN_PASSWORD_LENGTH} characters.",
                code="weak_password",
            )
        user = self.add_user(email, password, metadata)
        session = self._start_session(user)
        return AuthResult(user=user, session=session)

    async def sign_in(self, email: str, password: str) -> AuthResult:
        entry = self.users.get(email.lower())
        if entry is None or entry[0] != password:
            raise AuthError("Invalid login credentials", code="invalid_credentials")
        session = self._start_session(entry[1])
        return AuthResult(user=entry[1], session=session)

    async def sign_out(self) -> None:
        self.session = None
        self._emit(SIGNED_OUT, None)

    async def get_user(self) -> Optional[AuthUser]:
        if self.session is None:
            return None
        return self.session.user

    async def refresh_session(self) -> AuthSession:
        if self.session is None or self.session.user is None:
            raise AuthError("Auth session missing!", code="session_not_found")
        self.session = self._new_session(self.session.user)
        self._emit(TOKEN_REFRESHED, self.session)
        return self.session

    def on_auth_state_change(self, callback: AuthStateCallback) -> Subscription:
        key = uuid.uuid4().hex
        self.listeners[key] = callback
        return Subscription(id=key, _unsubscribe=lambda: self.listeners.pop(key, None))

    def _start_session(self, user: AuthUser) -> AuthSession:
        self.session = self._new_session(user)
        self._emit(SIGNED_IN, self.session)
        return self.session

    def _new_session(self, user: AuthUser) -> AuthSession:
        return AuthSession(
            access_token=uuid.uuid4().hex,
            refresh_token=uuid.uuid4().hex,
            expires_at=int(time.time()) + self.SESSION_TTL_SECONDS,
            user=user,
        )

    def _emit(self, event: str, session: Optional[AuthSession]) -> None:
        for callback in list(self.listeners.values()):
            callback(event, session)
