"""Cookie-based session authentication carrying a ``Principal``."""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass

import structlog

from tenantguard.auth.context import Principal

logger = structlog.get_logger(__name__)

SESSION_COOKIE = "session"


@dataclass(slots=True)
class _Session:
    principal: Principal
    created_at: float
    # Identity to restore when an impersonation ends
    original: Principal | None = None


class SessionAuth:
    """Signed opaque tokens mapped to server-side principals."""

    def __init__(self, secret_key: str, max_age: int = 86400) -> None:
        self._secret = secret_key.encode()
        self._max_age = max_age
        self._sessions: dict[str, _Session] = {}

    def create_session(self, principal: Principal) -> str:
        """Create a new session and return the token."""
        token = secrets.token_urlsafe(32)
        signed_token = f"{token}.{self._sign(token)}"
        self._sessions[signed_token] = _Session(principal=principal, created_at=time.time())
        logger.info("session_created", user_id=principal.id, tenant_id=principal.tenant_id)
        return signed_token

    def validate_session(self, token: str | None) -> Principal | None:
        """Return the session's current principal, or ``None`` if invalid or expired."""
        session = self._lookup(token)
        return session.principal if session else None

    def swap_principal(self, token: str, principal: Principal) -> None:
        """Act as ``principal`` until ``restore_principal`` is called."""
        session = self._lookup(token)
        if session is None:
            return
        if session.original is None:
            session.original = session.principal
        session.principal = principal
        logger.info(
            "session_principal_swapped",
            user_id=principal.id,
            impersonated_by=principal.impersonated_by,
        )

    def restore_principal(self, token: str) -> Principal | None:
        session = self._lookup(token)
        if session is None:
            return None
        if session.original is not None:
            session.principal, session.original = session.original, None
            logger.info("session_principal_restored", user_id=session.principal.id)
        return session.principal

    def destroy_session(self, token: str) -> None:
        """Remove a session."""
        self._sessions.pop(token, None)
        logger.info("session_destroyed")

    def _lookup(self, token: str | None) -> _Session | None:
        if not token or "." not in token:
            return None

        raw_token, signature = token.rsplit(".", 1)
        if not hmac.compare_digest(signature, self._sign(raw_token)):
            return None

        session = self._sessions.get(token)
        if session is None:
            return None

        if time.time() - session.created_at > self._max_age:
            self.destroy_session(token)
            return None
        return session

    def _sign(self, data: str) -> str:
        """Create HMAC signature for a token."""
        return hmac.new(self._secret, data.encode(), hashlib.sha256).hexdigest()[:32]
