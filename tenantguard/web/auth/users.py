"""In-memory user directory for login and impersonation target lookup."""

from __future__ import annotations

import hashlib
import hmac
import secrets

import structlog

from tenantguard.auth.context import Principal

logger = structlog.get_logger(__name__)

_ITERATIONS = 200_000


def _hash_password(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode(), salt, _ITERATIONS)


class UserDirectory:
    """Username -> principal and password digest."""

    def __init__(self) -> None:
        self._users: dict[str, tuple[Principal, bytes, bytes]] = {}

    def register(self, principal: Principal, password: str) -> None:
        salt = secrets.token_bytes(16)
        self._users[principal.id] = (principal, salt, _hash_password(password, salt))
        logger.info("user_registered", user_id=principal.id, role=principal.role)

    def get(self, user_id: str) -> Principal | None:
        entry = self._users.get(user_id)
        return entry[0] if entry else None

    def authenticate(self, user_id: str, password: str) -> Principal | None:
        entry = self._users.get(user_id)
        if entry is None:
            return None
        principal, salt, digest = entry
        if not hmac.compare_digest(digest, _hash_password(password, salt)):
            return None
        return principal
