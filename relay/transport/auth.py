"""
Authentication Gate

Credential checks performed once, at connection establishment.

Two credentials are accepted:
- The relay-wide bearer token (agents and clients)
- A session pairing token (clients only): the connection is then scoped
  to that one session

Principal identity gates acceptance only; messages on an accepted
connection are not re-authorized.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING

from relay.protocol.messages import ConnectionRole

if TYPE_CHECKING:
    from relay.session.manager import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """An authenticated connection identity."""
    role: ConnectionRole
    # Set when the pairing credential was used
    scope_session_id: str | None = None


class AuthGate:
    """Validates handshake credentials."""

    def __init__(self, auth_token: str, registry: "SessionRegistry | None" = None):
        if not auth_token:
            raise ValueError("auth_token must not be empty")
        self._auth_token = auth_token
        self._registry = registry

    def validate_token(self, token: str | None) -> bool:
        if not token:
            return False
        return secrets.compare_digest(token.encode(), self._auth_token.encode())

    def validate_bearer(self, authorization: str | None) -> bool:
        """Check an ``Authorization: Bearer <token>`` header value."""
        if not authorization:
            return False
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer":
            return False
        return self.validate_token(token.strip())

    def authenticate(
        self,
        role: ConnectionRole,
        token: str | None = None,
        session_id: str | None = None,
        session_token: str | None = None,
    ) -> Principal | None:
        """
        Resolve handshake parameters to a principal.

        Returns:
            Principal, or None if the credentials are absent or wrong
        """
        if self.validate_token(token):
            return Principal(role=role)

        if role == ConnectionRole.CLIENT and session_id and session_token:
            if self._validate_pairing(session_id, session_token):
                return Principal(role=role, scope_session_id=session_id)

        logger.warning(f"Rejected {role.value} handshake: invalid credentials")
        return None

    def _validate_pairing(self, session_id: str, session_token: str) -> bool:
        if self._registry is None:
            return False
        session = self._registry.get_session(session_id)
        if session is None or not session.session_token:
            return False
        return secrets.compare_digest(session_token.encode(), session.session_token.encode())
