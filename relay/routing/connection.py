"""
Connection Handle

The router's view of an accepted connection. Sockets stay with the
transport; the router and registry only ever hold the connection id.
"""

from dataclasses import dataclass, field

from relay.protocol.messages import ConnectionRole


@dataclass
class Connection:
    """
    An accepted agent or client connection.

    role and scope_session_id are fixed at accept time. A client's
    subscribed_session_id changes only through subscribe/unsubscribe;
    an agent's owned_session_ids through register/unregister.
    """
    conn_id: str
    role: ConnectionRole
    # Pairing-credential clients may only see this one session
    scope_session_id: str | None = None
    subscribed_session_id: str | None = None
    owned_session_ids: set[str] = field(default_factory=set)

    @property
    def is_agent(self) -> bool:
        return self.role == ConnectionRole.AGENT

    def can_access(self, session_id: str) -> bool:
        return self.scope_session_id is None or self.scope_session_id == session_id
