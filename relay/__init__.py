# Session Relay
# Bridges interactive assistant sessions from a local agent host to remote viewers

__version__ = "0.1.0"

from relay.protocol import MessageType, SessionStatus
from relay.session import Session, SessionRegistry
from relay.routing import Connection, ConnectionRole, FanoutRouter

__all__ = [
    "__version__",
    "MessageType",
    "SessionStatus",
    "Session",
    "SessionRegistry",
    "Connection",
    "ConnectionRole",
    "FanoutRouter",
]
