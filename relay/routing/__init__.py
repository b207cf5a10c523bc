# Fan-out Router
# Multiplexes each session's agent events to its subscribers and routes user input back

from relay.protocol.messages import ConnectionRole
from relay.routing.connection import Connection
from relay.routing.router import FanoutRouter, AGENT_NOT_CONNECTED, SESSION_NOT_FOUND

__all__ = [
    "Connection",
    "ConnectionRole",
    "FanoutRouter",
    "AGENT_NOT_CONNECTED",
    "SESSION_NOT_FOUND",
]
