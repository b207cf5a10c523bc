# Transport Layer
# Handles WebSocket connections, outbound queues and credential checks
# The handler and application live in relay.transport.handler / relay.transport.app

from relay.transport.queue import ConnectionQueue, ConnectionQueueManager, QueueFullError
from relay.transport.auth import AuthGate, Principal

__all__ = [
    "ConnectionQueue",
    "ConnectionQueueManager",
    "QueueFullError",
    "AuthGate",
    "Principal",
]
