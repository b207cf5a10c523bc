# Session Registry
# Authoritative in-memory table of relayed sessions and their bounded history

from relay.session.session import Session, DEFAULT_HISTORY_LIMIT, PREVIEW_MAX_CHARS
from relay.session.manager import SessionRegistry

__all__ = [
    "Session",
    "DEFAULT_HISTORY_LIMIT",
    "PREVIEW_MAX_CHARS",
    "SessionRegistry",
]
