"""
Session Model

Represents one shared working context bridged between exactly one owning
agent connection and zero or more subscriber connections.

Connections are referenced by id only: the session never owns a socket.
If the owning agent connection goes away the session is torn down; a
subscriber leaving only shrinks the subscriber set.

Session Lifecycle:
1. Created when an agent registers a new session id
2. Status and history updated by events from the owning agent
3. Removed when the owning agent disconnects or unregisters it
"""

import time
from typing import Any

from pydantic import BaseModel, Field

from relay.protocol.messages import SessionStatus, SessionSummary

DEFAULT_HISTORY_LIMIT = 200

PREVIEW_MAX_CHARS = 100


def now_ms() -> int:
    """Wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def summarize_message(message: dict[str, Any] | None) -> str | None:
    """Short preview of a history record for the session list."""
    if message is None:
        return None
    text = message.get("content") or message.get("text") or ""
    if not isinstance(text, str):
        text = ""
    if len(text) > PREVIEW_MAX_CHARS:
        return text[:PREVIEW_MAX_CHARS] + "..."
    return text


class Session(BaseModel):
    """
    A relayed session.

    Owned by the SessionRegistry for its full lifetime.
    """

    # === Identity ===
    session_id: str = Field(
        ...,
        description="Opaque id chosen by the agent host, stable for the session lifetime"
    )

    # === Metadata ===
    project_name: str = Field(
        default="",
        description="Human-readable project name"
    )
    project_path: str = Field(
        default="",
        description="Origin path/descriptor on the agent host"
    )
    session_token: str | None = Field(
        default=None,
        description="Pairing credential letting a viewer reach only this session"
    )

    # === State ===
    status: SessionStatus = Field(
        default=SessionStatus.IDLE,
        description="Authoritative status, driven by the owning agent"
    )
    history: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Bounded FIFO of timestamped records, oldest first"
    )

    # === Connections (ids only) ===
    owner_conn_id: str | None = Field(
        default=None,
        description="Agent connection that registered the session"
    )
    subscriber_conn_ids: set[str] = Field(
        default_factory=set,
        description="Client connections currently watching the session"
    )

    # === Timestamps (ms) ===
    created_at: int = Field(default_factory=now_ms)
    last_activity: int = Field(default_factory=now_ms)

    def touch(self) -> None:
        self.last_activity = now_ms()

    def to_summary(self) -> SessionSummary:
        """Row for the session-list view (pairing credential excluded)."""
        return SessionSummary(
            id=self.session_id,
            project_name=self.project_name,
            status=self.status,
            message_count=len(self.history),
            last_activity=self.last_activity,
            last_message=summarize_message(self.history[-1] if self.history else None),
        )
