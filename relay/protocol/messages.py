"""
Relay Wire Protocol

Every message exchanged with the relay is a JSON object carrying a
``type`` discriminator. Two logical routes exist:

- agent route: the local agent host publishing one or more sessions
- client route: viewers (web/mobile clients, editor extension) subscribing
  to sessions and sending user input back

Agent -> Relay:
- session_register, session_unregister, claude_output,
  session_status, input_required

Client -> Relay:
- subscribe_session, unsubscribe_session, user_message

Relay -> Client:
- sessions_updated, message_history, claude_output, session_status,
  input_required, session_closed, error

Relay -> Agent:
- user_message

Field names on the wire are camelCase; the models below expose them as
snake_case attributes through aliases.
"""

import json
import logging
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Wire message discriminators."""
    # Agent -> Relay
    SESSION_REGISTER = "session_register"
    SESSION_UNREGISTER = "session_unregister"
    CLAUDE_OUTPUT = "claude_output"  # Also Relay -> Client
    SESSION_STATUS = "session_status"  # Also Relay -> Client
    INPUT_REQUIRED = "input_required"  # Also Relay -> Client

    # Client -> Relay
    SUBSCRIBE_SESSION = "subscribe_session"
    UNSUBSCRIBE_SESSION = "unsubscribe_session"
    USER_MESSAGE = "user_message"  # Also Relay -> Agent

    # Relay -> Client
    SESSIONS_UPDATED = "sessions_updated"
    MESSAGE_HISTORY = "message_history"
    SESSION_CLOSED = "session_closed"
    ERROR = "error"


class SessionStatus(str, Enum):
    """Authoritative session status, driven by the owning agent."""
    IDLE = "idle"
    PROCESSING = "processing"
    INPUT_REQUIRED = "input_required"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class ConnectionRole(str, Enum):
    """Role of an inbound connection, fixed at accept time by its route."""
    AGENT = "agent"
    CLIENT = "client"


class WireModel(BaseModel):
    """Base for all wire messages: camelCase aliases, unknown fields ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_json(self) -> str:
        """Serialize with wire (alias) field names."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


# =============================================================================
# Agent -> Relay
# =============================================================================

class SessionRegister(WireModel):
    type: Literal["session_register"] = "session_register"
    session_id: str = Field(..., alias="sessionId", min_length=1)
    project_name: str = Field(default="", alias="projectName")
    project_path: str = Field(default="", alias="projectPath")
    session_token: str | None = Field(
        default=None,
        alias="sessionToken",
        description="Pairing credential for viewers without the bearer token"
    )


class SessionUnregister(WireModel):
    type: Literal["session_unregister"] = "session_unregister"
    session_id: str = Field(..., alias="sessionId", min_length=1)


class ClaudeOutput(WireModel):
    type: Literal["claude_output"] = "claude_output"
    session_id: str = Field(..., alias="sessionId", min_length=1)
    message: dict[str, Any] = Field(default_factory=dict)


class SessionStatusUpdate(WireModel):
    type: Literal["session_status"] = "session_status"
    session_id: str = Field(..., alias="sessionId", min_length=1)
    status: SessionStatus


class InputRequired(WireModel):
    type: Literal["input_required"] = "input_required"
    session_id: str = Field(..., alias="sessionId", min_length=1)
    prompt: str = ""


# =============================================================================
# Client -> Relay
# =============================================================================

class SubscribeSession(WireModel):
    type: Literal["subscribe_session"] = "subscribe_session"
    session_id: str = Field(..., alias="sessionId", min_length=1)
    since: float | None = Field(default=0, description="Replay watermark (ms timestamp)")


class UnsubscribeSession(WireModel):
    type: Literal["unsubscribe_session"] = "unsubscribe_session"


class UserMessage(WireModel):
    type: Literal["user_message"] = "user_message"
    session_id: str = Field(..., alias="sessionId", min_length=1)
    content: str = ""


# =============================================================================
# Relay -> Client
# =============================================================================

class SessionSummary(WireModel):
    """One row of the session-list view."""
    id: str
    project_name: str = Field(default="", alias="projectName")
    status: SessionStatus = SessionStatus.IDLE
    message_count: int = Field(default=0, alias="messageCount")
    last_activity: int = Field(default=0, alias="lastActivity")
    last_message: str | None = Field(default=None, alias="lastMessage")

    def to_wire(self) -> dict[str, Any]:
        # lastMessage is always present (null when the history is empty)
        return self.model_dump(by_alias=True, mode="json")


class SessionsUpdated(WireModel):
    type: Literal["sessions_updated"] = "sessions_updated"
    sessions: list[SessionSummary] = Field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps({
            "type": self.type,
            "sessions": [s.to_wire() for s in self.sessions],
        })


class MessageHistory(WireModel):
    type: Literal["message_history"] = "message_history"
    session_id: str = Field(..., alias="sessionId")
    messages: list[dict[str, Any]] = Field(default_factory=list)


class SessionClosed(WireModel):
    type: Literal["session_closed"] = "session_closed"
    session_id: str = Field(..., alias="sessionId")


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    error: str


AgentMessage = Annotated[
    Union[
        SessionRegister,
        SessionUnregister,
        ClaudeOutput,
        SessionStatusUpdate,
        InputRequired,
    ],
    Field(discriminator="type"),
]

ClientMessage = Annotated[
    Union[SubscribeSession, UnsubscribeSession, UserMessage],
    Field(discriminator="type"),
]

_agent_adapter: TypeAdapter = TypeAdapter(AgentMessage)
_client_adapter: TypeAdapter = TypeAdapter(ClientMessage)

_AGENT_TYPES = {
    MessageType.SESSION_REGISTER.value,
    MessageType.SESSION_UNREGISTER.value,
    MessageType.CLAUDE_OUTPUT.value,
    MessageType.SESSION_STATUS.value,
    MessageType.INPUT_REQUIRED.value,
}

_CLIENT_TYPES = {
    MessageType.SUBSCRIBE_SESSION.value,
    MessageType.UNSUBSCRIBE_SESSION.value,
    MessageType.USER_MESSAGE.value,
}


def _parse(data: str | bytes, adapter: TypeAdapter, known_types: set[str]) -> Any | None:
    try:
        raw = json.loads(data)
    except (ValueError, UnicodeDecodeError):
        logger.debug("Dropping undecodable frame")
        return None

    if not isinstance(raw, dict):
        logger.debug("Dropping non-object frame")
        return None

    msg_type = raw.get("type")
    if not isinstance(msg_type, str) or msg_type not in known_types:
        logger.debug(f"Ignoring unrecognized message type: {msg_type!r}")
        return None

    try:
        return adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(f"Dropping malformed {msg_type} message: {e.error_count()} error(s)")
        return None


def parse_agent_message(data: str | bytes) -> AgentMessage | None:
    """
    Parse a frame received on the agent route.

    Returns:
        The typed message, or None if the frame is undecodable, malformed,
        or carries an unrecognized type (all of which are dropped).
    """
    return _parse(data, _agent_adapter, _AGENT_TYPES)


def parse_client_message(data: str | bytes) -> ClientMessage | None:
    """Parse a frame received on the client route (same drop rules)."""
    return _parse(data, _client_adapter, _CLIENT_TYPES)


# === Outbound message constructors ===

def create_sessions_updated(sessions: list[SessionSummary]) -> SessionsUpdated:
    """Full session-list snapshot, broadcast to every client."""
    return SessionsUpdated(sessions=sessions)


def create_message_history(session_id: str, messages: list[dict[str, Any]]) -> MessageHistory:
    """Replay of retained history sent in answer to subscribe_session."""
    return MessageHistory(session_id=session_id, messages=messages)


def create_claude_output(session_id: str, message: dict[str, Any]) -> ClaudeOutput:
    """One history record fanned out to a session's subscribers."""
    return ClaudeOutput(session_id=session_id, message=message)


def create_session_status(session_id: str, status: SessionStatus) -> SessionStatusUpdate:
    return SessionStatusUpdate(session_id=session_id, status=status)


def create_input_required(session_id: str, prompt: str) -> InputRequired:
    return InputRequired(session_id=session_id, prompt=prompt)


def create_session_closed(session_id: str) -> SessionClosed:
    return SessionClosed(session_id=session_id)


def create_error(error: str) -> ErrorMessage:
    """
    Create an error message.

    Used for user-facing faults only (agent not connected, session not
    found); internal faults are never surfaced to the far end.
    """
    return ErrorMessage(error=error)


def create_user_message(session_id: str, content: str) -> UserMessage:
    """User input forwarded from a viewer to the owning agent connection."""
    return UserMessage(session_id=session_id, content=content)
