# Wire Protocol
# JSON messages with a "type" discriminator exchanged on the agent and client routes

from relay.protocol.messages import (
    MessageType,
    SessionStatus,
    ConnectionRole,
    WireModel,
    SessionRegister,
    SessionUnregister,
    ClaudeOutput,
    SessionStatusUpdate,
    InputRequired,
    SubscribeSession,
    UnsubscribeSession,
    UserMessage,
    SessionSummary,
    AgentMessage,
    ClientMessage,
    parse_agent_message,
    parse_client_message,
    create_sessions_updated,
    create_message_history,
    create_claude_output,
    create_session_status,
    create_input_required,
    create_session_closed,
    create_error,
    create_user_message,
)

__all__ = [
    "MessageType",
    "SessionStatus",
    "ConnectionRole",
    "WireModel",
    "SessionRegister",
    "SessionUnregister",
    "ClaudeOutput",
    "SessionStatusUpdate",
    "InputRequired",
    "SubscribeSession",
    "UnsubscribeSession",
    "UserMessage",
    "SessionSummary",
    "AgentMessage",
    "ClientMessage",
    "parse_agent_message",
    "parse_client_message",
    "create_sessions_updated",
    "create_message_history",
    "create_claude_output",
    "create_session_status",
    "create_input_required",
    "create_session_closed",
    "create_error",
    "create_user_message",
]
