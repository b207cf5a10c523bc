# Agent Host
# Runs assistant turns for shared sessions and publishes normalized events to the relay
# The local control surface lives in relay.agent.app

from relay.agent.records import parse_record
from relay.agent.normalizer import (
    ASK_QUESTION_TOOL,
    EventNormalizer,
    PendingQuestion,
    PermissionDecision,
    get_tool_summary,
)
from relay.agent.bridge import AgentBridge, AssistantEngine, EngineOptions, load_engine
from relay.agent.relay_client import RelayClient
from relay.agent.session_manager import LocalSession, LocalSessionManager

__all__ = [
    "parse_record",
    "ASK_QUESTION_TOOL",
    "EventNormalizer",
    "PendingQuestion",
    "PermissionDecision",
    "get_tool_summary",
    "AgentBridge",
    "AssistantEngine",
    "EngineOptions",
    "load_engine",
    "RelayClient",
    "LocalSession",
    "LocalSessionManager",
]
