# Output Events
# Normalized event vocabulary published by the agent host for each session

from relay.events.models import (
    BaseOutputEvent,
    AssistantMessage,
    AssistantDelta,
    ToolUseStart,
    ToolUseUpdate,
    ToolResult,
    Question,
    QuestionOption,
    AskQuestion,
    QuestionAnswered,
    InputRequiredEvent,
    ErrorEvent,
    ResultEvent,
)

__all__ = [
    "BaseOutputEvent",
    "AssistantMessage",
    "AssistantDelta",
    "ToolUseStart",
    "ToolUseUpdate",
    "ToolResult",
    "Question",
    "QuestionOption",
    "AskQuestion",
    "QuestionAnswered",
    "InputRequiredEvent",
    "ErrorEvent",
    "ResultEvent",
]
