"""
Output Event Models

The normalized, deduplicated vocabulary that an agent host publishes for a
session. Every upstream record the assistant engine produces is reduced to
zero or more of these events before it leaves the host.

Variants:
- assistant_message - a complete block of assistant text
- assistant_delta - one streamed fragment of assistant text
- tool_use_start / tool_use_update - a tool invocation card
- tool_result - the outcome of a previously announced tool invocation
- ask_question / question_answered - interactive multiple-choice prompt
- input_required - the session is blocked on the user
- error - the turn failed
- result - end-of-turn marker

Design Principles:
- Events are immutable records
- Wire form uses camelCase field names (toolId, toolName, isError)
- A receipt timestamp is attached by the relay when the event enters
  session history; events produced on the host carry none
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class BaseOutputEvent(BaseModel):
    """Common wire behaviour for all output events."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    timestamp: int | None = Field(
        default=None,
        description="Receipt timestamp (ms), assigned when recorded in history"
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the JSON-compatible dict sent inside claude_output."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class AssistantMessage(BaseOutputEvent):
    type: Literal["assistant_message"] = "assistant_message"
    role: Literal["assistant"] = "assistant"
    text: str = ""


class AssistantDelta(BaseOutputEvent):
    type: Literal["assistant_delta"] = "assistant_delta"
    text: str = ""


class ToolUseStart(BaseOutputEvent):
    type: Literal["tool_use_start"] = "tool_use_start"
    tool_id: str = Field(..., alias="toolId")
    tool_name: str = Field(..., alias="toolName")
    input: Any = Field(default_factory=dict)
    summary: str = ""


class ToolUseUpdate(BaseOutputEvent):
    type: Literal["tool_use_update"] = "tool_use_update"
    tool_id: str = Field(..., alias="toolId")
    tool_name: str = Field(..., alias="toolName")
    input: Any | None = None
    summary: str | None = None


class ToolResult(BaseOutputEvent):
    type: Literal["tool_result"] = "tool_result"
    tool_id: str = Field(..., alias="toolId")
    content: Any = Field(default="", description="Plain text or structured blocks")
    is_error: bool = Field(default=False, alias="isError")


class QuestionOption(BaseModel):
    label: str = ""
    description: str = ""


class Question(BaseModel):
    """One question of an interactive multiple-choice prompt."""

    model_config = ConfigDict(populate_by_name=True)

    question: str = ""
    header: str | None = None
    options: list[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(default=False, alias="multiSelect")


class AskQuestion(BaseOutputEvent):
    type: Literal["ask_question"] = "ask_question"
    questions: list[Question] = Field(default_factory=list)


class QuestionAnswered(BaseOutputEvent):
    type: Literal["question_answered"] = "question_answered"


class InputRequiredEvent(BaseOutputEvent):
    type: Literal["input_required"] = "input_required"
    prompt: str = ""


class ErrorEvent(BaseOutputEvent):
    type: Literal["error"] = "error"
    content: str = ""


class ResultEvent(BaseOutputEvent):
    type: Literal["result"] = "result"
    subtype: str = ""
