"""
Upstream Record Models

Raw records streamed by the assistant engine for one turn, parsed into a
tagged variant with explicit optional fields. Every field has a documented
default so that absent or null values never fail parsing:

- strings default to ""
- flags default to False
- content lists default to [] (a non-list is treated as empty)
- tool input defaults to {} (a non-dict is kept as-is for display)

Record types:
- assistant: a complete assistant message (text and tool_use blocks)
- user: tool results fed back to the model (tool_result blocks)
- stream_event: partial streaming events (block starts, text deltas)
- result: terminal end-of-turn record
- anything else (system, rate_limit_event, ...): IgnoredRecord
"""

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # null on the wire means "use the default"
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class ContentBlock(_Lenient):
    """One block of an assistant or user message."""
    type: str = ""

    # text
    text: str = ""

    # tool_use
    id: str = ""
    name: str = ""
    input: Any = Field(default_factory=dict)

    # tool_result
    tool_use_id: str = ""
    content: Any = None
    is_error: bool = False


def _coerce_blocks(value: Any) -> list[Any]:
    if not isinstance(value, list):
        return []
    return [block for block in value if isinstance(block, dict)]


class UpstreamMessage(_Lenient):
    content: list[ContentBlock] = Field(default_factory=list)

    @field_validator("content", mode="before")
    @classmethod
    def _blocks(cls, value: Any) -> list[Any]:
        return _coerce_blocks(value)


class UpstreamRecord(_Lenient):
    """Base for every parsed record."""
    type: str = ""
    session_id: str = ""


class IgnoredRecord(UpstreamRecord):
    """Framing or noise with no user-visible content."""


class _MessageRecord(UpstreamRecord):
    message: UpstreamMessage = Field(default_factory=UpstreamMessage)

    @model_validator(mode="before")
    @classmethod
    def _inline_message(cls, data: Any) -> Any:
        # Some producers put the content list on the record itself
        if isinstance(data, dict) and not isinstance(data.get("message"), dict):
            data = dict(data)
            data["message"] = {"content": data.get("content")}
        return data


class AssistantRecord(_MessageRecord):
    pass


class UserRecord(_MessageRecord):
    tool_use_result: Any = None


class StreamDelta(_Lenient):
    type: str = ""
    text: str = ""
    partial_json: str = ""


class StreamEvent(_Lenient):
    type: str = ""
    index: int = 0
    content_block: ContentBlock | None = None
    delta: StreamDelta | None = None


class StreamEventRecord(UpstreamRecord):
    event: StreamEvent | None = None


class ResultRecord(UpstreamRecord):
    subtype: str = ""
    result: str = ""
    is_error: bool = False


_RECORD_TYPES: dict[str, type[UpstreamRecord]] = {
    "assistant": AssistantRecord,
    "user": UserRecord,
    "stream_event": StreamEventRecord,
    "result": ResultRecord,
}


def parse_record(raw: Any) -> UpstreamRecord:
    """
    Parse one raw engine record.

    Never raises: records of unknown type, non-dict records, and records
    whose structure cannot be salvaged become IgnoredRecord.
    """
    if isinstance(raw, UpstreamRecord):
        return raw
    if not isinstance(raw, dict):
        return IgnoredRecord()

    record_type = raw.get("type")
    session_id = raw.get("session_id")
    session_id = session_id if isinstance(session_id, str) else ""

    model = _RECORD_TYPES.get(record_type) if isinstance(record_type, str) else None
    if model is None:
        return IgnoredRecord(
            type=record_type if isinstance(record_type, str) else "",
            session_id=session_id,
        )

    try:
        return model.model_validate(raw)
    except ValidationError as e:
        logger.debug(f"Ignoring unparseable {record_type} record: {e.error_count()} error(s)")
        return IgnoredRecord(type=record_type, session_id=session_id)
