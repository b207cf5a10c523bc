"""
Event Normalizer

Converts the raw record stream of one assistant engine connection into the
fixed output event vocabulary (see relay.events.models).

Per-connection state:
- streamed_text_seen: a text delta was surfaced this turn
- assistant_text_emitted: a complete assistant message was surfaced this turn
- seen_tool_ids: tool invocations announced this turn
- pending question: at most one open interactive question

Text dedup:
    A turn's text reaches the consumer exactly once. Either it is streamed
    as assistant_delta events (the first delta flips streamed_text_seen), or
    it arrives once as a complete assistant_message. A complete message that
    follows streamed deltas is a duplicate and is discarded. If neither path
    produced text, the terminal result record's summary text is surfaced as
    a last-resort assistant_message.

Interactive questions:
    The question tool is never surfaced as a tool card. The engine asks for
    permission to run it (can_use_tool); the normalizer emits ask_question
    and input_required, then parks the permission request on a future until
    either answer_question() resolves it with "allow" or abort() resolves it
    with "deny". Resolution is exactly-once.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from pydantic import BaseModel, ValidationError

from relay.agent.records import (
    AssistantRecord,
    ContentBlock,
    ResultRecord,
    StreamEventRecord,
    UserRecord,
    parse_record,
)
from relay.events.models import (
    AskQuestion,
    AssistantDelta,
    AssistantMessage,
    BaseOutputEvent,
    InputRequiredEvent,
    Question,
    QuestionAnswered,
    ResultEvent,
    ToolResult,
    ToolUseStart,
    ToolUseUpdate,
)

logger = logging.getLogger(__name__)

# Tool name the engine uses for interactive multiple-choice questions
ASK_QUESTION_TOOL = "AskUserQuestion"

DEFAULT_QUESTION_PROMPT = "Claude needs your input"

SUMMARY_MAX_CHARS = 80


class PermissionDecision(BaseModel):
    """Answer to the engine's can_use_tool permission request."""
    behavior: Literal["allow", "deny"]
    updated_input: dict[str, Any] | None = None
    message: str | None = None


@dataclass
class PendingQuestion:
    """An open interactive question awaiting exactly one resolution."""
    questions: list[dict[str, Any]]
    future: asyncio.Future = field(repr=False)

    def resolve(self, decision: PermissionDecision) -> bool:
        if self.future.done():
            return False
        self.future.set_result(decision)
        return True


def get_tool_summary(tool_name: str, tool_input: Any) -> str:
    """
    Short human-readable projection of a tool invocation.

    Total: unknown tools and missing or non-dict input yield "".
    """
    if not isinstance(tool_input, dict) or not tool_input:
        return ""

    def text(key: str) -> str:
        value = tool_input.get(key)
        return value if isinstance(value, str) else ""

    if tool_name in ("Read", "Edit", "Write"):
        return text("file_path")
    if tool_name == "NotebookEdit":
        return text("notebook_path")
    if tool_name == "Bash":
        command = text("command")
        if len(command) > SUMMARY_MAX_CHARS:
            return command[:SUMMARY_MAX_CHARS] + "..."
        return command
    if tool_name == "Glob":
        return text("pattern")
    if tool_name == "Grep":
        path = text("path")
        return text("pattern") + (f" in {path}" if path else "")
    if tool_name == "WebFetch":
        return text("url")
    if tool_name == "WebSearch":
        return text("query")
    if tool_name == "TodoWrite":
        return "Updated todos"
    if tool_name == "Task":
        return text("description")
    return ""


class EventNormalizer:
    """
    Normalizes one engine connection's records into output events.

    Events are handed to the ``emit`` sink synchronously, in order.
    """

    def __init__(
        self,
        emit: Callable[[BaseOutputEvent], None],
        question_tool: str = ASK_QUESTION_TOOL,
    ):
        """
        Initialize the normalizer.

        Args:
            emit: Sink receiving every output event
            question_tool: Tool name treated as an interactive question
        """
        self._emit = emit
        self._question_tool = question_tool

        self.streamed_text_seen = False
        self.assistant_text_emitted = False
        self.seen_tool_ids: set[str] = set()
        # Question tool invocations are tracked apart so their results are dropped quietly
        self._question_tool_ids: set[str] = set()
        self._pending: PendingQuestion | None = None

        # Engine-side conversation id, captured from the first record carrying one
        self.upstream_session_id: str | None = None

    @property
    def has_pending_question(self) -> bool:
        return self._pending is not None

    def begin_turn(self) -> None:
        """Reset per-turn state before a new user turn is sent upstream."""
        self.streamed_text_seen = False
        self.assistant_text_emitted = False
        self.seen_tool_ids.clear()
        self._question_tool_ids.clear()

    # =========================================================================
    # Record handling
    # =========================================================================

    def feed(self, raw: Any) -> None:
        """Process one raw engine record."""
        record = parse_record(raw)

        if record.session_id:
            self.upstream_session_id = record.session_id

        if isinstance(record, AssistantRecord):
            self._handle_assistant(record)
        elif isinstance(record, UserRecord):
            self._handle_user(record)
        elif isinstance(record, StreamEventRecord):
            self._handle_stream_event(record)
        elif isinstance(record, ResultRecord):
            self._handle_result(record)
        # Everything else is framing: dropped

    def _handle_assistant(self, record: AssistantRecord) -> None:
        for block in record.message.content:
            if block.type == "text" and block.text:
                if self.streamed_text_seen:
                    continue
                self.assistant_text_emitted = True
                self._emit(AssistantMessage(text=block.text))
            elif block.type == "tool_use":
                self._announce_tool(block)

    def _handle_user(self, record: UserRecord) -> None:
        for block in record.message.content:
            if block.type != "tool_result":
                continue

            tool_id = block.tool_use_id
            if tool_id not in self.seen_tool_ids:
                if tool_id not in self._question_tool_ids:
                    logger.debug(f"Dropping tool_result for unknown tool id {tool_id!r}")
                continue

            content = block.content or record.tool_use_result or ""
            self._emit(ToolResult(tool_id=tool_id, content=content, is_error=block.is_error))

    def _handle_stream_event(self, record: StreamEventRecord) -> None:
        event = record.event
        if event is None:
            return

        if event.type == "content_block_start":
            block = event.content_block
            if block is not None and block.type == "tool_use":
                self._announce_tool(block)
            # Text block starts are boundary markers only
        elif event.type == "content_block_delta":
            delta = event.delta
            if delta is not None and delta.type == "text_delta" and delta.text:
                self.streamed_text_seen = True
                self._emit(AssistantDelta(text=delta.text))
            # input_json_delta and friends carry nothing user-visible

    def _handle_result(self, record: ResultRecord) -> None:
        if not self.streamed_text_seen and not self.assistant_text_emitted and record.result:
            self.assistant_text_emitted = True
            self._emit(AssistantMessage(text=record.result))

        self._emit(ResultEvent(subtype=record.subtype))

    def _announce_tool(self, block: ContentBlock) -> None:
        if not block.id:
            logger.debug(f"Dropping tool_use block without id (tool={block.name!r})")
            return

        if block.name == self._question_tool:
            self._question_tool_ids.add(block.id)
            return

        summary = get_tool_summary(block.name, block.input)
        if block.id in self.seen_tool_ids:
            self._emit(ToolUseUpdate(
                tool_id=block.id,
                tool_name=block.name,
                input=block.input,
                summary=summary,
            ))
        else:
            self.seen_tool_ids.add(block.id)
            self._emit(ToolUseStart(
                tool_id=block.id,
                tool_name=block.name,
                input=block.input,
                summary=summary,
            ))

    # =========================================================================
    # Permission requests and interactive questions
    # =========================================================================

    async def can_use_tool(self, tool_name: str, tool_input: dict[str, Any]) -> PermissionDecision:
        """
        Permission callback handed to the engine.

        Every tool is allowed except the question tool, which suspends until
        a user reply or an abort resolves it.
        """
        questions = tool_input.get("questions") if isinstance(tool_input, dict) else None
        if tool_name != self._question_tool or not questions or not isinstance(questions, list):
            return PermissionDecision(behavior="allow", updated_input=tool_input)

        try:
            parsed = [Question.model_validate(q) for q in questions]
        except ValidationError as e:
            logger.warning(f"Malformed question payload, allowing without prompt: {e.error_count()} error(s)")
            return PermissionDecision(behavior="allow", updated_input=tool_input)

        # A new question supersedes one still open
        self.abort("Superseded by a new question")

        future = asyncio.get_running_loop().create_future()
        pending = PendingQuestion(questions=questions, future=future)
        self._pending = pending

        self._emit(AskQuestion(questions=parsed))
        self._emit(InputRequiredEvent(prompt=parsed[0].question or DEFAULT_QUESTION_PROMPT))

        try:
            return await future
        except asyncio.CancelledError:
            # Engine gave up on the request: treat as abort
            if self._pending is pending:
                self._pending = None
            raise

    def answer_question(self, reply: str) -> bool:
        """
        Resolve the pending question with the user's reply.

        The reply answers the first question of the batch.

        Returns:
            True if a question was pending and is now answered, False otherwise
        """
        pending = self._pending
        if pending is None:
            return False
        self._pending = None

        answers: dict[str, str] = {}
        if pending.questions:
            first = pending.questions[0]
            key = first.get("question", "") if isinstance(first, dict) else ""
            answers[key] = reply

        resolved = pending.resolve(PermissionDecision(
            behavior="allow",
            updated_input={"questions": pending.questions, "answers": answers},
        ))
        if resolved:
            self._emit(QuestionAnswered())
        return resolved

    def abort(self, reason: str = "Session aborted") -> bool:
        """
        Resolve a pending question with a deny decision.

        Returns:
            True if a pending question was denied, False if none was open
        """
        pending = self._pending
        if pending is None:
            return False
        self._pending = None
        logger.info(f"Pending question denied: {reason}")
        return pending.resolve(PermissionDecision(behavior="deny", message=reason))
