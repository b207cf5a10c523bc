"""
Agent Bridge

Runs the turns of one shared session against the assistant engine and
pushes the normalized output events to the host's sinks.

Turn lifecycle:
1. send_message(content) arrives (from the relay or the local editor)
2. If a question is pending, the content answers it; no new turn starts
3. If a turn is running, the content is queued (FIFO)
4. Otherwise a turn starts: normalizer turn flags reset, status
   "processing", the engine query is streamed through the normalizer
5. When the turn ends the next queued message runs, or status returns
   to "idle"

The engine is an external collaborator reached through the AssistantEngine
protocol. Its conversation id (the first session_id seen on any record) is
passed back as ``resume`` on later turns so the conversation continues.

abort() denies a pending question, cancels the running turn, drops queued
messages and leaves "processing".
"""

import asyncio
import importlib
import logging
from collections import deque
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Callable, Protocol

from relay.agent.normalizer import EventNormalizer, PermissionDecision
from relay.events.models import BaseOutputEvent, ErrorEvent, InputRequiredEvent
from relay.protocol.messages import SessionStatus

logger = logging.getLogger(__name__)


@dataclass
class EngineOptions:
    """Per-turn options handed to the engine."""
    cwd: str
    can_use_tool: Callable[[str, dict[str, Any]], Awaitable[PermissionDecision]]
    resume: str | None = None
    # Set when the turn is aborted; engines should stop as soon as they see it
    abort_signal: asyncio.Event = field(default_factory=asyncio.Event)


class AssistantEngine(Protocol):
    def query(self, prompt: str, options: EngineOptions) -> AsyncGenerator[Any, None]:
        """Run one turn, yielding raw upstream records."""
        ...


def load_engine(path: str) -> AssistantEngine:
    """
    Import an engine from a "module:attribute" path.

    The attribute may be an engine instance, or a class/factory that is
    called without arguments to build one.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Engine path must look like 'module:attribute', got {path!r}")

    target = getattr(importlib.import_module(module_name), attr)
    engine = target if hasattr(target, "query") and not isinstance(target, type) else target()
    if not hasattr(engine, "query"):
        raise TypeError(f"{path} does not provide a query() method")
    return engine


class AgentBridge:
    """
    One shared session's turn runner.

    Output goes to three sinks: on_event for output events, on_status for
    status transitions, on_input_required for questions waiting on the user.
    """

    def __init__(
        self,
        engine: AssistantEngine,
        project_path: str,
        on_event: Callable[[BaseOutputEvent], None] | None = None,
        on_status: Callable[[SessionStatus], None] | None = None,
        on_input_required: Callable[[str], None] | None = None,
    ):
        self._engine = engine
        self.project_path = project_path
        self._on_event = on_event or (lambda event: None)
        self._on_status = on_status or (lambda status: None)
        self._on_input_required = on_input_required or (lambda prompt: None)

        self._normalizer = EventNormalizer(self._handle_event)
        self.status = SessionStatus.IDLE
        self.is_running = False

        self._queue: deque[tuple[str, asyncio.Future]] = deque()
        self._turn_task: asyncio.Task | None = None
        self._abort_event: asyncio.Event | None = None

    @property
    def upstream_session_id(self) -> str | None:
        return self._normalizer.upstream_session_id

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def has_pending_question(self) -> bool:
        return self._normalizer.has_pending_question

    async def send_message(self, content: str) -> None:
        """
        Deliver user input to the session.

        Returns once the input has been consumed: immediately for a question
        answer, after the turn it started (or was queued for) otherwise.
        """
        if self._normalizer.answer_question(content):
            self._set_status(SessionStatus.PROCESSING)
            return

        if self.is_running:
            future = asyncio.get_running_loop().create_future()
            self._queue.append((content, future))
            logger.info(f"Message queued ({len(self._queue)} in queue)")
            await future
            return

        await self._wait(self._launch(content))

    def abort(self) -> None:
        """Stop the session's work: deny the question, cancel the turn, drop the queue."""
        self._normalizer.abort("Session aborted")

        for _, future in self._queue:
            if not future.done():
                future.set_result(None)
        self._queue.clear()

        if self._abort_event is not None:
            self._abort_event.set()
        task = self._turn_task
        self._turn_task = None
        if task is not None and not task.done():
            task.cancel()

        self.is_running = False
        if self.status != SessionStatus.IDLE:
            self._set_status(SessionStatus.IDLE)

    # =========================================================================
    # Turns
    # =========================================================================

    def _launch(self, content: str) -> asyncio.Task:
        self.is_running = True
        task = asyncio.create_task(self._process_message(content), name="agent_turn")
        self._turn_task = task
        return task

    async def _wait(self, task: asyncio.Task) -> None:
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # Aborted turns end quietly; a cancelled caller still propagates
            if not task.cancelled():
                raise

    async def _process_message(self, content: str) -> None:
        abort_event = asyncio.Event()
        self._abort_event = abort_event
        self._normalizer.begin_turn()
        self._set_status(SessionStatus.PROCESSING)

        options = EngineOptions(
            cwd=self.project_path,
            can_use_tool=self._normalizer.can_use_tool,
            resume=self.upstream_session_id,
            abort_signal=abort_event,
        )
        logger.info(f"Running turn in {self.project_path} (resume: {options.resume or 'new'})")

        try:
            async with aclosing(self._engine.query(content, options)) as records:
                async for record in records:
                    if abort_event.is_set():
                        break
                    self._normalizer.feed(record)
        except asyncio.CancelledError:
            logger.info("Turn cancelled")
            raise
        except Exception as e:
            logger.error(f"Engine error: {e}")
            self._handle_event(ErrorEvent(content=str(e)))
        finally:
            if self._turn_task is asyncio.current_task():
                self._turn_task = None
                self.is_running = False
            if self._abort_event is abort_event:
                self._abort_event = None

        if not abort_event.is_set():
            self._process_queue()

    def _process_queue(self) -> None:
        if not self._queue:
            self._set_status(SessionStatus.IDLE)
            return

        content, future = self._queue.popleft()
        logger.info(f"Processing queued message ({len(self._queue)} remaining)")
        task = self._launch(content)

        def settle(_: asyncio.Task) -> None:
            if not future.done():
                future.set_result(None)

        task.add_done_callback(settle)

    # =========================================================================
    # Sinks
    # =========================================================================

    def _handle_event(self, event: BaseOutputEvent) -> None:
        if isinstance(event, InputRequiredEvent):
            # The relay sets input_required itself when the prompt arrives
            self.status = SessionStatus.INPUT_REQUIRED
            self._on_input_required(event.prompt)
            return
        self._on_event(event)

    def _set_status(self, status: SessionStatus) -> None:
        self.status = status
        self._on_status(status)
