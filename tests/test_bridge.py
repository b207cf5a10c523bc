import asyncio

import pytest

from relay.agent.bridge import AgentBridge, EngineOptions, load_engine
from relay.agent.echo import EchoEngine
from relay.agent.normalizer import ASK_QUESTION_TOOL
from relay.protocol.messages import SessionStatus


def _delta(text: str, session_id: str = "up-1") -> dict:
    return {
        "type": "stream_event",
        "session_id": session_id,
        "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}},
    }


class ScriptedEngine:
    """Streams a fixed reply per turn; records the options it was given."""

    def __init__(self, hold: asyncio.Event | None = None, ask: bool = False, fail: bool = False) -> None:
        self.prompts: list[str] = []
        self.options: list[EngineOptions] = []
        self.decisions: list = []
        self._hold = hold
        self._ask = ask
        self._fail = fail

    async def query(self, prompt: str, options: EngineOptions):
        self.prompts.append(prompt)
        self.options.append(options)
        yield _delta(f"re:{prompt}")
        if self._fail:
            raise RuntimeError("engine exploded")
        if self._ask:
            decision = await options.can_use_tool(
                ASK_QUESTION_TOOL, {"questions": [{"question": "Proceed?", "options": []}]}
            )
            self.decisions.append(decision)
        if self._hold is not None:
            await self._hold.wait()
        yield {"type": "result", "subtype": "success", "session_id": "up-1"}


class Sinks:
    def __init__(self) -> None:
        self.events: list = []
        self.statuses: list[SessionStatus] = []
        self.prompts: list[str] = []

    def bridge(self, engine) -> AgentBridge:
        return AgentBridge(
            engine,
            "/work/demo",
            on_event=self.events.append,
            on_status=self.statuses.append,
            on_input_required=self.prompts.append,
        )

    def types(self) -> list[str]:
        return [e.type for e in self.events]


@pytest.mark.asyncio
async def test_turn_streams_events_and_returns_to_idle() -> None:
    sinks = Sinks()
    engine = ScriptedEngine()
    bridge = sinks.bridge(engine)

    await bridge.send_message("hello")

    assert sinks.types() == ["assistant_delta", "result"]
    assert sinks.statuses == [SessionStatus.PROCESSING, SessionStatus.IDLE]
    assert bridge.status == SessionStatus.IDLE
    assert engine.options[0].cwd == "/work/demo"
    assert engine.options[0].resume is None


@pytest.mark.asyncio
async def test_later_turns_resume_upstream_session() -> None:
    engine = ScriptedEngine()
    bridge = Sinks().bridge(engine)

    await bridge.send_message("one")
    await bridge.send_message("two")

    assert bridge.upstream_session_id == "up-1"
    assert engine.options[1].resume == "up-1"


@pytest.mark.asyncio
async def test_messages_during_turn_are_queued_fifo() -> None:
    hold = asyncio.Event()
    sinks = Sinks()
    engine = ScriptedEngine(hold=hold)
    bridge = sinks.bridge(engine)

    first = asyncio.create_task(bridge.send_message("one"))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(bridge.send_message("two"))
    third = asyncio.create_task(bridge.send_message("three"))
    await asyncio.sleep(0.01)

    assert bridge.queued_count == 2
    assert engine.prompts == ["one"]

    hold.set()
    await asyncio.wait_for(asyncio.gather(first, second, third), timeout=2)

    assert engine.prompts == ["one", "two", "three"]
    assert sinks.types().count("result") == 3
    assert sinks.statuses[-1] == SessionStatus.IDLE
    assert sinks.statuses.count(SessionStatus.IDLE) == 1


@pytest.mark.asyncio
async def test_reply_answers_pending_question() -> None:
    sinks = Sinks()
    engine = ScriptedEngine(ask=True)
    bridge = sinks.bridge(engine)

    turn = asyncio.create_task(bridge.send_message("go"))
    await asyncio.sleep(0.01)

    assert bridge.has_pending_question
    assert sinks.prompts == ["Proceed?"]
    assert bridge.status == SessionStatus.INPUT_REQUIRED
    # input_required goes to its own sink, never into the event stream
    assert "input_required" not in sinks.types()

    await bridge.send_message("yes")
    await asyncio.wait_for(turn, timeout=2)

    assert engine.prompts == ["go"]
    assert engine.decisions[0].behavior == "allow"
    assert engine.decisions[0].updated_input["answers"] == {"Proceed?": "yes"}
    assert sinks.types() == ["assistant_delta", "ask_question", "question_answered", "result"]


@pytest.mark.asyncio
async def test_abort_denies_question_and_leaves_processing() -> None:
    sinks = Sinks()
    engine = ScriptedEngine(ask=True, hold=asyncio.Event())
    bridge = sinks.bridge(engine)

    turn = asyncio.create_task(bridge.send_message("go"))
    await asyncio.sleep(0.01)
    queued = asyncio.create_task(bridge.send_message("later"))
    await asyncio.sleep(0)

    bridge.abort()
    await asyncio.wait_for(asyncio.gather(turn, queued), timeout=2)

    assert "question_answered" not in sinks.types()
    assert bridge.status == SessionStatus.IDLE
    assert not bridge.is_running
    assert engine.prompts == ["go"]

    # Bridge is usable again after an abort
    engine._ask = False
    engine._hold = None
    await bridge.send_message("again")
    assert engine.prompts == ["go", "again"]


@pytest.mark.asyncio
async def test_engine_failure_becomes_error_event() -> None:
    sinks = Sinks()
    bridge = sinks.bridge(ScriptedEngine(fail=True))

    await bridge.send_message("boom")

    assert sinks.types() == ["assistant_delta", "error"]
    assert sinks.events[-1].content == "engine exploded"
    assert bridge.status == SessionStatus.IDLE


@pytest.mark.asyncio
async def test_echo_engine_round_trip() -> None:
    sinks = Sinks()
    bridge = sinks.bridge(EchoEngine(delay_s=0))

    await bridge.send_message("hello relay")

    assert sinks.types() == ["assistant_delta", "assistant_delta", "result"]
    assert "".join(e.text for e in sinks.events[:2]) == "hello relay"


def test_load_engine_from_path() -> None:
    engine = load_engine("relay.agent.echo:EchoEngine")

    assert isinstance(engine, EchoEngine)

    with pytest.raises(ValueError):
        load_engine("relay.agent.echo")
