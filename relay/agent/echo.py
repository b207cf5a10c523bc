"""
Echo Engine

A stand-in assistant engine for demos and local runs without a real model.
It streams the prompt back word by word in the same record shapes a real
engine produces, then closes the turn with a result record.

Usage:
    AGENT_ENGINE=relay.agent.echo:EchoEngine relay-agent
"""

import asyncio
from typing import Any, AsyncGenerator
from uuid import uuid4

from relay.agent.bridge import EngineOptions


class EchoEngine:
    def __init__(self, delay_s: float = 0.05):
        self._delay = delay_s

    async def query(self, prompt: str, options: EngineOptions) -> AsyncGenerator[dict[str, Any], None]:
        session_id = options.resume or str(uuid4())
        yield {"type": "system", "subtype": "init", "session_id": session_id}

        words = prompt.split() or [""]
        for i, word in enumerate(words):
            if options.abort_signal.is_set():
                return
            text = word if i == 0 else f" {word}"
            yield {
                "type": "stream_event",
                "session_id": session_id,
                "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}},
            }
            await asyncio.sleep(self._delay)

        yield {
            "type": "result",
            "subtype": "success",
            "session_id": session_id,
            "result": prompt,
        }
