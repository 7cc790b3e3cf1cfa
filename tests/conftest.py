"""Shared pytest fixtures for agent-duplex tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Union

import pytest

from agent_duplex.config import SessionConfig
from agent_duplex.errors import ErrorCode, TransportClosedError
from agent_duplex.loop import TurnLoop
from agent_duplex.messages import Message
from agent_duplex.model import ContentDelta, ModelChunk, ModelClient, ModelStop, ToolCallRequest
from agent_duplex.session import RawMessage, Transport
from agent_duplex.tools import ToolDefinition, ToolRegistry

# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------

# One script entry per model call: a list of chunks, or an exception to raise
Script = Union[list[Any], BaseException]


class ScriptedModel(ModelClient):
    """
    Replays a fixed list of responses, one per ``invoke()``.

    Chunks may be interleaved with floats, which are slept before the next
    chunk is produced, and with exceptions, which are raised mid-stream.
    Every call records a copy of the history it was given.
    """

    def __init__(self, scripts: list[Script] | None = None) -> None:
        self.scripts = list(scripts or [])
        self.calls: list[list[Message]] = []
        self.system_prompts: list[str | None] = []

    def add(self, *script: Script) -> None:
        self.scripts.extend(script)

    async def invoke(
        self,
        history: list[Message],
        tool_specs: list[dict[str, Any]],
        system_prompt: str | None = None,
    ) -> AsyncIterator[ModelChunk]:
        self.calls.append(list(history))
        self.system_prompts.append(system_prompt)
        if not self.scripts:
            raise AssertionError("ScriptedModel ran out of responses")
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        for chunk in script:
            if isinstance(chunk, BaseException):
                raise chunk
            if isinstance(chunk, (int, float)):
                await asyncio.sleep(chunk)
                continue
            yield chunk


def text_response(*parts: str) -> list[ModelChunk]:
    return [*(ContentDelta(p) for p in parts), ModelStop("end_turn")]


def tool_response(*calls: tuple[str, str, dict[str, Any]], text: str = "") -> list[ModelChunk]:
    chunks: list[ModelChunk] = [ContentDelta(text)] if text else []
    chunks.extend(ToolCallRequest(cid, name, args) for cid, name, args in calls)
    chunks.append(ModelStop("tool_use"))
    return chunks


# ---------------------------------------------------------------------------
# In-memory transport
# ---------------------------------------------------------------------------


class MemoryTransport(Transport):
    """Queue-backed transport. Tests push inbound messages and read outbound ones."""

    def __init__(self) -> None:
        self.inbound: asyncio.Queue[RawMessage | None] = asyncio.Queue()
        self.outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.close_code: ErrorCode | None = None

    async def receive(self) -> RawMessage:
        if self.closed:
            raise TransportClosedError("closed")
        item = await self.inbound.get()
        if item is None:
            raise TransportClosedError("client left")
        return item

    async def send(self, data: dict[str, Any]) -> None:
        if self.closed:
            raise TransportClosedError("closed")
        self.sent.append(data)
        self.outbound.put_nowait(data)

    async def close(self, code: ErrorCode = ErrorCode.CONNECTION_CLOSED, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.inbound.put_nowait(None)

    # --- test helpers ---

    def push(self, message: RawMessage) -> None:
        self.inbound.put_nowait(message)

    def disconnect(self) -> None:
        self.inbound.put_nowait(None)

    async def next(self, timeout: float = 2.0) -> dict[str, Any]:
        return await asyncio.wait_for(self.outbound.get(), timeout)

    async def next_of(self, kind: str, timeout: float = 2.0) -> dict[str, Any]:
        """Skip ahead to the next outbound envelope of type *kind*."""
        while True:
            data = await self.next(timeout)
            if data["type"] == kind:
                return data

    async def until_end(self, timeout: float = 2.0) -> list[dict[str, Any]]:
        """Collect outbound envelopes up to and including the next ``end``."""
        collected: list[dict[str, Any]] = []
        while True:
            data = await self.next(timeout)
            collected.append(data)
            if data["type"] == "end":
                return collected


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def registry() -> ToolRegistry:
    """Registry with an ``add`` tool, a slow async tool and a client-side tool."""
    reg = ToolRegistry()

    @reg.tool(description="Add two numbers")
    def add(input: dict[str, Any]) -> int:
        return input["a"] + input["b"]

    @reg.tool(description="Sleep, then echo")
    async def slow_echo(input: dict[str, Any]) -> str:
        await asyncio.sleep(input.get("delay", 0.05))
        return input.get("text", "")

    reg.register(
        ToolDefinition(name="ask_user", description="Ask the human a question", human=True)
    )
    return reg


@pytest.fixture
def model() -> ScriptedModel:
    return ScriptedModel()


@pytest.fixture
def transport() -> MemoryTransport:
    return MemoryTransport()


@pytest.fixture
def session_config() -> SessionConfig:
    """Session settings with the heartbeat off."""
    return SessionConfig(heartbeat_interval=0)


@pytest.fixture
def make_loop(model: ScriptedModel, registry: ToolRegistry):
    def factory(session_id: str | None = None, **kwargs: Any) -> TurnLoop:
        kwargs.setdefault("session_id", session_id)
        return TurnLoop(model, registry, **kwargs)

    return factory
