#!/usr/bin/env python3
"""
agent-duplex Demo

Runs one session in-process against an OpenAI-compatible model and prints
every envelope the client would see. Two slow tools are registered so the
concurrent executor's fan-out is visible in the timings.

Usage:
    # One scripted turn (reads OPENAI_* from the environment or .env)
    python examples/duplex_demo.py

    # Same tools behind the WebSocket server
    python examples/duplex_demo.py --serve
"""

import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Any

# Add src to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from agent_duplex import AgentDuplexConfig, Session, ToolRegistry, Transport, setup_logging
from agent_duplex.adapters import OpenAIModelClient
from agent_duplex.errors import ErrorCode, TransportClosedError
from agent_duplex.loop import create_loop_factory
from agent_duplex.server import run_server


def build_tools() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool(
        description="Current weather for a city",
        input_schema={"type": "object", "properties": {"city": {"type": "string"}}},
    )
    async def weather(input: dict[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(1.0)
        return {"city": input.get("city"), "forecast": "sunny", "celsius": 21}

    @registry.tool(
        description="Local time in a city",
        input_schema={"type": "object", "properties": {"city": {"type": "string"}}},
    )
    async def local_time(input: dict[str, Any]):
        yield f"looking up timezone for {input.get('city')}"
        await asyncio.sleep(1.0)
        yield {"city": input.get("city"), "time": time.strftime("%H:%M")}

    return registry


class ConsoleTransport(Transport):
    """Feeds scripted client messages in and prints what comes out."""

    def __init__(self, script: list[dict[str, Any]]) -> None:
        self.inbound: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        for message in script:
            self.inbound.put_nowait(message)
        self.started = time.monotonic()
        self.turn_done = asyncio.Event()

    async def receive(self) -> dict[str, Any]:
        message = await self.inbound.get()
        if message is None:
            raise TransportClosedError("demo finished")
        return message

    async def send(self, data: dict[str, Any]) -> None:
        elapsed = time.monotonic() - self.started
        print(f"[{elapsed:5.2f}s] {data['type']:<12} {json.dumps(data['payload'])[:100]}")
        if data["type"] == "end":
            self.turn_done.set()

    async def close(self, code: ErrorCode = ErrorCode.CONNECTION_CLOSED, reason: str = "") -> None:
        print(f"closed: {code.name} {reason}")


async def demo_turn(config: AgentDuplexConfig) -> None:
    """One chat turn that should trigger both tools at once."""
    print("=" * 60)
    print("agent-duplex - Concurrent Tools Demo")
    print("=" * 60)

    model = OpenAIModelClient.from_config(config.model)
    factory = create_loop_factory(config, model, build_tools())
    transport = ConsoleTransport(
        [{"type": "chat", "content": "What's the weather and local time in Lisbon?"}]
    )
    session = Session(transport, loop_factory=factory, config=config.session)

    runner = asyncio.create_task(session.run())
    await transport.turn_done.wait()
    transport.inbound.put_nowait(None)
    await runner


def main() -> None:
    setup_logging("INFO")
    config = AgentDuplexConfig.from_env()
    config.session.heartbeat_interval = 0
    if "--serve" in sys.argv:
        run_server(config, OpenAIModelClient.from_config(config.model), build_tools())
    else:
        asyncio.run(demo_turn(config))


if __name__ == "__main__":
    main()
