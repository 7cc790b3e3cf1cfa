"""
JSON-lines binding for stdio embedding.

One JSON envelope per line in each direction:

    -> {"type": "chat", "content": "2+2?"}
    <- {"type": "content", "payload": {"data": "4", "role": "assistant"}, ...}
    <- {"type": "end", "payload": {"reason": "complete"}, ...}

Example:
    transport = JsonLinesTransport(reader, sys.stdout)
    await Session(transport, loop).run()
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, TextIO

from agent_duplex.config import AgentDuplexConfig
from agent_duplex.errors import ErrorCode, TransportClosedError
from agent_duplex.logging import get_logger
from agent_duplex.session import LoopFactory, RawMessage, Session, Transport

logger = get_logger("rpc")


class JsonLinesTransport(Transport):
    """Reads envelopes from a ``StreamReader`` and writes them to a text stream."""

    def __init__(self, reader: asyncio.StreamReader, output: TextIO | None = None) -> None:
        self._reader = reader
        self._output = output or sys.stdout
        self._closed = False

    async def receive(self) -> RawMessage:
        while True:
            if self._closed:
                raise TransportClosedError("Transport closed")
            line = await self._reader.readline()
            if not line:
                raise TransportClosedError("End of input")
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                return text

    async def send(self, data: dict[str, Any]) -> None:
        if self._closed:
            raise TransportClosedError("Transport closed")
        try:
            self._output.write(json.dumps(data, default=str) + "\n")
            self._output.flush()
        except (BrokenPipeError, ValueError) as e:
            self._closed = True
            raise TransportClosedError(f"Output closed: {e}") from e

    async def close(self, code: ErrorCode = ErrorCode.CONNECTION_CLOSED, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug("JSON-lines transport closed: %s %s", code.name, reason)


async def run_stdio(
    loop_factory: LoopFactory,
    config: AgentDuplexConfig | None = None,
    input_stream: Any = None,
    output: TextIO | None = None,
) -> Session:
    """Serve a single session over stdin/stdout until end of input."""
    config = config or AgentDuplexConfig()
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, input_stream or sys.stdin)

    session = Session(
        JsonLinesTransport(reader, output or sys.stdout),
        loop_factory=loop_factory,
        config=config.session,
    )
    await session.run()
    return session
