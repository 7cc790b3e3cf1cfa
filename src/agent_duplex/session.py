"""
Bidirectional session: one connection, one conversation.

A ``Session`` owns the connection lifecycle and multiplexes the turn loop's
output with inbound client events. Three tasks run side by side while the
session is open:

- the reader, which decodes inbound messages and reacts to them at once
  (``ping`` is answered even mid-turn, ``control`` flips the turn flags);
- the turn worker, which runs one chat at a time;
- the heartbeat, which pings an idle client and closes the session when no
  ``pong`` comes back.

Example:
    session = Session(transport, loop, config=SessionConfig(busy_policy="reject"))
    await session.run()   # returns once the session is closed
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from agent_duplex import envelope as env
from agent_duplex.config import SessionConfig
from agent_duplex.envelope import Envelope
from agent_duplex.errors import (
    ErrorCode,
    ProtocolError,
    SessionBusyError,
    SessionClosedError,
    TransportClosedError,
)
from agent_duplex.events import (
    SESSION_CLOSE,
    SESSION_OPEN,
    EventBus,
    SessionCloseEvent,
    SessionOpenEvent,
)
from agent_duplex.logging import bind_session, get_logger, unbind_session
from agent_duplex.loop import TurnControl, TurnLoop
from agent_duplex.messages import ToolResult, to_blocks

if TYPE_CHECKING:
    from agent_duplex.registry import SessionRegistry
    from agent_duplex.repository import SessionRepository

logger = get_logger("session")

RawMessage = Union[str, bytes, Mapping[str, Any]]


class SessionState(str, Enum):
    """Connection lifecycle. Transitions only move forward."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class Transport(ABC):
    """
    A message-oriented duplex channel.

    Bindings (WebSocket, stdio, in-memory) implement this; the session never
    sees the underlying library.
    """

    @abstractmethod
    async def receive(self) -> RawMessage:
        """
        Wait for the next inbound message.

        Raises:
            TransportClosedError: once the peer has gone away.
        """
        ...

    @abstractmethod
    async def send(self, data: dict[str, Any]) -> None:
        """
        Deliver one outbound envelope dict.

        Raises:
            TransportClosedError: if the peer has gone away.
        """
        ...

    @abstractmethod
    async def close(self, code: ErrorCode = ErrorCode.CONNECTION_CLOSED, reason: str = "") -> None:
        """Close the channel. Must be safe to call more than once."""
        ...


LoopFactory = Callable[[str], TurnLoop]


class Session:
    """
    Owns one connection and the turn loop behind it.

    Args:
        transport: The connection
        loop: Turn loop to drive (or pass *loop_factory*)
        loop_factory: Builds the turn loop from the session id
        config: Lifecycle settings
        session_id: Existing id to re-attach to, or None for a new one
        repository: Source of persisted history for re-attach
        registry: Process-wide registry the session joins while open
        hooks: Lifecycle observers (defaults to the loop's)
    """

    def __init__(
        self,
        transport: Transport,
        loop: TurnLoop | None = None,
        *,
        loop_factory: LoopFactory | None = None,
        config: SessionConfig | None = None,
        session_id: str | None = None,
        repository: SessionRepository | None = None,
        registry: SessionRegistry | None = None,
        hooks: EventBus | None = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        if loop is None:
            if loop_factory is None:
                raise ValueError("Session needs a loop or a loop_factory")
            loop = loop_factory(self.session_id)
        self.transport = transport
        self.loop = loop
        self.config = config or SessionConfig()
        self.repository = repository or loop.repository
        self.registry = registry
        self.hooks = hooks or loop.hooks

        self.state = SessionState.CONNECTING
        self.resumed = False
        self.close_code: ErrorCode | None = None
        self.close_reason = ""
        self.created_at = time.time()
        self.last_activity_at = time.monotonic()

        self.control = TurnControl()
        self._send_lock = asyncio.Lock()
        self._jobs: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._queued_chats = 0
        self._turn_active = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._pong = asyncio.Event()
        self._closed = asyncio.Event()
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        """True while a turn runs or chats are waiting."""
        return self._turn_active or self._queued_chats > 0

    @property
    def abnormal_close(self) -> bool:
        """True if the session closed for any reason other than the client leaving."""
        return self.close_code is not None and self.close_code != ErrorCode.CONNECTION_CLOSED

    def info(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "state": self.state.value,
            "busy": self.busy,
            "awaiting_input": self.loop.pending is not None,
            "messages": len(self.loop.history),
            "created_at": self.created_at,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Handshake, then serve until the session is closed."""
        token = bind_session(self.session_id)
        try:
            await self._serve()
        finally:
            unbind_session(token)

    async def _serve(self) -> None:
        try:
            await self._open()
        except TransportClosedError:
            await self.close(ErrorCode.CONNECTION_CLOSED, "Client left during handshake")
            return

        tasks = [
            asyncio.create_task(self._read_loop(), name=f"session-{self.session_id}-reader"),
            asyncio.create_task(self._turn_worker(), name=f"session-{self.session_id}-worker"),
        ]
        if self.config.heartbeat_interval > 0:
            tasks.append(
                asyncio.create_task(self._heartbeat(), name=f"session-{self.session_id}-heartbeat")
            )
        closed = asyncio.create_task(self._closed.wait())

        try:
            done, _ = await asyncio.wait([closed, *tasks], return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task is not closed and not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "Session %s task %s crashed",
                        self.session_id,
                        task.get_name(),
                        exc_info=task.exception(),
                    )
                    await self.close(ErrorCode.INTERNAL_ERROR, "Internal error")
        finally:
            for task in [closed, *tasks]:
                task.cancel()
            await asyncio.gather(closed, *tasks, return_exceptions=True)
            if self.state != SessionState.CLOSED:
                await self.close(ErrorCode.CONNECTION_LOST, "Session task cancelled")

    async def _open(self) -> None:
        # A superseded connection must stop saving before history is loaded
        if self.registry is not None:
            await self.registry.register(self)
        if self.repository is not None:
            stored = await self.repository.load(self.session_id)
            if stored is not None:
                self.loop.history[:] = stored.history
                self.loop.context_manager.restore(stored.removed_message_count)
                self.resumed = True
            if self.loop.repository is None:
                self.loop.repository = self.repository
        if self.loop.session_id is None:
            self.loop.session_id = self.session_id

        await self._send(
            env.control("session_open", session_id=self.session_id, resumed=self.resumed)
        )
        self.state = SessionState.OPEN
        logger.info(
            "Session %s open%s", self.session_id, " (resumed)" if self.resumed else ""
        )
        await self.hooks.emit(
            SESSION_OPEN, SessionOpenEvent(session_id=self.session_id, resumed=self.resumed)
        )

    def detach(self) -> None:
        """Stop persisting history. A newer connection owns the session id now."""
        self.loop.repository = None
        self.repository = None

    async def close(
        self, code: ErrorCode = ErrorCode.CONNECTION_CLOSED, reason: str = ""
    ) -> None:
        """Move to ``closed``. Later calls are no-ops."""
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.state = SessionState.CLOSING
        self.close_code = code
        self.close_reason = reason
        self.control.cancel()
        normal = code in (ErrorCode.CONNECTION_CLOSED, ErrorCode.SERVER_SHUTDOWN)
        (logger.info if normal else logger.warning)(
            "Session %s closing: %s (%s)", self.session_id, code.name, reason
        )

        try:
            await self.transport.close(code, reason)
        except Exception as e:
            logger.debug("Transport close failed for %s: %s", self.session_id, e)

        self.state = SessionState.CLOSED
        if self.registry is not None:
            await self.registry.unregister_session(self)
        await self.hooks.emit(
            SESSION_CLOSE,
            SessionCloseEvent(session_id=self.session_id, code=int(code), reason=reason),
        )
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def shutdown(self, grace: float | None = None) -> None:
        """
        Notify the client, let the in-flight turn finish within *grace*
        seconds, then cancel it and close.
        """
        if self.state != SessionState.OPEN:
            return
        grace = self.config.shutdown_grace if grace is None else grace
        self._shutting_down = True
        try:
            await self._send(env.control("server_shutdown", grace=grace))
        except (TransportClosedError, SessionClosedError):
            pass

        if self._turn_active:
            try:
                await asyncio.wait_for(self._idle.wait(), grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "Session %s turn still running after %.1fs grace; cancelling",
                    self.session_id,
                    grace,
                )
                self.control.cancel()
        await self.close(ErrorCode.SERVER_SHUTDOWN, "Server shutting down")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, envelope: Envelope) -> None:
        """
        Deliver an envelope to the client.

        Raises:
            SessionClosedError: if the session is not open.
        """
        if self.state != SessionState.OPEN:
            raise SessionClosedError(f"Session {self.session_id} is {self.state.value}")
        await self._send(envelope)

    async def _send(self, envelope: Envelope) -> None:
        async with self._send_lock:
            await self.transport.send(envelope.to_dict())

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        while self.state == SessionState.OPEN:
            try:
                raw = await self.transport.receive()
            except TransportClosedError:
                await self.close(ErrorCode.CONNECTION_CLOSED, "Client disconnected")
                return
            self.last_activity_at = time.monotonic()

            try:
                inbound = env.decode_inbound(raw, self.config.max_message_size)
                await self._handle(inbound)
            except ProtocolError as e:
                logger.debug("Rejected message on %s: %s", self.session_id, e)
                await self._reply(env.error_from(e))

    async def _reply(self, envelope: Envelope) -> None:
        try:
            await self.send(envelope)
        except (TransportClosedError, SessionClosedError):
            pass

    async def _handle(self, inbound: Envelope) -> None:
        kind = inbound.type
        if kind == env.PING:
            await self._reply(env.pong())
        elif kind == env.PONG:
            self._pong.set()
        elif kind == env.CHAT:
            self._accept_chat(inbound)
        elif kind == env.CONTROL:
            await self._handle_control(inbound.payload["action"])
        elif kind == env.TOOL_RESULT:
            self._accept_tool_result(inbound)

    def _accept_chat(self, inbound: Envelope) -> None:
        if self._shutting_down:
            raise ProtocolError(
                "Server is shutting down", ErrorCode.SERVER_SHUTDOWN, recoverable=False
            )
        if self.busy:
            if self.config.busy_policy == "reject":
                raise SessionBusyError("A turn is already in progress")
            if self._queued_chats >= self.config.max_queued_chats:
                raise SessionBusyError(
                    f"Too many queued messages (limit {self.config.max_queued_chats})"
                )
        self._queued_chats += 1
        self._jobs.put_nowait(("chat", inbound))

    async def _handle_control(self, action: str) -> None:
        if action == "cancel":
            if self._turn_active:
                self.control.cancel()
            else:
                pending = self.loop.abandon_pending("Cancelled by the client")
                if pending is None:
                    logger.debug("Cancel with no turn in flight on %s", self.session_id)
                    return
                await self._reply(env.end(env.END_CANCELLED).with_metadata(turn_id=pending.turn_id))
        elif action == "pause":
            self.control.pause()
        elif action == "resume":
            self.control.resume()

    def _accept_tool_result(self, inbound: Envelope) -> None:
        payload = inbound.payload
        tool_id = payload["tool_id"]
        pending = self.loop.pending
        if pending is None or tool_id not in pending.outstanding:
            raise ProtocolError(
                f"No tool call {tool_id!r} is awaiting a result", ErrorCode.UNKNOWN_TOOL_RESULT
            )
        value = payload.get("result", payload.get("output"))
        if payload.get("status", "success") == "error":
            result = ToolResult(tool_id, "error", to_blocks(value or "Tool call failed"))
        else:
            result = ToolResult(tool_id, "success", to_blocks(value))
        if pending.resolve(result):
            self._jobs.put_nowait(("resume", pending))

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def _turn_worker(self) -> None:
        while True:
            kind, item = await self._jobs.get()
            if kind == "chat":
                self._queued_chats -= 1
            elif item is not self.loop.pending:
                # Superseded by a chat that was queued ahead of the resume
                continue

            self._turn_active = True
            self._idle.clear()
            if self.control.cancelled:
                self.control.reset()
            try:
                if kind == "chat":
                    turn_id = uuid.uuid4().hex
                    payload = item.payload
                    metadata: dict[str, Any] = {}
                    if payload.get("attachments"):
                        metadata["attachments"] = payload["attachments"]
                    stream = self.loop.run_turn(
                        payload["content"], self.control, turn_id, **metadata
                    )
                else:
                    turn_id = item.turn_id
                    stream = self.loop.resume_turn(item, (), self.control)
                await self._pump(turn_id, stream)
            finally:
                self._turn_active = False
                self._idle.set()

    async def _pump(self, turn_id: str, stream: AsyncGenerator[Envelope, None]) -> None:
        """Forward a turn's envelopes, converting internal failures."""
        ended = False
        try:
            async for envelope in stream:
                await self.send(envelope)
                if envelope.type == env.END:
                    ended = True
        except (TransportClosedError, SessionClosedError):
            await self.close(ErrorCode.CONNECTION_CLOSED, "Client disconnected mid-turn")
        except Exception as e:
            logger.error("Internal error in session %s: %s", self.session_id, e, exc_info=True)
            if not ended:
                await self._reply(
                    env.error(ErrorCode.INTERNAL_ERROR, "Internal error", False).with_metadata(
                        turn_id=turn_id
                    )
                )
                await self._reply(env.end(env.END_ERROR).with_metadata(turn_id=turn_id))
        finally:
            await stream.aclose()

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat(self) -> None:
        interval = self.config.heartbeat_interval
        while self.state == SessionState.OPEN:
            idle = time.monotonic() - self.last_activity_at
            if idle < interval:
                await asyncio.sleep(interval - idle)
                continue

            self._pong.clear()
            try:
                await self.send(env.ping())
            except (TransportClosedError, SessionClosedError):
                return
            try:
                await asyncio.wait_for(self._pong.wait(), self.config.heartbeat_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Session %s missed heartbeat (%.1fs without pong)",
                    self.session_id,
                    self.config.heartbeat_timeout,
                )
                await self.close(ErrorCode.HEARTBEAT_TIMEOUT, "Heartbeat timeout")
                return
            self.last_activity_at = time.monotonic()
