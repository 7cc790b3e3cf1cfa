"""Tests for the bidirectional session."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from conftest import MemoryTransport, ScriptedModel, text_response, tool_response

from agent_duplex.config import SessionConfig
from agent_duplex.errors import ErrorCode, SessionClosedError
from agent_duplex.envelope import ping
from agent_duplex.events import SESSION_CLOSE, SESSION_OPEN, EventBus
from agent_duplex.loop import TurnLoop
from agent_duplex.messages import Message
from agent_duplex.model import ContentDelta, ModelStop
from agent_duplex.registry import SessionRegistry
from agent_duplex.repository import InMemorySessionRepository
from agent_duplex.session import Session, SessionState

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _start(
    transport: MemoryTransport, loop: TurnLoop, **kwargs: Any
) -> tuple[Session, asyncio.Task[None]]:
    kwargs.setdefault("config", SessionConfig(heartbeat_interval=0))
    session = Session(transport, loop, **kwargs)
    task = asyncio.create_task(session.run())
    opened = await transport.next()
    assert opened["type"] == "control"
    assert opened["payload"]["action"] == "session_open"
    return session, task


async def _finish(transport: MemoryTransport, task: asyncio.Task[None]) -> None:
    transport.disconnect()
    await asyncio.wait_for(task, 2)


def _chat(text: str, **extra: Any) -> dict[str, Any]:
    return {"type": "chat", "content": text, **extra}


def _types(envelopes: list[dict[str, Any]]) -> list[str]:
    return [e["type"] for e in envelopes]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_handshake(self, transport: MemoryTransport, make_loop) -> None:
        session = Session(transport, make_loop(), config=SessionConfig(heartbeat_interval=0))
        assert session.state == SessionState.CONNECTING
        task = asyncio.create_task(session.run())

        opened = await transport.next()
        assert opened["payload"] == {
            "action": "session_open",
            "session_id": session.session_id,
            "resumed": False,
        }
        assert session.state == SessionState.OPEN
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_client_disconnect(self, transport: MemoryTransport, make_loop) -> None:
        session, task = await _start(transport, make_loop())
        await _finish(transport, task)

        assert session.state == SessionState.CLOSED
        assert session.close_code == ErrorCode.CONNECTION_CLOSED
        assert not session.abnormal_close

    @pytest.mark.asyncio
    async def test_lifecycle_hooks(self, transport: MemoryTransport, make_loop) -> None:
        bus = EventBus()
        seen: list[str] = []
        bus.on(SESSION_OPEN, lambda e: seen.append("open"))
        bus.on(SESSION_CLOSE, lambda e: seen.append(f"close:{e.code}"))

        _, task = await _start(transport, make_loop(), hooks=bus)
        await _finish(transport, task)
        assert seen == ["open", f"close:{int(ErrorCode.CONNECTION_CLOSED)}"]

    @pytest.mark.asyncio
    async def test_send_after_close(self, transport: MemoryTransport, make_loop) -> None:
        session, task = await _start(transport, make_loop())
        await _finish(transport, task)
        with pytest.raises(SessionClosedError):
            await session.send(ping())

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, transport: MemoryTransport, make_loop) -> None:
        session, task = await _start(transport, make_loop())
        await session.close(ErrorCode.INTERNAL_ERROR, "first")
        await session.close(ErrorCode.CONNECTION_CLOSED, "second")
        await asyncio.wait_for(task, 2)
        assert session.close_code == ErrorCode.INTERNAL_ERROR
        assert transport.close_code == ErrorCode.INTERNAL_ERROR

    def test_needs_loop_or_factory(self, transport: MemoryTransport) -> None:
        with pytest.raises(ValueError):
            Session(transport)

    def test_loop_factory_gets_session_id(self, transport: MemoryTransport, make_loop) -> None:
        session = Session(transport, loop_factory=make_loop, session_id="abc")
        assert session.loop.session_id == "abc"


# ---------------------------------------------------------------------------
# Turns over the wire
# ---------------------------------------------------------------------------


class TestTurns:
    @pytest.mark.asyncio
    async def test_chat_streams_to_end(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add(text_response("4"))
        _, task = await _start(transport, make_loop())

        transport.push('{"type": "chat", "content": "2+2?"}')
        envelopes = await transport.until_end()

        assert _types(envelopes) == ["content", "end"]
        assert envelopes[-1]["payload"]["reason"] == "complete"
        turn_ids = {e["metadata"]["turn_id"] for e in envelopes}
        assert len(turn_ids) == 1
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_attachments_become_metadata(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add(text_response("seen"))
        loop = make_loop()
        _, task = await _start(transport, loop)

        transport.push(_chat("look", attachments=[{"name": "a.png"}]))
        await transport.until_end()
        assert loop.history[0].metadata == {"attachments": [{"name": "a.png"}]}
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_ping_answered_mid_turn(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add([ContentDelta("a"), 0.3, ContentDelta("b"), ModelStop()])
        _, task = await _start(transport, make_loop())

        transport.push(_chat("hi"))
        assert (await transport.next())["type"] == "content"
        transport.push({"type": "ping"})
        assert (await transport.next())["type"] == "pong"

        rest = await transport.until_end()
        assert _types(rest) == ["content", "end"]
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_cancel_mid_turn(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add(
            [ContentDelta("Hel"), 0.2, ContentDelta("lo"), ModelStop()],
            text_response("again"),
        )
        _, task = await _start(transport, make_loop())

        transport.push(_chat("hi"))
        first = await transport.next()
        assert first["type"] == "content"
        transport.push({"type": "control", "action": "cancel"})

        end = await transport.next()
        assert end["type"] == "end"
        assert end["payload"]["reason"] == "cancelled"
        assert end["metadata"]["turn_id"] == first["metadata"]["turn_id"]

        # The next turn starts with a fresh cancel flag
        transport.push(_chat("try again"))
        envelopes = await transport.until_end()
        assert envelopes[-1]["payload"]["reason"] == "complete"
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_pause_and_resume(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add([ContentDelta("a"), 0.05, ContentDelta("b"), ModelStop()])
        _, task = await _start(transport, make_loop())

        transport.push(_chat("hi"))
        assert (await transport.next())["payload"]["data"] == "a"
        transport.push({"type": "control", "action": "pause"})
        await asyncio.sleep(0.2)
        assert transport.outbound.empty()

        transport.push({"type": "control", "action": "resume"})
        rest = await transport.until_end()
        assert _types(rest) == ["content", "end"]
        assert rest[0]["payload"]["data"] == "b"
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_internal_error_ends_turn(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add(RuntimeError("bug"), text_response("fine"))
        session, task = await _start(transport, make_loop())

        transport.push(_chat("hi"))
        envelopes = await transport.until_end()
        assert _types(envelopes) == ["error", "end"]
        assert envelopes[0]["payload"]["code"] == int(ErrorCode.INTERNAL_ERROR)
        assert envelopes[1]["payload"]["reason"] == "error"
        assert session.state == SessionState.OPEN

        transport.push(_chat("again"))
        assert (await transport.until_end())[-1]["payload"]["reason"] == "complete"
        await _finish(transport, task)


# ---------------------------------------------------------------------------
# Flow control
# ---------------------------------------------------------------------------


class TestFlowControl:
    @pytest.mark.asyncio
    async def test_busy_reject(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add([0.2, ContentDelta("slow"), ModelStop()])
        config = SessionConfig(heartbeat_interval=0, busy_policy="reject")
        _, task = await _start(transport, make_loop(), config=config)

        transport.push(_chat("first"))
        transport.push(_chat("second"))

        error = await transport.next_of("error")
        assert error["payload"]["code"] == int(ErrorCode.SESSION_BUSY)
        assert error["payload"]["recoverable"] is True
        envelopes = await transport.until_end()
        assert envelopes[-1]["payload"]["reason"] == "complete"
        assert len(model.calls) == 1
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_busy_queue(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add([0.1, ContentDelta("one"), ModelStop()], text_response("two"))
        _, task = await _start(transport, make_loop())

        transport.push(_chat("first"))
        transport.push(_chat("second"))

        first = await transport.until_end()
        second = await transport.until_end()
        assert first[0]["payload"]["data"] == "one"
        assert second[0]["payload"]["data"] == "two"
        # Second turn ran after the first finished
        assert [m.text for m in model.calls[1]] == ["first", "one", "second"]
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_queue_limit(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add([0.3, ContentDelta("one"), ModelStop()], text_response("two"))
        config = SessionConfig(heartbeat_interval=0, max_queued_chats=1)
        session, task = await _start(transport, make_loop(), config=config)

        transport.push(_chat("first"))
        await asyncio.sleep(0.05)
        assert session.busy
        transport.push(_chat("second"))
        transport.push(_chat("third"))

        error = await transport.next_of("error")
        assert error["payload"]["code"] == int(ErrorCode.SESSION_BUSY)
        await transport.until_end()
        await transport.until_end()
        assert len(model.calls) == 2
        await _finish(transport, task)


# ---------------------------------------------------------------------------
# Protocol errors
# ---------------------------------------------------------------------------


class TestProtocolErrors:
    @pytest.mark.asyncio
    async def test_bad_messages_keep_session_open(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add(text_response("still here"))
        session, task = await _start(transport, make_loop())

        transport.push("not json")
        transport.push({"type": "teleport"})
        transport.push({"type": "chat", "content": "   "})
        transport.push({"type": "control", "action": "explode"})

        codes = [(await transport.next())["payload"]["code"] for _ in range(4)]
        assert codes == [
            int(ErrorCode.MALFORMED_ENVELOPE),
            int(ErrorCode.UNKNOWN_EVENT_TYPE),
            int(ErrorCode.EMPTY_MESSAGE),
            int(ErrorCode.INVALID_CONTROL),
        ]
        assert session.state == SessionState.OPEN

        transport.push(_chat("hello?"))
        assert (await transport.until_end())[-1]["payload"]["reason"] == "complete"
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_message_too_large(self, transport: MemoryTransport, make_loop) -> None:
        config = SessionConfig(heartbeat_interval=0, max_message_size=64)
        _, task = await _start(transport, make_loop(), config=config)

        transport.push(_chat("x" * 200))
        error = await transport.next()
        assert error["payload"]["code"] == int(ErrorCode.MESSAGE_TOO_LARGE)
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_unknown_tool_result(self, transport: MemoryTransport, make_loop) -> None:
        _, task = await _start(transport, make_loop())

        transport.push({"type": "tool_result", "tool_id": "nope", "result": "?"})
        error = await transport.next()
        assert error["type"] == "error"
        assert error["payload"]["code"] == int(ErrorCode.UNKNOWN_TOOL_RESULT)
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_cancel_with_nothing_running_is_ignored(
        self, transport: MemoryTransport, make_loop
    ) -> None:
        _, task = await _start(transport, make_loop())
        transport.push({"type": "control", "action": "cancel"})
        transport.push({"type": "ping"})
        assert (await transport.next())["type"] == "pong"
        await _finish(transport, task)


# ---------------------------------------------------------------------------
# Client-side tools
# ---------------------------------------------------------------------------


class TestClientToolResults:
    @pytest.mark.asyncio
    async def test_result_resumes_turn(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add(tool_response(("h1", "ask_user", {"q": "colour?"})), text_response("Blue!"))
        loop = make_loop()
        _, task = await _start(transport, loop)

        transport.push(_chat("pick"))
        suspended = await transport.until_end()
        assert suspended[-1]["payload"]["reason"] == "awaiting_input"
        turn_id = suspended[-1]["metadata"]["turn_id"]

        transport.push({"type": "tool_result", "tool_id": "h1", "result": "blue"})
        resumed = await transport.until_end()
        assert _types(resumed) == ["content", "end"]
        assert resumed[-1]["metadata"]["turn_id"] == turn_id
        assert loop.history[2].content[0].content[0].text == "blue"
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_input(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add(tool_response(("h1", "ask_user", {})))
        loop = make_loop()
        _, task = await _start(transport, loop)

        transport.push(_chat("pick"))
        suspended = await transport.until_end()

        transport.push({"type": "control", "action": "cancel"})
        end = await transport.next()
        assert end["payload"]["reason"] == "cancelled"
        assert end["metadata"]["turn_id"] == suspended[-1]["metadata"]["turn_id"]
        assert loop.pending is None
        assert [m.role for m in loop.history] == ["user", "assistant", "tool"]
        await _finish(transport, task)


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_missing_pong_closes(self, transport: MemoryTransport, make_loop) -> None:
        config = SessionConfig(heartbeat_interval=0.05, heartbeat_timeout=0.05)
        session, task = await _start(transport, make_loop(), config=config)

        assert (await transport.next())["type"] == "ping"
        await asyncio.wait_for(task, 2)

        assert session.state == SessionState.CLOSED
        assert session.close_code == ErrorCode.HEARTBEAT_TIMEOUT
        assert transport.close_code == ErrorCode.HEARTBEAT_TIMEOUT
        assert session.abnormal_close

    @pytest.mark.asyncio
    async def test_pong_keeps_session_open(self, transport: MemoryTransport, make_loop) -> None:
        config = SessionConfig(heartbeat_interval=0.05, heartbeat_timeout=0.2)
        session, task = await _start(transport, make_loop(), config=config)

        assert (await transport.next())["type"] == "ping"
        transport.push({"type": "pong"})
        await asyncio.sleep(0.1)
        assert session.state == SessionState.OPEN
        await _finish(transport, task)


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


class TestShutdown:
    @pytest.mark.asyncio
    async def test_turn_finishes_within_grace(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add([0.1, ContentDelta("done"), ModelStop()])
        session, task = await _start(transport, make_loop())

        transport.push(_chat("hi"))
        await asyncio.sleep(0.02)
        shutdown = asyncio.create_task(session.shutdown(grace=1.0))

        notice = await transport.next_of("control")
        assert notice["payload"] == {"action": "server_shutdown", "grace": 1.0}
        transport.push(_chat("too late"))
        error = await transport.next_of("error")
        assert error["payload"]["code"] == int(ErrorCode.SERVER_SHUTDOWN)

        await asyncio.wait_for(shutdown, 2)
        await asyncio.wait_for(task, 2)
        assert any(e["type"] == "end" for e in transport.sent)
        assert session.close_code == ErrorCode.SERVER_SHUTDOWN
        assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_grace_exceeded_cancels(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        model.add([5.0, ContentDelta("never"), ModelStop()])
        session, task = await _start(transport, make_loop())

        transport.push(_chat("hi"))
        await asyncio.sleep(0.02)
        await asyncio.wait_for(session.shutdown(grace=0.05), 1)
        await asyncio.wait_for(task, 1)

        assert session.close_code == ErrorCode.SERVER_SHUTDOWN
        assert not any(e["type"] == "content" for e in transport.sent)


# ---------------------------------------------------------------------------
# Re-attach
# ---------------------------------------------------------------------------


class TestReattach:
    @pytest.mark.asyncio
    async def test_history_restored(
        self, transport: MemoryTransport, model: ScriptedModel, make_loop
    ) -> None:
        repo = InMemorySessionRepository()
        await repo.save("s1", [Message.user("earlier"), Message.assistant("noted")], 3)
        model.add(text_response("welcome back"))
        loop = make_loop()

        session = Session(
            transport,
            loop,
            session_id="s1",
            repository=repo,
            config=SessionConfig(heartbeat_interval=0),
        )
        task = asyncio.create_task(session.run())
        opened = await transport.next()
        assert opened["payload"]["resumed"] is True
        assert opened["payload"]["session_id"] == "s1"
        assert loop.context_manager.removed_message_count == 3

        transport.push(_chat("remember me?"))
        await transport.until_end()
        assert [m.text for m in model.calls[0]] == ["earlier", "noted", "remember me?"]

        stored = await repo.load("s1")
        assert stored is not None
        assert len(stored.history) == 4
        await _finish(transport, task)

    @pytest.mark.asyncio
    async def test_new_connection_supersedes_old(self, make_loop) -> None:
        registry = SessionRegistry()
        first_transport = MemoryTransport()
        second_transport = MemoryTransport()

        first, first_task = await _start(
            first_transport, make_loop(), session_id="s1", registry=registry
        )
        assert registry.get("s1") is first

        second, second_task = await _start(
            second_transport, make_loop(), session_id="s1", registry=registry
        )
        await asyncio.wait_for(first_task, 2)

        assert first.state == SessionState.CLOSED
        assert registry.get("s1") is second
        await _finish(second_transport, second_task)
        assert registry.get("s1") is None

    @pytest.mark.asyncio
    async def test_superseded_turn_does_not_save(
        self, model: ScriptedModel, make_loop
    ) -> None:
        registry = SessionRegistry()
        repo = InMemorySessionRepository()
        await repo.save("s1", [Message.user("earlier")], 0)
        model.add([ContentDelta("Hel"), 0.3, ContentDelta("lo"), ModelStop()])
        first_transport = MemoryTransport()
        second_transport = MemoryTransport()

        first, first_task = await _start(
            first_transport, make_loop(), session_id="s1", registry=registry, repository=repo
        )
        first_transport.push(_chat("hi"))
        await first_transport.next_of("content")

        second, second_task = await _start(
            second_transport, make_loop(), session_id="s1", registry=registry, repository=repo
        )
        await asyncio.wait_for(first_task, 2)

        assert first.loop.repository is None
        assert second.resumed
        stored = await repo.load("s1")
        assert stored is not None
        assert [m.text for m in stored.history] == ["earlier"]
        await _finish(second_transport, second_task)
