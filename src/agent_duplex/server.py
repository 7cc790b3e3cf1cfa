"""
WebSocket binding using Starlette.

Routes:
    /ws                     open a new session
    /ws/{session_id}        re-attach to a session (history from the repository)
    /api/sessions           live and stored sessions
    /api/sessions/{id}      stored history of one session
    /health                 liveness probe

On application shutdown every open session is notified and given
``session.shutdown_grace`` seconds to finish its turn.
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator
from typing import Any

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from agent_duplex.config import AgentDuplexConfig
from agent_duplex.errors import ErrorCode, TransportClosedError
from agent_duplex.events import EventBus
from agent_duplex.logging import get_logger
from agent_duplex.loop import create_loop_factory
from agent_duplex.model import ModelClient
from agent_duplex.registry import SessionRegistry
from agent_duplex.repository import (
    InMemorySessionRepository,
    SessionRepository,
    SqliteSessionRepository,
)
from agent_duplex.session import LoopFactory, RawMessage, Session, Transport
from agent_duplex.tools import ToolRegistry

logger = get_logger("server")

# WebSocket close codes for session close reasons; others map to 4000 + code % 1000
_WS_CLOSE_CODES = {
    ErrorCode.CONNECTION_CLOSED: 1000,
    ErrorCode.SERVER_SHUTDOWN: 1001,
    ErrorCode.INTERNAL_ERROR: 1011,
}


def ws_close_code(code: ErrorCode) -> int:
    return _WS_CLOSE_CODES.get(code, 4000 + int(code) % 1000)


class WebSocketTransport(Transport):
    """Adapts a Starlette ``WebSocket`` to the session transport interface."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def receive(self) -> RawMessage:
        try:
            message = await self.websocket.receive()
        except (WebSocketDisconnect, RuntimeError) as e:
            raise TransportClosedError("WebSocket disconnected") from e
        if message["type"] == "websocket.disconnect":
            raise TransportClosedError(f"WebSocket disconnected ({message.get('code')})")
        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes") or b""

    async def send(self, data: dict[str, Any]) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            raise TransportClosedError("WebSocket is closed")
        try:
            await self.websocket.send_json(data)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            raise TransportClosedError("WebSocket disconnected") from e

    async def close(self, code: ErrorCode = ErrorCode.CONNECTION_CLOSED, reason: str = "") -> None:
        if (
            self.websocket.application_state == WebSocketState.DISCONNECTED
            or self.websocket.client_state == WebSocketState.DISCONNECTED
        ):
            return
        try:
            await self.websocket.close(code=ws_close_code(code), reason=reason)
        except (RuntimeError, OSError) as e:
            logger.debug("WebSocket close failed: %s", e)


def create_app(
    loop_factory: LoopFactory,
    config: AgentDuplexConfig | None = None,
    repository: SessionRepository | None = None,
    registry: SessionRegistry | None = None,
    hooks: EventBus | None = None,
) -> Starlette:
    """Create the Starlette application.

    Args:
        loop_factory: Builds a ``TurnLoop`` for a session id
        config: Runtime configuration (session section is used here)
        repository: Session persistence (defaults to in-memory)
        registry: Open-session registry (one is created if omitted)
        hooks: Lifecycle observers shared by all sessions
    """
    _config = config or AgentDuplexConfig()
    _repository = repository or InMemorySessionRepository()
    _registry = registry or SessionRegistry()

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logger.info("Server starting")
        yield
        await _registry.shutdown(_config.session.shutdown_grace)
        logger.info("Server stopped")

    async def websocket_endpoint(websocket: WebSocket) -> None:
        """One session per WebSocket connection."""
        await websocket.accept()
        session = Session(
            WebSocketTransport(websocket),
            loop_factory=loop_factory,
            config=_config.session,
            session_id=websocket.path_params.get("session_id"),
            repository=_repository,
            registry=_registry,
            hooks=hooks,
        )
        await session.run()

    async def api_sessions(request: Request) -> JSONResponse:
        """List live and stored sessions."""
        active = [s.info() for s in await _registry.sessions()]
        stored = await _repository.list_sessions()
        return JSONResponse({"active": active, "stored": stored})

    async def api_session_detail(request: Request) -> JSONResponse:
        """Stored history of one session."""
        session_id = request.path_params["session_id"]
        stored = await _repository.load(session_id)
        if stored is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        live = _registry.get(session_id)
        return JSONResponse({
            **stored.summary(),
            "active": live is not None,
            "history": [m.to_dict() for m in stored.history],
        })

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "sessions": len(_registry)})

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/api/sessions", api_sessions, methods=["GET"]),
        Route("/api/sessions/{session_id}", api_session_detail, methods=["GET"]),
        WebSocketRoute("/ws", websocket_endpoint),
        WebSocketRoute("/ws/{session_id}", websocket_endpoint),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.registry = _registry
    app.state.repository = _repository
    return app


def create_app_from_config(
    config: AgentDuplexConfig,
    model: ModelClient,
    tools: ToolRegistry | None = None,
    hooks: EventBus | None = None,
) -> Starlette:
    """Wire repository, loop factory and app together from *config*."""
    repository: SessionRepository
    if config.server.db_path:
        repository = SqliteSessionRepository(config.server.db_path)
    else:
        repository = InMemorySessionRepository()
    hooks = hooks or EventBus()
    factory = create_loop_factory(config, model, tools, hooks, repository)
    return create_app(factory, config, repository=repository, hooks=hooks)


def run_server(
    config: AgentDuplexConfig,
    model: ModelClient,
    tools: ToolRegistry | None = None,
) -> None:
    """Run the WebSocket server until interrupted."""
    app = create_app_from_config(config, model, tools)
    logger.info("Listening on ws://%s:%d/ws", config.server.host, config.server.port)
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)
