"""
agent-duplex - A bidirectional streaming runtime for tool-using agents.

A client holds one long-lived duplex connection (a ``Session``). Each chat
message starts a turn in which a ``TurnLoop`` streams model output, fans
tool calls out through a ``ToolExecutor`` and keeps the conversation within
budget with a ``ContextManager``. The client can cancel, pause and resume a
turn while it runs.

Example:
    from agent_duplex import Session, ToolRegistry, TurnLoop
    from agent_duplex.adapters import OpenAIModelClient

    registry = ToolRegistry()

    @registry.tool(description="Add two numbers")
    def add(input):
        return input["a"] + input["b"]

    loop = TurnLoop(OpenAIModelClient(), registry)
    await Session(transport, loop).run()
"""

from agent_duplex.config import (
    AgentDuplexConfig,
    ContextConfig,
    ExecutorConfig,
    LoopConfig,
    ModelConfig,
    ServerConfig,
    SessionConfig,
    ThrottleConfig,
)
from agent_duplex.context import (
    ContextManager,
    ManagementCadence,
    NullContextManager,
    SlidingWindowContextManager,
    SummarizingContextManager,
    create_context_manager,
)
from agent_duplex.envelope import Envelope, decode_inbound
from agent_duplex.errors import (
    AgentDuplexError,
    CircuitOpenError,
    ContextWindowOverflowError,
    ErrorCode,
    ModelError,
    ModelThrottledError,
    ModelTimeoutError,
    ProtocolError,
    SessionBusyError,
    SessionClosedError,
    TransportClosedError,
    TurnCancelledError,
)
from agent_duplex.events import EventBus
from agent_duplex.executor import (
    ConcurrentToolExecutor,
    SequentialToolExecutor,
    ToolCallbacks,
    ToolExecutor,
    create_executor,
)
from agent_duplex.logging import get_logger, setup_logging
from agent_duplex.loop import PendingTurn, TurnControl, TurnLoop, create_loop_factory
from agent_duplex.messages import (
    JsonBlock,
    Message,
    TextBlock,
    ToolInvocationRequest,
    ToolProgress,
    ToolResult,
    ToolResultBlock,
    ToolUseBlock,
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_tokens,
)
from agent_duplex.model import ContentDelta, ModelClient, ModelStop, ToolCallRequest
from agent_duplex.registry import SessionRegistry
from agent_duplex.repository import (
    InMemorySessionRepository,
    SessionRepository,
    SqliteSessionRepository,
    StoredSession,
)
from agent_duplex.session import Session, SessionState, Transport
from agent_duplex.throttle import CircuitBreaker, RetryPolicy, TokenBucket
from agent_duplex.tools import ToolDefinition, ToolRegistry

__version__ = "0.1.0"

__all__ = [
    # Config
    "AgentDuplexConfig",
    "ContextConfig",
    "ExecutorConfig",
    "LoopConfig",
    "ModelConfig",
    "ServerConfig",
    "SessionConfig",
    "ThrottleConfig",
    # Context
    "ContextManager",
    "ManagementCadence",
    "NullContextManager",
    "SlidingWindowContextManager",
    "SummarizingContextManager",
    "create_context_manager",
    # Envelope
    "Envelope",
    "decode_inbound",
    # Errors
    "AgentDuplexError",
    "CircuitOpenError",
    "ContextWindowOverflowError",
    "ErrorCode",
    "ModelError",
    "ModelThrottledError",
    "ModelTimeoutError",
    "ProtocolError",
    "SessionBusyError",
    "SessionClosedError",
    "TransportClosedError",
    "TurnCancelledError",
    # Events
    "EventBus",
    # Executor
    "ConcurrentToolExecutor",
    "SequentialToolExecutor",
    "ToolCallbacks",
    "ToolExecutor",
    "create_executor",
    # Logging
    "get_logger",
    "setup_logging",
    # Loop
    "PendingTurn",
    "TurnControl",
    "TurnLoop",
    "create_loop_factory",
    # Messages
    "JsonBlock",
    "Message",
    "TextBlock",
    "ToolInvocationRequest",
    "ToolProgress",
    "ToolResult",
    "ToolResultBlock",
    "ToolUseBlock",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    "estimate_tokens",
    # Model
    "ContentDelta",
    "ModelClient",
    "ModelStop",
    "ToolCallRequest",
    # Sessions
    "InMemorySessionRepository",
    "Session",
    "SessionRegistry",
    "SessionRepository",
    "SessionState",
    "SqliteSessionRepository",
    "StoredSession",
    "Transport",
    # Throttle
    "CircuitBreaker",
    "RetryPolicy",
    "TokenBucket",
    # Tools
    "ToolDefinition",
    "ToolRegistry",
]
