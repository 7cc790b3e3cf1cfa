"""
Error codes and exception types.

Codes are grouped by hundreds: connection (1xxx), auth (2xxx), protocol
(3xxx), agent/tool (4xxx) and server (5xxx). They are stable and are what a
client sees in the ``code`` field of an ``error`` envelope.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Stable numeric error codes surfaced to clients."""

    # Connection
    CONNECTION_CLOSED = 1000
    HEARTBEAT_TIMEOUT = 1001
    CONNECTION_LOST = 1002

    # Auth (reserved for transport bindings)
    UNAUTHORIZED = 2000

    # Protocol
    MALFORMED_ENVELOPE = 3000
    UNKNOWN_EVENT_TYPE = 3001
    MESSAGE_TOO_LARGE = 3002
    EMPTY_MESSAGE = 3003
    SESSION_BUSY = 3004
    INVALID_CONTROL = 3005
    UNKNOWN_TOOL_RESULT = 3006

    # Agent / tool
    TOOL_ERROR = 4000
    RATE_LIMITED = 4001
    CONTEXT_OVERFLOW = 4002
    MODEL_TIMEOUT = 4003
    MAX_ITERATIONS = 4004
    MODEL_ERROR = 4005
    CIRCUIT_OPEN = 4006

    # Server
    INTERNAL_ERROR = 5000
    SERVER_SHUTDOWN = 5001

    @property
    def category(self) -> str:
        """Human-readable group name derived from the leading digit."""
        return {
            1: "connection",
            2: "auth",
            3: "protocol",
            4: "agent",
            5: "server",
        }[self.value // 1000]


class AgentDuplexError(Exception):
    """Base class for all errors raised by agent-duplex."""

    default_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    default_recoverable: bool = False

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        recoverable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else self.default_code
        self.recoverable = (
            recoverable if recoverable is not None else self.default_recoverable
        )

    def to_payload(self) -> dict[str, Any]:
        """Render as the payload of an ``error`` envelope."""
        return {
            "code": int(self.code),
            "name": self.code.name,
            "message": self.message,
            "recoverable": self.recoverable,
        }


class ProtocolError(AgentDuplexError):
    """An inbound message could not be accepted. The session stays open."""

    default_code = ErrorCode.MALFORMED_ENVELOPE
    default_recoverable = True


class SessionBusyError(ProtocolError):
    """A chat arrived while another turn is in flight and queuing is off."""

    default_code = ErrorCode.SESSION_BUSY


class SessionClosedError(AgentDuplexError):
    """Operation attempted on a session that is closing or closed."""

    default_code = ErrorCode.CONNECTION_CLOSED


class TransportClosedError(AgentDuplexError):
    """The underlying transport went away."""

    default_code = ErrorCode.CONNECTION_CLOSED


class TurnCancelledError(AgentDuplexError):
    """Raised at a checkpoint once the per-turn cancel flag is set."""

    default_code = ErrorCode.INTERNAL_ERROR
    default_recoverable = True


class ModelError(AgentDuplexError):
    """The model collaborator failed in a way that is not retried."""

    default_code = ErrorCode.MODEL_ERROR


class ModelThrottledError(ModelError):
    """The model collaborator reported a rate limit. Retried with backoff."""

    default_code = ErrorCode.RATE_LIMITED


class ContextWindowOverflowError(ModelError):
    """History does not fit the model's context window."""

    default_code = ErrorCode.CONTEXT_OVERFLOW


class ModelTimeoutError(ModelError):
    """A model call exceeded its configured timeout."""

    default_code = ErrorCode.MODEL_TIMEOUT


class CircuitOpenError(ModelError):
    """The circuit breaker is rejecting model calls."""

    default_code = ErrorCode.CIRCUIT_OPEN
    default_recoverable = True
